"""Compliance tracker API."""
