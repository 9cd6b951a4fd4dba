"""Third-party integrations domain.

This module manages integrations with external accounting systems:
- QuickBooks Online (OAuth connection, customer mapping and invoice sync)
"""
