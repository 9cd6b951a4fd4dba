"""
Global pytest configuration and fixtures for the compliance tracker API test suite.
"""

# Import fixtures from fixture modules
from tests.fixtures.quickbooks_fixtures import *  # noqa: F403, F401
