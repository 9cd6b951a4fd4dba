"""QuickBooks Online integration.

OAuth 2.0 connection management, authenticated data API access and
invoice sync for tenant organizations.
"""

from .api_client import ApiClient
from .config import QuickBooksConfig, resolve_quickbooks_config
from .service import QuickBooksService
from .sync_engine import SyncEngine
from .token_service import TokenService

__all__ = [
    "ApiClient",
    "QuickBooksConfig",
    "QuickBooksService",
    "SyncEngine",
    "TokenService",
    "resolve_quickbooks_config",
]
