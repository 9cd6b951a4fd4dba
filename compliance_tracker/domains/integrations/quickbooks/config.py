"""
QuickBooks OAuth configuration and its resolution order.
"""

from dataclasses import dataclass
from typing import Literal, Mapping

from compliance_tracker.core.settings import Settings
from compliance_tracker.shared.exceptions import IntegrationConfigurationError

QuickBooksEnvironment = Literal["sandbox", "production"]

CALLBACK_PATH = "/api/quickbooks/callback"


@dataclass(frozen=True)
class QuickBooksConfig:
    """Configuration for the QuickBooks OAuth and data API clients."""

    client_id: str
    client_secret: str
    redirect_uri: str
    environment: QuickBooksEnvironment = "sandbox"
    timeout: float = 30.0

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


def resolve_quickbooks_config(
    stored: Mapping[str, str | None],
    settings: Settings,
    serving_base_url: str | None = None,
    strict: bool = True,
) -> QuickBooksConfig:
    """
    Resolve QuickBooks configuration.

    Precedence: stored system settings, then environment variables, then a
    redirect URI derived from the serving host.

    Args:
        stored: System settings keyed by setting name
        settings: Application settings (environment variables)
        serving_base_url: Base URL the current request was served from
        strict: Raise when credentials are missing instead of returning an
            unconfigured QuickBooksConfig

    Returns:
        Resolved QuickBooksConfig

    Raises:
        IntegrationConfigurationError: If client credentials are missing and
            ``strict`` is set
    """
    client_id = ""
    client_secret = ""
    redirect_uri = ""
    environment = ""

    if stored:
        active_config = stored.get("qb_active_config") or "dev"
        prefix = "qb_prod_" if active_config == "prod" else "qb_dev_"

        client_id = (
            stored.get(f"{prefix}client_id") or stored.get("qb_client_id") or ""
        )
        client_secret = (
            stored.get(f"{prefix}client_secret")
            or stored.get("qb_client_secret")
            or ""
        )
        redirect_uri = (
            stored.get(f"{prefix}redirect_uri") or stored.get("qb_redirect_uri") or ""
        )
        environment = "production" if active_config == "prod" else "sandbox"

    client_id = client_id or settings.QB_CLIENT_ID or ""
    client_secret = client_secret or settings.QB_CLIENT_SECRET or ""
    redirect_uri = redirect_uri or settings.QB_REDIRECT_URI or ""
    environment = environment or settings.QB_ENVIRONMENT or ""

    if not redirect_uri:
        base_url = (serving_base_url or settings.APP_BASE_URL).rstrip("/")
        redirect_uri = f"{base_url}{CALLBACK_PATH}"

    if strict and (not client_id or not client_secret):
        raise IntegrationConfigurationError()

    return QuickBooksConfig(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        environment="production" if environment == "production" else "sandbox",
        timeout=settings.QB_HTTP_TIMEOUT_SECONDS,
    )
