# compliance_tracker/domains/integrations/quickbooks/token_service.py
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx

from compliance_tracker.shared.exceptions import (
    AuthExchangeFailedError,
    ProviderError,
    RefreshTokenInvalidError,
)

from .config import QuickBooksConfig
from .models import AuthorizationRequest, HealthCheckResponse, TokenResponse

logger = logging.getLogger(__name__)

# Intuit OAuth 2.0 endpoints
AUTH_URL = "https://appcenter.intuit.com/connect/oauth2"
TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
REVOKE_URL = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"

PRODUCTION_API_URL = "https://quickbooks.api.intuit.com"
SANDBOX_API_URL = "https://sandbox-quickbooks.api.intuit.com"

ACCOUNTING_SCOPE = "com.intuit.quickbooks.accounting"

# Refresh this long before the provider-reported expiry
EXPIRY_MARGIN = timedelta(minutes=5)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def provider_error_detail(response: httpx.Response) -> str:
    """Pull the most useful error text out of an Intuit error response."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"

    if isinstance(body, dict):
        fault = body.get("Fault") or body.get("fault")
        if isinstance(fault, dict):
            errors = fault.get("Error") or fault.get("error") or []
            if errors and isinstance(errors[0], dict):
                first = errors[0]
                detail = first.get("Detail") or first.get("Message")
                if detail:
                    return str(detail)
        if body.get("error_description"):
            return f"{body.get('error')}: {body['error_description']}"
        if body.get("error"):
            return str(body["error"])

    return response.text or f"HTTP {response.status_code}"


class TokenService:
    """OAuth 2.0 authorization-code and refresh-token protocol for QuickBooks."""

    def __init__(self, config: QuickBooksConfig, http_client: httpx.AsyncClient):
        self.config = config
        self.http_client = http_client
        self.timeout = httpx.Timeout(config.timeout)

    @property
    def api_base_url(self) -> str:
        if self.config.environment == "production":
            return PRODUCTION_API_URL
        return SANDBOX_API_URL

    def generate_auth_url(self) -> AuthorizationRequest:
        """
        Build the authorization URL with a fresh CSRF state.

        The caller must persist the returned state against the pending attempt
        and reject any callback whose state does not match it exactly.

        Returns:
            AuthorizationRequest with the URL and its 256-bit hex state
        """
        state = secrets.token_hex(32)

        auth_params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
            "scope": ACCOUNTING_SCOPE,
            "state": state,
        }

        return AuthorizationRequest(
            url=f"{AUTH_URL}?{urlencode(auth_params)}", state=state
        )

    async def exchange_code_for_tokens(self, code: str) -> TokenResponse:
        """
        Exchange an authorization code for access and refresh tokens.

        Authorization codes are single-use and short-lived, so failures are
        never retried.

        Raises:
            AuthExchangeFailedError: For any non-2xx response or transport failure
        """
        try:
            response = await self._post_form(
                TOKEN_URL,
                {
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.config.redirect_uri,
                },
            )
        except httpx.RequestError as e:
            raise AuthExchangeFailedError(f"Token exchange request failed: {e}")

        if response.is_error:
            detail = provider_error_detail(response)
            logger.error(f"QuickBooks token exchange error: {detail}")
            raise AuthExchangeFailedError(
                f"Failed to exchange code for tokens: {detail}"
            )

        return TokenResponse.model_validate(response.json())

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        """
        Obtain a new access token (and rotated refresh token).

        Raises:
            RefreshTokenInvalidError: Provider rejected the refresh token (HTTP 400);
                the connection needs a full reauthorization
            ProviderError: Any other failure, including timeouts
        """
        try:
            response = await self._post_form(
                TOKEN_URL,
                {"grant_type": "refresh_token", "refresh_token": refresh_token},
            )
        except httpx.TimeoutException as e:
            raise ProviderError(f"Token refresh timed out: {e}")
        except httpx.RequestError as e:
            raise ProviderError(f"Token refresh request failed: {e}")

        if response.status_code == 400:
            detail = provider_error_detail(response)
            logger.warning(f"QuickBooks refresh token rejected: {detail}")
            raise RefreshTokenInvalidError(f"Refresh token rejected: {detail}")

        if response.is_error:
            detail = provider_error_detail(response)
            logger.error(f"QuickBooks token refresh error: {detail}")
            raise ProviderError(
                f"Failed to refresh access token: {detail}",
                provider_status=response.status_code,
            )

        return TokenResponse.model_validate(response.json())

    async def revoke_tokens(self, refresh_token: str) -> bool:
        """
        Revoke tokens at the provider (best effort).

        Returns:
            True if the provider confirmed revocation; failures are logged only
        """
        try:
            response = await self._post_form(REVOKE_URL, {"token": refresh_token})
        except httpx.RequestError as e:
            logger.warning(f"QuickBooks token revoke request failed: {e}")
            return False

        if response.is_error:
            logger.warning(
                f"QuickBooks token revoke error: {provider_error_detail(response)}"
            )
            return False

        return True

    def is_token_expired(
        self, expires_at: datetime, now: Optional[datetime] = None
    ) -> bool:
        """Check if a token is expired or expires within the refresh margin."""
        current = as_utc(now) if now else datetime.now(timezone.utc)
        return current >= as_utc(expires_at) - EXPIRY_MARGIN

    def calculate_expiry_date(self, ttl_seconds: int) -> datetime:
        return datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)

    def health_check(self) -> HealthCheckResponse:
        """Report configuration without requiring active tokens."""
        client_id = self.config.client_id
        return HealthCheckResponse(
            credentials_configured=bool(client_id and self.config.client_secret),
            client_id=f"{client_id[:8]}..." if client_id else "Not configured",
            environment=self.config.environment,
            redirect_uri=self.config.redirect_uri,
        )

    async def _post_form(self, url: str, data: dict[str, str]) -> httpx.Response:
        return await self.http_client.post(
            url,
            data=data,
            auth=(self.config.client_id, self.config.client_secret),
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
            timeout=self.timeout,
        )
