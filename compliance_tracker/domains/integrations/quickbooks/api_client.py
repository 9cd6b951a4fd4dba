# compliance_tracker/domains/integrations/quickbooks/api_client.py
import asyncio
import logging
from typing import Any, Optional

import httpx

from compliance_tracker.shared.exceptions import (
    AuthenticationFailedError,
    NotConnectedError,
    ProviderError,
    RateLimitExceededError,
    RefreshTokenInvalidError,
)

from .locks import KeyedLock
from .models import (
    Connection,
    ConnectionEvent,
    ConnectionStatus,
    ConnectionUpdate,
    can_transition,
    transition,
)
from .repositories import ConnectionRepository
from .token_service import TokenService, provider_error_detail

logger = logging.getLogger(__name__)

# Pins the QuickBooks response schema
MINOR_VERSION = "65"
DEFAULT_RETRY_AFTER_SECONDS = 60

QueryParams = dict[str, str]


def escape_query_value(value: str) -> str:
    """Escape a value for interpolation into a QuickBooks query string literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _authorization_expired(connection: Connection) -> RefreshTokenInvalidError:
    return RefreshTokenInvalidError(
        connection.error_message
        or "QuickBooks authorization expired; reconnect required"
    )


def _retry_after(response: httpx.Response) -> int:
    header = response.headers.get("Retry-After")
    try:
        return int(header) if header else DEFAULT_RETRY_AFTER_SECONDS
    except ValueError:
        return DEFAULT_RETRY_AFTER_SECONDS


class ApiClient:
    """
    Authenticated access to the QuickBooks data API.

    Keeps callers clear of token expiry races: tokens are refreshed before a
    call when close to expiry, and once more if the provider still answers 401.
    Refreshes for one organization are serialized so a rotated refresh token
    is never used twice.
    """

    def __init__(
        self,
        token_service: TokenService,
        connections: ConnectionRepository,
        http_client: httpx.AsyncClient,
        refresh_locks: KeyedLock,
    ):
        self.token_service = token_service
        self.connections = connections
        self.http_client = http_client
        self.refresh_locks = refresh_locks

    async def ensure_valid_token(self, connection: Connection) -> str:
        """
        Get a usable access token, refreshing it first if it is about to expire.

        Raises:
            RefreshTokenInvalidError: If the refresh token was rejected; the
                connection is marked token_expired
        """
        if connection.status == ConnectionStatus.token_expired:
            raise _authorization_expired(connection)

        if not self.token_service.is_token_expired(connection.access_token_expires_at):
            return connection.access_token

        logger.info(
            f"Access token for {connection.organization_id} expired, refreshing"
        )
        return await self._refresh(
            connection.organization_id, stale_access_token=connection.access_token
        )

    async def request(
        self,
        connection: Connection,
        endpoint: str,
        params: Optional[QueryParams] = None,
    ) -> dict[str, Any]:
        """
        GET a realm-scoped endpoint of the data API.

        Args:
            connection: The organization's stored connection
            endpoint: Path under /v3/company/{realmId}/
            params: Query parameters

        Returns:
            Decoded JSON response

        Raises:
            AuthenticationFailedError: 401 again after the one refresh and retry
            RateLimitExceededError: 429; carries the Retry-After hint
            ProviderError: Any other failure, including timeouts
        """
        org_id = connection.organization_id
        url = (
            f"{self.token_service.api_base_url}/v3/company/"
            f"{connection.realm_id}/{endpoint}"
        )

        access_token = await self.ensure_valid_token(connection)
        response = await self._get(url, access_token, params)

        if response.status_code == 401:
            logger.info(f"Got 401 for {org_id}, attempting token refresh")
            access_token = await self._refresh(org_id, stale_access_token=access_token)
            response = await self._get(url, access_token, params)

            if response.status_code == 401:
                await self._record_event(
                    org_id, ConnectionEvent.call_failed, "Authentication failed"
                )
                raise AuthenticationFailedError(
                    "QuickBooks rejected the refreshed access token"
                )

        if response.status_code == 429:
            retry_after = _retry_after(response)
            logger.warning(
                f"QuickBooks rate limit hit for {org_id}, retry after {retry_after}s"
            )
            raise RateLimitExceededError(retry_after=retry_after)

        if response.is_error:
            raise ProviderError(
                f"QuickBooks API error: {provider_error_detail(response)}",
                provider_status=response.status_code,
            )

        if connection.status == ConnectionStatus.error:
            await self._clear_error(org_id)

        return response.json()

    async def query(self, connection: Connection, statement: str) -> dict[str, Any]:
        """Run a QuickBooks query statement and return its QueryResponse body."""
        body = await self.request(
            connection,
            "query",
            {"query": statement, "minorversion": MINOR_VERSION},
        )
        return body.get("QueryResponse") or {}

    async def _get(
        self, url: str, access_token: str, params: Optional[QueryParams]
    ) -> httpx.Response:
        try:
            return await self.http_client.get(
                url,
                params=params,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
                timeout=self.token_service.timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderError(f"QuickBooks API request timed out: {e}")
        except httpx.RequestError as e:
            raise ProviderError(f"QuickBooks API request error: {e}")

    async def _refresh(self, org_id: str, stale_access_token: str) -> str:
        # The provider rotates the refresh token as soon as it accepts the POST,
        # so a cancelled caller must not stop the new tokens being stored
        return await asyncio.shield(self._refresh_locked(org_id, stale_access_token))

    async def _refresh_locked(self, org_id: str, stale_access_token: str) -> str:
        async with self.refresh_locks.hold(org_id):
            current = await self.connections.get(org_id)
            if current is None:
                raise NotConnectedError()

            # Another caller rotated the tokens while we waited for the lock
            if current.access_token != stale_access_token and not (
                self.token_service.is_token_expired(current.access_token_expires_at)
            ):
                return current.access_token

            if current.status == ConnectionStatus.token_expired:
                raise _authorization_expired(current)

            try:
                tokens = await self.token_service.refresh_access_token(
                    current.refresh_token
                )
            except RefreshTokenInvalidError as e:
                await self.connections.update(
                    org_id,
                    ConnectionUpdate(
                        status=transition(
                            current.status, ConnectionEvent.refresh_rejected
                        ),
                        error_message=e.message,
                    ),
                )
                raise

            updated = await self.connections.update(
                org_id,
                ConnectionUpdate(
                    access_token=tokens.access_token,
                    refresh_token=tokens.refresh_token,
                    access_token_expires_at=self.token_service.calculate_expiry_date(
                        tokens.expires_in
                    ),
                    refresh_token_expires_at=self.token_service.calculate_expiry_date(
                        tokens.x_refresh_token_expires_in
                    ),
                    status=transition(current.status, ConnectionEvent.refreshed),
                    error_message=None,
                ),
            )
            logger.info(f"Refreshed QuickBooks tokens for {org_id}")
            return updated.access_token

    async def _record_event(
        self, org_id: str, event: ConnectionEvent, error_message: Optional[str]
    ) -> None:
        current = await self.connections.get(org_id)
        if current is None:
            return
        if not can_transition(current.status, event):
            # A concurrent refresh was rejected; reconnecting is the only fix
            raise _authorization_expired(current)
        await self.connections.update(
            org_id,
            ConnectionUpdate(
                status=transition(current.status, event),
                error_message=error_message,
            ),
        )

    async def _clear_error(self, org_id: str) -> None:
        current = await self.connections.get(org_id)
        if current is None or current.status != ConnectionStatus.error:
            return
        await self.connections.update(
            org_id,
            ConnectionUpdate(
                status=transition(current.status, ConnectionEvent.call_succeeded),
                error_message=None,
            ),
        )
