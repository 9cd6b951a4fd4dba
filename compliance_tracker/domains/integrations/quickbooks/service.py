# compliance_tracker/domains/integrations/quickbooks/service.py
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from compliance_tracker.shared.exceptions import (
    AuthExchangeFailedError,
    IntegrationConfigurationError,
    NotConnectedError,
)

from .api_client import ApiClient
from .config import QuickBooksConfig
from .locks import KeyedLock
from .models import (
    AuthUrlResponse,
    CallbackParams,
    Connection,
    ConnectionEvent,
    ConnectionResponse,
    ConnectionStatusResponse,
    ConnectionUpdate,
    DisconnectResponse,
    HealthCheckResponse,
    QuickBooksCustomer,
    SyncedInvoice,
    SyncResult,
    transition,
)
from .repositories import (
    AuditEvent,
    AuditSink,
    ConnectionRepository,
    InvoiceRepository,
)
from .state_token import OAuthStateSigner
from .sync_engine import SyncEngine
from .token_service import TokenService

logger = logging.getLogger(__name__)


class QuickBooksService:
    """Service for managing QuickBooks connections, customer mapping and sync."""

    def __init__(
        self,
        config: QuickBooksConfig,
        http_client: httpx.AsyncClient,
        connections: ConnectionRepository,
        invoices: InvoiceRepository,
        audit: AuditSink,
        state_signer: OAuthStateSigner,
        refresh_locks: KeyedLock,
        sync_locks: KeyedLock,
    ):
        self.config = config
        self.connections = connections
        self.invoices = invoices
        self.audit = audit
        self.state_signer = state_signer
        self.sync_locks = sync_locks
        self.refresh_locks = refresh_locks

        self.token_service = TokenService(config, http_client)
        self.api_client = ApiClient(
            self.token_service, connections, http_client, refresh_locks
        )
        self.sync_engine = SyncEngine(
            self.api_client, connections, invoices, sync_locks
        )

    async def start_connection(self, org_id: str) -> AuthUrlResponse:
        """
        Start the OAuth connection process for an organization.

        Args:
            org_id: Organization ID

        Returns:
            AuthUrlResponse with authorization URL, expiry, the CSRF state and
            the signed state token for the cookie

        Raises:
            IntegrationConfigurationError: If client credentials or the JWT
                secret are missing
        """
        self._require_configured()

        request = self.token_service.generate_auth_url()
        state_token, payload = self.state_signer.issue(org_id, request.state)

        logger.info(f"Started QuickBooks authorization for {org_id}")
        return AuthUrlResponse(
            auth_url=request.url,
            expires_at=payload.expires_at,
            organization_id=org_id,
            state=request.state,
            state_token=state_token,
        )

    async def complete_connection(
        self, callback_params: CallbackParams, state_token: Optional[str]
    ) -> ConnectionResponse:
        """
        Complete the OAuth connection using the callback parameters.

        The state is checked before anything else, so a forged callback never
        reaches the token endpoint even when it carries a valid code.

        Args:
            callback_params: Parameters from the QuickBooks OAuth callback
            state_token: Signed state cookie issued when the flow started

        Returns:
            ConnectionResponse with connection details

        Raises:
            InvalidStateError: State missing, mismatched, forged or expired
            AuthExchangeFailedError: Provider error, missing code/realm or a
                failed token exchange
        """
        payload = self.state_signer.verify(state_token, callback_params.state)
        org_id = payload.org_id

        if callback_params.error:
            error_desc = callback_params.error_description or callback_params.error
            raise AuthExchangeFailedError(f"OAuth authorization failed: {error_desc}")

        if not callback_params.code or not callback_params.realm_id:
            raise AuthExchangeFailedError("Missing required OAuth parameters")

        self._require_configured()
        tokens = await self.token_service.exchange_code_for_tokens(
            callback_params.code
        )

        realm_id = callback_params.realm_id
        access_expires_at = self.token_service.calculate_expiry_date(
            tokens.expires_in
        )
        refresh_expires_at = self.token_service.calculate_expiry_date(
            tokens.x_refresh_token_expires_in
        )

        async with self.sync_locks.hold(org_id):
            existing = await self.connections.get(org_id)

            if existing is None:
                await self.connections.save(
                    Connection(
                        organization_id=org_id,
                        realm_id=realm_id,
                        access_token=tokens.access_token,
                        refresh_token=tokens.refresh_token,
                        access_token_expires_at=access_expires_at,
                        refresh_token_expires_at=refresh_expires_at,
                    )
                )
            else:
                changes: dict[str, Any] = {
                    "realm_id": realm_id,
                    "access_token": tokens.access_token,
                    "refresh_token": tokens.refresh_token,
                    "access_token_expires_at": access_expires_at,
                    "refresh_token_expires_at": refresh_expires_at,
                    "status": transition(
                        existing.status, ConnectionEvent.reauthorized
                    ),
                    "error_message": None,
                }
                if existing.realm_id != realm_id:
                    # Mapped customer belongs to the previous company
                    logger.warning(
                        f"QuickBooks company changed for {org_id} "
                        f"({existing.realm_id} -> {realm_id}), clearing customer mapping"
                    )
                    changes["mapped_customer_id"] = None
                    changes["mapped_customer_name"] = None
                await self.connections.update(org_id, ConnectionUpdate(**changes))

        connected_at = datetime.now(timezone.utc)
        await self._audit(
            "quickbooks.connected",
            org_id,
            {"realm_id": realm_id, "reauthorized": existing is not None},
        )
        logger.info(f"QuickBooks connected for {org_id} (realm {realm_id})")

        return ConnectionResponse(
            message="QuickBooks connection established successfully",
            connected_at=connected_at,
            realm_id=realm_id,
            organization_id=org_id,
        )

    async def disconnect(self, org_id: str) -> DisconnectResponse:
        """
        Disconnect QuickBooks for an organization.

        Revocation at the provider is best effort; the connection and its
        cached invoices are always removed locally.

        Raises:
            NotConnectedError: If no connection exists
        """
        async with self.sync_locks.hold(org_id):
            connection = await self.connections.get(org_id)
            if connection is None:
                raise NotConnectedError()

            # Raises if the connection is already terminal
            transition(connection.status, ConnectionEvent.disconnected)

            revoked = False
            if self.config.configured:
                revoked = await self.token_service.revoke_tokens(
                    connection.refresh_token
                )

            await self.invoices.delete_for_organization(org_id)
            await self.connections.delete(org_id)

        self.sync_locks.discard(org_id)
        self.refresh_locks.discard(org_id)

        disconnected_at = datetime.now(timezone.utc)
        await self._audit(
            "quickbooks.disconnected",
            org_id,
            {"realm_id": connection.realm_id, "revoked": revoked},
        )
        logger.info(f"QuickBooks disconnected for {org_id} (revoked={revoked})")

        return DisconnectResponse(
            message="QuickBooks connection disconnected successfully",
            disconnected_at=disconnected_at,
            organization_id=org_id,
        )

    async def get_connection_status(self, org_id: str) -> ConnectionStatusResponse:
        connection = await self.connections.get(org_id)
        return ConnectionStatusResponse.from_connection(connection)

    async def search_customers(
        self, org_id: str, term: str = ""
    ) -> list[QuickBooksCustomer]:
        return await self.sync_engine.search_customers(org_id, term)

    async def map_customer(self, org_id: str, customer_id: str) -> Connection:
        connection = await self.sync_engine.map_customer(org_id, customer_id)
        await self._audit(
            "quickbooks.customer_mapped",
            org_id,
            {
                "customer_id": connection.mapped_customer_id,
                "customer_name": connection.mapped_customer_name,
            },
        )
        return connection

    async def list_invoices(self, org_id: str) -> list[SyncedInvoice]:
        """Cached invoices for the organization, newest transaction date first."""
        if await self.connections.get(org_id) is None:
            raise NotConnectedError()
        return await self.invoices.list_for_organization(org_id)

    async def sync_invoices(
        self, org_id: str, deadline: Optional[float] = None
    ) -> SyncResult:
        result = await self.sync_engine.sync_invoices(org_id, deadline=deadline)
        await self._audit(
            "quickbooks.synced",
            org_id,
            {"synced_count": result.synced_count, "error_count": len(result.errors)},
        )
        return result

    def health_check(self) -> HealthCheckResponse:
        return self.token_service.health_check()

    def _require_configured(self) -> None:
        if not self.config.configured:
            raise IntegrationConfigurationError()

    async def _audit(
        self, action: str, org_id: str, details: dict[str, Any]
    ) -> None:
        # Audit is fire-and-forget: a failing sink never fails the action
        try:
            await self.audit.record(
                AuditEvent(
                    action=action,
                    organization_id=org_id,
                    details=details,
                    occurred_at=datetime.now(timezone.utc),
                )
            )
        except Exception as e:
            logger.error(f"Failed to record audit event {action} for {org_id}: {e}")
