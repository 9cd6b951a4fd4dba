# compliance_tracker/domains/integrations/quickbooks/models.py
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ConnectionStatus(str, Enum):
    """Lifecycle states of a tenant's QuickBooks connection."""

    connected = "connected"
    token_expired = "token_expired"
    error = "error"
    disconnected = "disconnected"


class ConnectionEvent(str, Enum):
    """Events that move a connection between statuses."""

    refreshed = "refreshed"
    refresh_rejected = "refresh_rejected"
    call_succeeded = "call_succeeded"
    call_failed = "call_failed"
    reauthorized = "reauthorized"
    disconnected = "disconnected"


class InvalidStatusTransitionError(ValueError):
    """Raised when an event is not allowed from the current status."""

    def __init__(self, status: ConnectionStatus, event: ConnectionEvent) -> None:
        super().__init__(
            f"Cannot apply '{event.value}' to a connection in '{status.value}'"
        )
        self.status = status
        self.event = event


_TRANSITIONS: dict[tuple[ConnectionStatus, ConnectionEvent], ConnectionStatus] = {
    (ConnectionStatus.connected, ConnectionEvent.refreshed): ConnectionStatus.connected,
    (
        ConnectionStatus.connected,
        ConnectionEvent.call_succeeded,
    ): ConnectionStatus.connected,
    (
        ConnectionStatus.connected,
        ConnectionEvent.reauthorized,
    ): ConnectionStatus.connected,
    (
        ConnectionStatus.connected,
        ConnectionEvent.refresh_rejected,
    ): ConnectionStatus.token_expired,
    (ConnectionStatus.connected, ConnectionEvent.call_failed): ConnectionStatus.error,
    (
        ConnectionStatus.token_expired,
        ConnectionEvent.reauthorized,
    ): ConnectionStatus.connected,
    (
        ConnectionStatus.token_expired,
        ConnectionEvent.refresh_rejected,
    ): ConnectionStatus.token_expired,
    (ConnectionStatus.error, ConnectionEvent.call_succeeded): ConnectionStatus.connected,
    (ConnectionStatus.error, ConnectionEvent.refreshed): ConnectionStatus.connected,
    (ConnectionStatus.error, ConnectionEvent.reauthorized): ConnectionStatus.connected,
    (ConnectionStatus.error, ConnectionEvent.call_failed): ConnectionStatus.error,
    (
        ConnectionStatus.error,
        ConnectionEvent.refresh_rejected,
    ): ConnectionStatus.token_expired,
}


def transition(status: ConnectionStatus, event: ConnectionEvent) -> ConnectionStatus:
    """
    Apply an event to a connection status.

    Any non-terminal status may be disconnected; ``disconnected`` itself is
    terminal because the record is deleted.

    Raises:
        InvalidStatusTransitionError: If the event is not allowed from ``status``
    """
    if status == ConnectionStatus.disconnected:
        raise InvalidStatusTransitionError(status, event)
    if event == ConnectionEvent.disconnected:
        return ConnectionStatus.disconnected

    next_status = _TRANSITIONS.get((status, event))
    if next_status is None:
        raise InvalidStatusTransitionError(status, event)
    return next_status


def can_transition(status: ConnectionStatus, event: ConnectionEvent) -> bool:
    try:
        transition(status, event)
    except InvalidStatusTransitionError:
        return False
    return True


class Connection(BaseModel):
    """A tenant organization's stored QuickBooks connection."""

    organization_id: str = Field(..., description="Owning organization ID")
    realm_id: str = Field(..., description="QuickBooks company (realm) ID")
    access_token: str = Field(..., description="Short-lived access token")
    refresh_token: str = Field(..., description="Rotating refresh token")
    access_token_expires_at: datetime = Field(
        ..., description="When the access token expires"
    )
    refresh_token_expires_at: datetime = Field(
        ..., description="When the refresh token expires"
    )
    mapped_customer_id: Optional[str] = Field(
        None, description="Mapped QuickBooks customer ID"
    )
    mapped_customer_name: Optional[str] = Field(
        None, description="Mapped QuickBooks customer display name"
    )
    status: ConnectionStatus = Field(
        default=ConnectionStatus.connected, description="Connection status"
    )
    last_sync_at: Optional[datetime] = Field(
        None, description="Last successful sync time"
    )
    error_message: Optional[str] = Field(None, description="Last error message")
    created_at: Optional[datetime] = Field(None, description="Creation time")
    updated_at: Optional[datetime] = Field(None, description="Last update time")


class ConnectionUpdate(BaseModel):
    """Partial update for a connection; only fields explicitly set are written."""

    realm_id: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    mapped_customer_id: Optional[str] = None
    mapped_customer_name: Optional[str] = None
    status: Optional[ConnectionStatus] = None
    last_sync_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def changes(self) -> dict[str, object]:
        """Fields explicitly set on this update, including explicit ``None``."""
        return self.model_dump(exclude_unset=True)


class SyncedInvoice(BaseModel):
    """Cached copy of a QuickBooks invoice for one organization."""

    organization_id: str
    provider_invoice_id: str
    provider_doc_number: Optional[str] = None
    provider_customer_id: str
    balance: Decimal
    total_amount: Decimal
    due_date: Optional[date] = None
    transaction_date: date
    email_status: Optional[str] = None
    private_note: Optional[str] = None
    raw_payload: str = Field(..., description="Full invoice JSON from QuickBooks")
    sync_token: Optional[str] = None
    last_synced_at: Optional[datetime] = None


class TokenResponse(BaseModel):
    """Response from the Intuit OAuth token endpoint."""

    access_token: str = Field(..., description="Access token for API calls")
    refresh_token: str = Field(..., description="Refresh token for token renewal")
    expires_in: int = Field(..., description="Access token lifetime in seconds")
    x_refresh_token_expires_in: int = Field(
        ..., description="Refresh token lifetime in seconds"
    )
    token_type: str = Field(default="bearer", description="Token type")


class AuthorizationRequest(BaseModel):
    """Authorization URL paired with the CSRF state it embeds."""

    url: str
    state: str


class OAuthStateTokenPayload(BaseModel):
    """JWT payload for the OAuth state cookie."""

    org_id: str = Field(..., description="Organization ID")
    csrf_token: str = Field(..., description="State embedded in the authorization URL")
    issued_at: datetime = Field(..., description="Token issue time")
    expires_at: datetime = Field(..., description="Token expiry time")


# QuickBooks API payloads
class QuickBooksRef(BaseModel):
    """Reference to another QuickBooks entity."""

    value: str = Field(..., description="Referenced entity ID")
    name: Optional[str] = Field(None, description="Referenced entity name")


class QuickBooksEmailAddress(BaseModel):
    Address: Optional[str] = None


class QuickBooksCustomer(BaseModel):
    """QuickBooks customer structure."""

    model_config = ConfigDict(extra="ignore")

    Id: str = Field(..., description="QuickBooks customer ID")
    DisplayName: str = Field(..., description="Customer display name")
    CompanyName: Optional[str] = Field(None, description="Company name")
    PrimaryEmailAddr: Optional[QuickBooksEmailAddress] = Field(
        None, description="Primary email address"
    )
    Active: bool = Field(default=True, description="Whether customer is active")


class QuickBooksInvoice(BaseModel):
    """QuickBooks invoice structure."""

    model_config = ConfigDict(extra="ignore")

    Id: str = Field(..., description="QuickBooks invoice ID")
    DocNumber: Optional[str] = Field(None, description="User-facing invoice number")
    TxnDate: date = Field(..., description="Transaction date")
    DueDate: Optional[date] = Field(None, description="Due date")
    CustomerRef: QuickBooksRef = Field(..., description="Invoiced customer")
    TotalAmt: Decimal = Field(..., description="Invoice total")
    Balance: Decimal = Field(..., description="Outstanding balance")
    EmailStatus: Optional[str] = Field(None, description="Email delivery status")
    PrivateNote: Optional[str] = Field(None, description="Internal memo")
    SyncToken: Optional[str] = Field(None, description="Optimistic concurrency token")


# API request/response models
class AuthUrlResponse(BaseModel):
    """Response model for OAuth authorization URL generation."""

    auth_url: str = Field(..., description="QuickBooks OAuth authorization URL")
    expires_at: datetime = Field(..., description="When the pending state expires")
    organization_id: str = Field(..., description="Organization ID")
    state: str = Field("", exclude=True, description="CSRF state in the URL")
    state_token: str = Field(
        "", exclude=True, description="Signed state token for the cookie"
    )


class CallbackParams(BaseModel):
    """Query parameters from the QuickBooks OAuth callback."""

    code: Optional[str] = Field(None, description="OAuth authorization code")
    state: Optional[str] = Field(None, description="CSRF state token")
    realm_id: Optional[str] = Field(None, description="QuickBooks company ID")
    error: Optional[str] = Field(None, description="Error code if authorization failed")
    error_description: Optional[str] = Field(None, description="Error description")


class ConnectionResponse(BaseModel):
    """Response model for a successful connection."""

    message: str = Field(..., description="Success message")
    connected_at: datetime = Field(..., description="When connection was established")
    realm_id: str = Field(..., description="Connected QuickBooks company ID")
    organization_id: str = Field(..., description="Organization ID")


class ConnectionStatusResponse(BaseModel):
    """Stored connection state; never requires a live provider call."""

    connected: bool = Field(..., description="Whether a usable connection exists")
    status: str = Field(..., description="Connection status")
    realm_id: Optional[str] = None
    mapped_customer_id: Optional[str] = None
    mapped_customer_name: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    error_message: Optional[str] = None
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None

    @classmethod
    def from_connection(
        cls, connection: Optional[Connection]
    ) -> "ConnectionStatusResponse":
        """Create status response from a stored connection."""
        if not connection:
            return cls(connected=False, status=ConnectionStatus.disconnected.value)

        return cls(
            connected=connection.status == ConnectionStatus.connected,
            status=connection.status.value,
            realm_id=connection.realm_id,
            mapped_customer_id=connection.mapped_customer_id,
            mapped_customer_name=connection.mapped_customer_name,
            last_sync_at=connection.last_sync_at,
            error_message=connection.error_message,
            access_token_expires_at=connection.access_token_expires_at,
            refresh_token_expires_at=connection.refresh_token_expires_at,
        )


class DisconnectResponse(BaseModel):
    """Response model for disconnection."""

    message: str = Field(..., description="Success message")
    disconnected_at: datetime = Field(..., description="When disconnection occurred")
    organization_id: str = Field(..., description="Organization ID")


class CustomerMappingRequest(BaseModel):
    customer_id: str = Field(..., min_length=1, description="QuickBooks customer ID")


class SyncError(BaseModel):
    """A single invoice that failed to sync."""

    doc_number: Optional[str] = Field(None, description="Invoice document number")
    provider_invoice_id: str = Field(..., description="QuickBooks invoice ID")
    message: str = Field(..., description="Failure detail")


class SyncResult(BaseModel):
    """Outcome of an invoice sync; row failures never abort the batch."""

    synced_count: int = Field(..., description="Invoices upserted")
    errors: list[SyncError] = Field(
        default_factory=list, description="Per-invoice failures"
    )
    last_sync_at: Optional[datetime] = Field(None, description="Sync completion time")


class HealthCheckResponse(BaseModel):
    credentials_configured: bool
    client_id: str
    environment: str
    redirect_uri: str
