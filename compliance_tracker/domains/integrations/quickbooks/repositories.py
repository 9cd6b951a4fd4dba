"""Storage interfaces consumed by the QuickBooks integration."""

from datetime import datetime
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

from .models import Connection, ConnectionUpdate, SyncedInvoice


class ConnectionRepository(Protocol):
    """One QuickBooks connection per organization."""

    async def get(self, organization_id: str) -> Optional[Connection]: ...

    async def save(self, connection: Connection) -> Connection:
        """Create the organization's connection, or replace the existing one."""
        ...

    async def update(
        self, organization_id: str, update: ConnectionUpdate
    ) -> Connection: ...

    async def delete(self, organization_id: str) -> None: ...


class InvoiceRepository(Protocol):
    """Cache of synced invoices keyed by (organization_id, provider_invoice_id)."""

    async def upsert(self, invoice: SyncedInvoice) -> SyncedInvoice:
        """Insert, or fully overwrite the row with the same key."""
        ...

    async def list_for_organization(
        self, organization_id: str
    ) -> list[SyncedInvoice]: ...

    async def delete_for_organization(self, organization_id: str) -> None: ...


class SettingsRepository(Protocol):
    """Stored system settings (key/value)."""

    async def get_all(self) -> dict[str, str | None]: ...


class AuditEvent(BaseModel):
    """Audit trail entry for an integration action."""

    action: str = Field(..., description="e.g. quickbooks.connected")
    organization_id: str
    details: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime


class AuditSink(Protocol):
    async def record(self, event: AuditEvent) -> None: ...
