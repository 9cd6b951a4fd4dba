# compliance_tracker/domains/integrations/quickbooks/prisma_repositories.py
"""Prisma-backed storage for QuickBooks connections, invoices and settings."""

import json
import logging
from datetime import date, datetime, time, timezone
from typing import TYPE_CHECKING, Any, Optional

from compliance_tracker.shared.exceptions import NotConnectedError

from .models import Connection, ConnectionStatus, ConnectionUpdate, SyncedInvoice
from .repositories import AuditEvent

if TYPE_CHECKING:
    from prisma import Prisma

logger = logging.getLogger(__name__)

# Connection model field -> QuickbooksConnection column
CONNECTION_COLUMNS = {
    "realm_id": "realmId",
    "access_token": "accessToken",
    "refresh_token": "refreshToken",
    "access_token_expires_at": "accessTokenExpiresAt",
    "refresh_token_expires_at": "refreshTokenExpiresAt",
    "mapped_customer_id": "qbCustomerId",
    "mapped_customer_name": "qbCustomerName",
    "status": "status",
    "last_sync_at": "lastSyncAt",
    "error_message": "errorMessage",
}


def _to_datetime(value: Optional[date]) -> Optional[datetime]:
    """Prisma DateTime columns need a datetime; QuickBooks dates are UTC days."""
    if value is None:
        return None
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _to_date(value: Optional[datetime]) -> Optional[date]:
    return value.date() if value is not None else None


def _connection_data(values: dict[str, Any]) -> dict[str, Any]:
    data = {}
    for field, value in values.items():
        column = CONNECTION_COLUMNS.get(field)
        if column is None:
            continue
        if isinstance(value, ConnectionStatus):
            value = value.value
        data[column] = value
    return data


def connection_from_record(record: Any) -> Connection:
    return Connection(
        organization_id=record.organizationId,
        realm_id=record.realmId,
        access_token=record.accessToken,
        refresh_token=record.refreshToken,
        access_token_expires_at=record.accessTokenExpiresAt,
        refresh_token_expires_at=record.refreshTokenExpiresAt,
        mapped_customer_id=record.qbCustomerId,
        mapped_customer_name=record.qbCustomerName,
        status=ConnectionStatus(record.status),
        last_sync_at=record.lastSyncAt,
        error_message=record.errorMessage,
        created_at=record.createdAt,
        updated_at=record.updatedAt,
    )


def invoice_from_record(record: Any) -> SyncedInvoice:
    return SyncedInvoice(
        organization_id=record.organizationId,
        provider_invoice_id=record.qbInvoiceId,
        provider_doc_number=record.qbDocNumber,
        provider_customer_id=record.qbCustomerId,
        balance=record.balance,
        total_amount=record.totalAmount,
        due_date=_to_date(record.dueDate),
        transaction_date=record.txnDate.date(),
        email_status=record.emailStatus,
        private_note=record.privateNote,
        raw_payload=record.qbRawData,
        sync_token=record.syncToken,
        last_synced_at=record.lastSyncedAt,
    )


class PrismaConnectionRepository:
    def __init__(self, db: "Prisma"):
        self.db = db

    async def get(self, organization_id: str) -> Optional[Connection]:
        record = await self.db.quickbooksconnection.find_unique(
            where={"organizationId": organization_id}
        )
        return connection_from_record(record) if record else None

    async def save(self, connection: Connection) -> Connection:
        data = _connection_data(connection.model_dump())
        record = await self.db.quickbooksconnection.upsert(
            where={"organizationId": connection.organization_id},
            data={
                "create": {"organizationId": connection.organization_id, **data},
                "update": data,
            },
        )
        return connection_from_record(record)

    async def update(
        self, organization_id: str, update: ConnectionUpdate
    ) -> Connection:
        record = await self.db.quickbooksconnection.update(
            where={"organizationId": organization_id},
            data=_connection_data(update.changes()),
        )
        if record is None:
            raise NotConnectedError()
        return connection_from_record(record)

    async def delete(self, organization_id: str) -> None:
        await self.db.quickbooksconnection.delete_many(
            where={"organizationId": organization_id}
        )


class PrismaInvoiceRepository:
    def __init__(self, db: "Prisma"):
        self.db = db

    async def upsert(self, invoice: SyncedInvoice) -> SyncedInvoice:
        data = {
            "qbDocNumber": invoice.provider_doc_number,
            "qbCustomerId": invoice.provider_customer_id,
            "balance": invoice.balance,
            "totalAmount": invoice.total_amount,
            "dueDate": _to_datetime(invoice.due_date),
            "txnDate": _to_datetime(invoice.transaction_date),
            "emailStatus": invoice.email_status,
            "privateNote": invoice.private_note,
            "qbRawData": invoice.raw_payload,
            "syncToken": invoice.sync_token,
            "lastSyncedAt": invoice.last_synced_at or datetime.now(timezone.utc),
        }
        record = await self.db.quickbooksinvoice.upsert(
            where={
                "organizationId_qbInvoiceId": {
                    "organizationId": invoice.organization_id,
                    "qbInvoiceId": invoice.provider_invoice_id,
                }
            },
            data={
                "create": {
                    "organizationId": invoice.organization_id,
                    "qbInvoiceId": invoice.provider_invoice_id,
                    **data,
                },
                "update": data,
            },
        )
        return invoice_from_record(record)

    async def list_for_organization(self, organization_id: str) -> list[SyncedInvoice]:
        records = await self.db.quickbooksinvoice.find_many(
            where={"organizationId": organization_id},
            order={"txnDate": "desc"},
        )
        return [invoice_from_record(r) for r in records]

    async def delete_for_organization(self, organization_id: str) -> None:
        count = await self.db.quickbooksinvoice.delete_many(
            where={"organizationId": organization_id}
        )
        logger.info(f"Deleted {count} cached QuickBooks invoices for {organization_id}")


class PrismaSettingsRepository:
    def __init__(self, db: "Prisma"):
        self.db = db

    async def get_all(self) -> dict[str, str | None]:
        records = await self.db.systemsetting.find_many()
        return {record.key: record.value for record in records}


class PrismaAuditSink:
    def __init__(self, db: "Prisma"):
        self.db = db

    async def record(self, event: AuditEvent) -> None:
        await self.db.auditlog.create(
            data={
                "organizationId": event.organization_id,
                "action": event.action,
                "details": json.dumps(event.details, default=str),
                "createdAt": event.occurred_at,
            }
        )
