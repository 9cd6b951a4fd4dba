import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import quote

from compliance_tracker.shared.exceptions import (
    CustomerNotMappedError,
    IntegrationError,
    NotConnectedError,
    ProviderError,
    RefreshTokenInvalidError,
)

from .api_client import MINOR_VERSION, ApiClient, escape_query_value
from .locks import KeyedLock
from .models import (
    Connection,
    ConnectionEvent,
    ConnectionUpdate,
    QuickBooksCustomer,
    QuickBooksInvoice,
    SyncedInvoice,
    SyncError,
    SyncResult,
    can_transition,
    transition,
)
from .repositories import ConnectionRepository, InvoiceRepository

logger = logging.getLogger(__name__)

CUSTOMER_SEARCH_LIMIT = 50
INVOICE_FETCH_LIMIT = 500

InvoicePayload = dict[str, Any]


def to_synced_invoice(
    organization_id: str, payload: InvoicePayload, synced_at: datetime
) -> SyncedInvoice:
    """Map a raw QuickBooks invoice payload to its cached form."""
    invoice = QuickBooksInvoice.model_validate(payload)
    return SyncedInvoice(
        organization_id=organization_id,
        provider_invoice_id=invoice.Id,
        provider_doc_number=invoice.DocNumber,
        provider_customer_id=invoice.CustomerRef.value,
        balance=invoice.Balance,
        total_amount=invoice.TotalAmt,
        due_date=invoice.DueDate,
        transaction_date=invoice.TxnDate,
        email_status=invoice.EmailStatus or None,
        private_note=invoice.PrivateNote or None,
        raw_payload=json.dumps(payload),
        sync_token=invoice.SyncToken or None,
        last_synced_at=synced_at,
    )


class SyncEngine:
    """Customer lookup, customer mapping and invoice sync for one provider."""

    def __init__(
        self,
        api_client: ApiClient,
        connections: ConnectionRepository,
        invoices: InvoiceRepository,
        sync_locks: KeyedLock,
    ):
        self.api_client = api_client
        self.connections = connections
        self.invoices = invoices
        self.sync_locks = sync_locks

    async def search_customers(
        self, org_id: str, term: str = ""
    ) -> list[QuickBooksCustomer]:
        """
        Search QuickBooks customers by display or company name.

        An empty term lists customers without a name filter.

        Raises:
            NotConnectedError: If the organization has no connection
        """
        connection = await self._require_connection(org_id)

        term = term.strip()
        if term:
            escaped = escape_query_value(term)
            statement = (
                f"SELECT * FROM Customer WHERE DisplayName LIKE '%{escaped}%' "
                f"OR CompanyName LIKE '%{escaped}%' "
                f"MAXRESULTS {CUSTOMER_SEARCH_LIMIT}"
            )
        else:
            statement = f"SELECT * FROM Customer MAXRESULTS {CUSTOMER_SEARCH_LIMIT}"

        result = await self.api_client.query(connection, statement)
        customers = result.get("Customer")
        if not isinstance(customers, list):
            return []
        return [QuickBooksCustomer.model_validate(c) for c in customers]

    async def get_customer(self, org_id: str, customer_id: str) -> QuickBooksCustomer:
        connection = await self._require_connection(org_id)
        return await self._get_customer(connection, customer_id)

    async def map_customer(self, org_id: str, customer_id: str) -> Connection:
        """
        Link a QuickBooks customer to the organization.

        Stores the customer's ID and display name; does not trigger a sync.
        """
        async with self.sync_locks.hold(org_id):
            connection = await self._require_connection(org_id)
            customer = await self._get_customer(connection, customer_id)

            return await self.connections.update(
                org_id,
                ConnectionUpdate(
                    mapped_customer_id=customer.Id,
                    mapped_customer_name=customer.DisplayName,
                ),
            )

    async def fetch_invoices_for_customer(
        self, org_id: str, customer_id: str
    ) -> list[QuickBooksInvoice]:
        """Fetch a customer's invoices, newest transaction date first."""
        connection = await self._require_connection(org_id)
        payloads = await self._fetch_invoice_payloads(connection, customer_id)
        return [QuickBooksInvoice.model_validate(p) for p in payloads]

    async def sync_invoices(
        self, org_id: str, deadline: Optional[float] = None
    ) -> SyncResult:
        """
        Sync the mapped customer's invoices into the local cache.

        Each invoice is upserted independently; a failing row is recorded in
        the result and the rest continue. Only a failure of the fetch itself
        marks the connection as errored and aborts the sync.

        Args:
            org_id: Organization ID
            deadline: Optional time budget in seconds for the whole sync

        Returns:
            SyncResult with the synced count and per-invoice errors

        Raises:
            NotConnectedError: If the organization has no connection
            CustomerNotMappedError: If no customer is mapped; no HTTP call is made
            ProviderError: If the fetch fails or the deadline passes
        """
        async with self.sync_locks.hold(org_id):
            connection = await self._require_connection(org_id)
            if not connection.mapped_customer_id:
                raise CustomerNotMappedError()

            payloads: Optional[list[InvoicePayload]] = None
            result = SyncResult(synced_count=0)
            try:
                async with asyncio.timeout(deadline):
                    try:
                        payloads = await self._fetch_invoice_payloads(
                            connection, connection.mapped_customer_id
                        )
                    except RefreshTokenInvalidError:
                        # Already persisted as token_expired
                        raise
                    except IntegrationError as e:
                        await self._record_fetch_failure(org_id, e.message)
                        raise

                    await self._upsert_invoices(org_id, payloads, result)
            except TimeoutError:
                if payloads is None:
                    message = "QuickBooks invoice fetch timed out"
                    await self._record_fetch_failure(org_id, message)
                else:
                    message = (
                        f"Sync deadline exceeded after {result.synced_count} "
                        f"of {len(payloads)} invoices"
                    )
                logger.error(f"Invoice sync for {org_id} aborted: {message}")
                raise ProviderError(message)

            completed_at = datetime.now(timezone.utc)
            current = await self.connections.get(org_id)
            if current is None:
                raise NotConnectedError()

            update = ConnectionUpdate(last_sync_at=completed_at)
            # A refresh rejected mid-sync keeps token_expired; the rows are still stored
            if can_transition(current.status, ConnectionEvent.call_succeeded):
                update = ConnectionUpdate(
                    last_sync_at=completed_at,
                    status=transition(current.status, ConnectionEvent.call_succeeded),
                    error_message=None,
                )
            await self.connections.update(org_id, update)

            result.last_sync_at = completed_at
            logger.info(
                f"Invoice sync for {org_id} completed: {result.synced_count} synced, "
                f"{len(result.errors)} failed"
            )
            return result

    async def _upsert_invoices(
        self, org_id: str, payloads: list[InvoicePayload], result: SyncResult
    ) -> None:
        for payload in payloads:
            try:
                invoice = to_synced_invoice(
                    org_id, payload, datetime.now(timezone.utc)
                )
                await self.invoices.upsert(invoice)
                result.synced_count += 1
            except Exception as e:
                doc_number = payload.get("DocNumber")
                error = SyncError(
                    doc_number=str(doc_number) if doc_number is not None else None,
                    provider_invoice_id=str(payload.get("Id", "")),
                    message=f"Failed to sync invoice {doc_number}: {e}",
                )
                result.errors.append(error)
                logger.error(error.message)

    async def _get_customer(
        self, connection: Connection, customer_id: str
    ) -> QuickBooksCustomer:
        body = await self.api_client.request(
            connection,
            f"customer/{quote(customer_id, safe='')}",
            {"minorversion": MINOR_VERSION},
        )
        customer = body.get("Customer")
        if not customer:
            raise ProviderError(f"QuickBooks customer {customer_id} not found")
        return QuickBooksCustomer.model_validate(customer)

    async def _fetch_invoice_payloads(
        self, connection: Connection, customer_id: str
    ) -> list[InvoicePayload]:
        statement = (
            "SELECT * FROM Invoice "
            f"WHERE CustomerRef = '{escape_query_value(customer_id)}' "
            f"ORDERBY TxnDate DESC MAXRESULTS {INVOICE_FETCH_LIMIT}"
        )
        result = await self.api_client.query(connection, statement)
        invoices = result.get("Invoice")
        return invoices if isinstance(invoices, list) else []

    async def _require_connection(self, org_id: str) -> Connection:
        connection = await self.connections.get(org_id)
        if connection is None:
            raise NotConnectedError()
        return connection

    async def _record_fetch_failure(self, org_id: str, message: str) -> None:
        current = await self.connections.get(org_id)
        if current is None:
            return
        if not can_transition(current.status, ConnectionEvent.call_failed):
            logger.warning(
                f"Keeping {current.status.value} status for {org_id} after: {message}"
            )
            return
        await self.connections.update(
            org_id,
            ConnectionUpdate(
                status=transition(current.status, ConnectionEvent.call_failed),
                error_message=message,
            ),
        )
