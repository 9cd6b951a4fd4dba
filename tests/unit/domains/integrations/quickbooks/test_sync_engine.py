# tests/unit/domains/integrations/quickbooks/test_sync_engine.py
"""
Tests for SyncEngine customer mapping and invoice sync.
"""
import asyncio
import json
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest

from compliance_tracker.domains.integrations.quickbooks.api_client import ApiClient
from compliance_tracker.domains.integrations.quickbooks.locks import KeyedLock
from compliance_tracker.domains.integrations.quickbooks.models import (
    ConnectionStatus,
    ConnectionUpdate,
)
from compliance_tracker.domains.integrations.quickbooks.sync_engine import (
    SyncEngine,
    to_synced_invoice,
)
from compliance_tracker.domains.integrations.quickbooks.token_service import (
    TokenService,
)
from compliance_tracker.shared.exceptions import (
    CustomerNotMappedError,
    NotConnectedError,
    ProviderError,
    RefreshTokenInvalidError,
)
from tests.fixtures.quickbooks_fixtures import (
    CUSTOMER_PATH,
    QUERY_PATH,
    TEST_ORG_ID,
    TOKEN_PATH,
    InMemoryConnectionRepository,
    InMemoryInvoiceRepository,
    customer_payload,
    invoice_payload,
    query_response,
    token_payload,
)


def _build_engine(config, http_client, connections, invoices) -> SyncEngine:
    token_service = TokenService(config, http_client)
    api_client = ApiClient(token_service, connections, http_client, KeyedLock())
    return SyncEngine(api_client, connections, invoices, KeyedLock())


@pytest.fixture
def sync_engine(
    quickbooks_config, http_client, connection_repository, invoice_repository
) -> SyncEngine:
    return _build_engine(
        quickbooks_config, http_client, connection_repository, invoice_repository
    )


def _query_statement(request) -> str:
    return parse_qs(urlparse(str(request.url)).query)["query"][0]


class TestSearchCustomers:
    @pytest.mark.asyncio
    async def test_search_matches_display_or_company_name(
        self, sync_engine, connection_repository, make_connection, provider
    ) -> None:
        # Arrange
        await connection_repository.save(make_connection())
        provider.add(QUERY_PATH, 200, query_response("Customer", [customer_payload()]))

        # Act
        customers = await sync_engine.search_customers(TEST_ORG_ID, "O'Brien")

        # Assert
        assert [c.DisplayName for c in customers] == ["Acme Pty Ltd"]
        statement = _query_statement(provider.calls(QUERY_PATH)[0])
        assert "DisplayName LIKE '%O\\'Brien%'" in statement
        assert "CompanyName LIKE '%O\\'Brien%'" in statement
        assert statement.endswith("MAXRESULTS 50")

    @pytest.mark.asyncio
    async def test_empty_result_returns_empty_list(
        self, sync_engine, connection_repository, make_connection, provider
    ) -> None:
        await connection_repository.save(make_connection())
        provider.add(QUERY_PATH, 200, {"QueryResponse": {}})

        assert await sync_engine.search_customers(TEST_ORG_ID, "") == []

    @pytest.mark.asyncio
    async def test_search_requires_connection(self, sync_engine, provider) -> None:
        with pytest.raises(NotConnectedError):
            await sync_engine.search_customers(TEST_ORG_ID, "acme")

        assert provider.requests == []


class TestMapCustomer:
    @pytest.mark.asyncio
    async def test_map_customer_stores_id_and_name(
        self, sync_engine, connection_repository, make_connection, provider
    ) -> None:
        # Arrange
        await connection_repository.save(make_connection())
        provider.add(CUSTOMER_PATH, 200, {"Customer": customer_payload("58")})

        # Act
        connection = await sync_engine.map_customer(TEST_ORG_ID, "58")

        # Assert
        assert connection.mapped_customer_id == "58"
        assert connection.mapped_customer_name == "Acme Pty Ltd"
        assert provider.calls(QUERY_PATH) == []


class TestCustomerAndInvoiceLookup:
    @pytest.mark.asyncio
    async def test_get_customer(
        self, sync_engine, connection_repository, make_connection, provider
    ) -> None:
        await connection_repository.save(make_connection())
        provider.add(CUSTOMER_PATH, 200, {"Customer": customer_payload("58")})

        customer = await sync_engine.get_customer(TEST_ORG_ID, "58")

        assert customer.Id == "58"
        assert customer.PrimaryEmailAddr.Address == "accounts@acme.example"
        request = provider.calls(CUSTOMER_PATH)[0]
        assert request.url.params["minorversion"] == "65"

    @pytest.mark.asyncio
    async def test_get_customer_missing_body_is_provider_error(
        self, sync_engine, connection_repository, make_connection, provider
    ) -> None:
        await connection_repository.save(make_connection())
        provider.add(CUSTOMER_PATH, 200, {})

        with pytest.raises(ProviderError):
            await sync_engine.get_customer(TEST_ORG_ID, "404")

    @pytest.mark.asyncio
    async def test_fetch_invoices_for_customer(
        self, sync_engine, connection_repository, make_connection, provider
    ) -> None:
        await connection_repository.save(make_connection())
        provider.add(
            QUERY_PATH,
            200,
            query_response("Invoice", [invoice_payload("2"), invoice_payload("1")]),
        )

        invoices = await sync_engine.fetch_invoices_for_customer(TEST_ORG_ID, "58")

        assert [i.Id for i in invoices] == ["2", "1"]
        statement = _query_statement(provider.calls(QUERY_PATH)[0])
        assert "CustomerRef = '58'" in statement


class TestSyncInvoices:
    @pytest.mark.asyncio
    async def test_unmapped_customer_makes_no_http_calls(
        self, sync_engine, connection_repository, make_connection, provider
    ) -> None:
        await connection_repository.save(make_connection())

        with pytest.raises(CustomerNotMappedError) as exc_info:
            await sync_engine.sync_invoices(TEST_ORG_ID)

        assert exc_info.value.code == "CUSTOMER_NOT_MAPPED"
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_missing_connection_raises_not_connected(self, sync_engine) -> None:
        with pytest.raises(NotConnectedError):
            await sync_engine.sync_invoices(TEST_ORG_ID)

    @pytest.mark.asyncio
    async def test_sync_upserts_all_invoices(
        self,
        sync_engine,
        connection_repository,
        invoice_repository,
        make_connection,
        provider,
    ) -> None:
        # Arrange
        await connection_repository.save(make_connection(mapped_customer_id="58"))
        provider.add(
            QUERY_PATH,
            200,
            query_response(
                "Invoice",
                [invoice_payload("130", txn_date="2024-03-01"), invoice_payload("129")],
            ),
        )

        # Act
        result = await sync_engine.sync_invoices(TEST_ORG_ID)

        # Assert
        assert result.synced_count == 2
        assert result.errors == []
        assert result.last_sync_at is not None

        statement = _query_statement(provider.calls(QUERY_PATH)[0])
        assert "WHERE CustomerRef = '58'" in statement
        assert "ORDERBY TxnDate DESC" in statement
        assert statement.endswith("MAXRESULTS 500")

        cached = await invoice_repository.list_for_organization(TEST_ORG_ID)
        assert [i.provider_invoice_id for i in cached] == ["130", "129"]

        stored = await connection_repository.get(TEST_ORG_ID)
        assert stored.last_sync_at == result.last_sync_at
        assert stored.status == ConnectionStatus.connected

    @pytest.mark.asyncio
    async def test_failing_row_does_not_abort_sync(
        self,
        quickbooks_config,
        http_client,
        connection_repository,
        make_connection,
        provider,
    ) -> None:
        # Arrange
        invoices = InMemoryInvoiceRepository(fail_on={"3"})
        engine = _build_engine(
            quickbooks_config, http_client, connection_repository, invoices
        )
        await connection_repository.save(make_connection(mapped_customer_id="58"))
        provider.add(
            QUERY_PATH,
            200,
            query_response(
                "Invoice", [invoice_payload(str(n), f"100{n}") for n in range(1, 6)]
            ),
        )

        # Act
        result = await engine.sync_invoices(TEST_ORG_ID)

        # Assert
        assert result.synced_count == 4
        assert len(result.errors) == 1
        assert result.errors[0].provider_invoice_id == "3"
        assert result.errors[0].doc_number == "1003"
        assert "1003" in result.errors[0].message

        stored = await connection_repository.get(TEST_ORG_ID)
        assert stored.last_sync_at is not None
        assert stored.status == ConnectionStatus.connected

    @pytest.mark.asyncio
    async def test_malformed_row_is_collected(
        self, sync_engine, connection_repository, make_connection, provider
    ) -> None:
        await connection_repository.save(make_connection(mapped_customer_id="58"))
        broken = invoice_payload("2")
        del broken["TxnDate"]
        provider.add(
            QUERY_PATH, 200, query_response("Invoice", [invoice_payload("1"), broken])
        )

        result = await sync_engine.sync_invoices(TEST_ORG_ID)

        assert result.synced_count == 1
        assert result.errors[0].provider_invoice_id == "2"

    @pytest.mark.asyncio
    async def test_resync_overwrites_cached_invoice(
        self,
        sync_engine,
        connection_repository,
        invoice_repository,
        make_connection,
        provider,
    ) -> None:
        # Arrange
        await connection_repository.save(make_connection(mapped_customer_id="58"))
        provider.add(
            QUERY_PATH,
            200,
            query_response("Invoice", [invoice_payload("7", balance="80.00")]),
        )
        provider.add(
            QUERY_PATH,
            200,
            query_response("Invoice", [invoice_payload("7", balance="0.00")]),
        )

        # Act
        await sync_engine.sync_invoices(TEST_ORG_ID)
        await sync_engine.sync_invoices(TEST_ORG_ID)

        # Assert
        cached = await invoice_repository.list_for_organization(TEST_ORG_ID)
        assert len(cached) == 1
        assert cached[0].balance == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_fetch_failure_marks_connection_errored(
        self, sync_engine, connection_repository, make_connection, provider
    ) -> None:
        await connection_repository.save(make_connection(mapped_customer_id="58"))
        provider.add(
            QUERY_PATH, 500, {"Fault": {"Error": [{"Message": "Service unavailable"}]}}
        )

        with pytest.raises(ProviderError):
            await sync_engine.sync_invoices(TEST_ORG_ID)

        stored = await connection_repository.get(TEST_ORG_ID)
        assert stored.status == ConnectionStatus.error
        assert "Service unavailable" in stored.error_message
        assert stored.last_sync_at is None

    @pytest.mark.asyncio
    async def test_deadline_aborts_slow_fetch(
        self, sync_engine, connection_repository, make_connection, provider
    ) -> None:
        await connection_repository.save(make_connection(mapped_customer_id="58"))
        provider.add(QUERY_PATH, 200, query_response("Invoice", []))
        provider.delay = 0.5

        with pytest.raises(ProviderError) as exc_info:
            await sync_engine.sync_invoices(TEST_ORG_ID, deadline=0.05)

        assert "timed out" in exc_info.value.message
        stored = await connection_repository.get(TEST_ORG_ID)
        assert stored.status == ConnectionStatus.error

    @pytest.mark.asyncio
    async def test_expired_authorization_is_not_marked_as_error(
        self, sync_engine, connection_repository, make_connection, provider
    ) -> None:
        await connection_repository.save(
            make_connection(
                mapped_customer_id="58",
                status=ConnectionStatus.token_expired,
            )
        )

        with pytest.raises(RefreshTokenInvalidError):
            await sync_engine.sync_invoices(TEST_ORG_ID)

        stored = await connection_repository.get(TEST_ORG_ID)
        assert stored.status == ConnectionStatus.token_expired
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_deadline_during_refresh_keeps_rotated_tokens(
        self, sync_engine, connection_repository, make_connection, provider
    ) -> None:
        # Arrange
        await connection_repository.save(
            make_connection(
                mapped_customer_id="58",
                access_token_expires_at=datetime.now(timezone.utc)
                + timedelta(minutes=2),
            )
        )
        provider.add(
            TOKEN_PATH, 200, token_payload("rotated-access", "rotated-refresh")
        )
        provider.add(QUERY_PATH, 200, query_response("Invoice", [invoice_payload("1")]))
        provider.delay = 0.2

        # Act
        with pytest.raises(ProviderError):
            await sync_engine.sync_invoices(TEST_ORG_ID, deadline=0.05)
        await asyncio.sleep(0.4)
        provider.delay = 0
        result = await sync_engine.sync_invoices(TEST_ORG_ID)

        # Assert
        assert result.synced_count == 1
        stored = await connection_repository.get(TEST_ORG_ID)
        assert stored.refresh_token == "rotated-refresh"
        assert stored.status == ConnectionStatus.connected
        assert len(provider.calls(TOKEN_PATH)) == 1

    @pytest.mark.asyncio
    async def test_refresh_rejected_mid_sync_still_records_sync_time(
        self, sync_engine, connection_repository, make_connection, provider
    ) -> None:
        # Arrange
        await connection_repository.save(make_connection(mapped_customer_id="58"))
        provider.add(QUERY_PATH, 200, query_response("Invoice", [invoice_payload("1")]))
        original_upsert = sync_engine.invoices.upsert

        async def upsert_then_reject(invoice):
            # A concurrent caller's refresh is rejected while rows are written
            await connection_repository.update(
                TEST_ORG_ID,
                ConnectionUpdate(
                    status=ConnectionStatus.token_expired,
                    error_message="Refresh token rejected",
                ),
            )
            return await original_upsert(invoice)

        # Act
        with patch.object(sync_engine.invoices, "upsert", upsert_then_reject):
            result = await sync_engine.sync_invoices(TEST_ORG_ID)

        # Assert
        assert result.synced_count == 1
        stored = await connection_repository.get(TEST_ORG_ID)
        assert stored.last_sync_at == result.last_sync_at
        assert stored.status == ConnectionStatus.token_expired
        assert stored.error_message == "Refresh token rejected"

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_token_expired_status(
        self, sync_engine, connection_repository, make_connection, provider
    ) -> None:
        await connection_repository.save(make_connection(mapped_customer_id="58"))
        provider.add(QUERY_PATH, 500, {"Fault": {"Error": [{"Message": "Down"}]}})
        original_get = sync_engine.api_client.http_client.get

        async def get_then_reject(*args, **kwargs):
            response = await original_get(*args, **kwargs)
            await connection_repository.update(
                TEST_ORG_ID,
                ConnectionUpdate(
                    status=ConnectionStatus.token_expired,
                    error_message="Refresh token rejected",
                ),
            )
            return response

        with patch.object(sync_engine.api_client.http_client, "get", get_then_reject):
            with pytest.raises(ProviderError):
                await sync_engine.sync_invoices(TEST_ORG_ID)

        stored = await connection_repository.get(TEST_ORG_ID)
        assert stored.status == ConnectionStatus.token_expired
        assert stored.error_message == "Refresh token rejected"


class SyncWriteLog(InMemoryConnectionRepository):
    """Records how many invoice queries had been sent at each last_sync_at write."""

    def __init__(self, provider) -> None:
        super().__init__()
        self.provider = provider
        self.queries_at_sync_write: list[int] = []

    async def update(self, organization_id, update):
        if "last_sync_at" in update.changes():
            self.queries_at_sync_write.append(len(self.provider.calls(QUERY_PATH)))
        return await super().update(organization_id, update)


class TestSyncSerialization:
    @pytest.mark.asyncio
    async def test_concurrent_syncs_for_one_org_run_one_at_a_time(
        self,
        quickbooks_config,
        http_client,
        invoice_repository,
        make_connection,
        provider,
    ) -> None:
        # Arrange
        connections = SyncWriteLog(provider)
        await connections.save(make_connection(mapped_customer_id="58"))
        engine = _build_engine(
            quickbooks_config, http_client, connections, invoice_repository
        )
        provider.add(QUERY_PATH, 200, query_response("Invoice", [invoice_payload("1")]))
        provider.delay = 0.05

        # Act
        results = await asyncio.gather(
            engine.sync_invoices(TEST_ORG_ID), engine.sync_invoices(TEST_ORG_ID)
        )

        # Assert
        assert [r.synced_count for r in results] == [1, 1]
        # The second fetch is only sent after the first sync recorded its time
        assert connections.queries_at_sync_write == [1, 2]

    @pytest.mark.asyncio
    async def test_syncs_for_different_orgs_run_in_parallel(
        self,
        quickbooks_config,
        http_client,
        invoice_repository,
        make_connection,
        provider,
    ) -> None:
        # Arrange
        connections = SyncWriteLog(provider)
        await connections.save(make_connection(mapped_customer_id="58"))
        await connections.save(
            make_connection(organization_id="other-org", mapped_customer_id="58")
        )
        engine = _build_engine(
            quickbooks_config, http_client, connections, invoice_repository
        )
        provider.add(QUERY_PATH, 200, query_response("Invoice", [invoice_payload("1")]))
        provider.delay = 0.05

        # Act
        await asyncio.gather(
            engine.sync_invoices(TEST_ORG_ID), engine.sync_invoices("other-org")
        )

        # Assert
        assert connections.queries_at_sync_write == [2, 2]


class TestToSyncedInvoice:
    def test_maps_payload_fields(self) -> None:
        payload = invoice_payload("130", "1037", balance="12.34", total="56.78")
        synced_at = datetime.now(timezone.utc)

        invoice = to_synced_invoice(TEST_ORG_ID, payload, synced_at)

        assert invoice.provider_invoice_id == "130"
        assert invoice.provider_doc_number == "1037"
        assert invoice.provider_customer_id == "58"
        assert invoice.balance == Decimal("12.34")
        assert invoice.total_amount == Decimal("56.78")
        assert invoice.transaction_date == date(2024, 1, 15)
        assert invoice.due_date == date(2024, 2, 14)
        assert json.loads(invoice.raw_payload) == payload
        assert invoice.last_synced_at - synced_at < timedelta(seconds=1)
