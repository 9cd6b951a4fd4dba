# compliance_tracker/domains/integrations/quickbooks/dependencies.py
from dataclasses import dataclass, field
from datetime import timedelta

import httpx
from fastapi import Request

from compliance_tracker.core.settings import settings

from .config import resolve_quickbooks_config
from .locks import KeyedLock
from .service import QuickBooksService
from .state_token import OAuthStateSigner


@dataclass
class QuickBooksRuntime:
    """Process-wide state shared by every QuickBooks request."""

    http_client: httpx.AsyncClient
    state_signer: OAuthStateSigner
    refresh_locks: KeyedLock = field(default_factory=KeyedLock)
    sync_locks: KeyedLock = field(default_factory=KeyedLock)

    @classmethod
    def create(cls) -> "QuickBooksRuntime":
        return cls(
            http_client=httpx.AsyncClient(
                timeout=httpx.Timeout(settings.QB_HTTP_TIMEOUT_SECONDS)
            ),
            state_signer=OAuthStateSigner(
                settings.JWT_SECRET,
                ttl=timedelta(minutes=settings.QB_STATE_TTL_MINUTES),
            ),
        )

    async def aclose(self) -> None:
        await self.http_client.aclose()


def get_runtime(request: Request) -> QuickBooksRuntime:
    return request.app.state.quickbooks


async def get_quickbooks_service(request: Request) -> QuickBooksService:
    """Build a QuickBooksService backed by the database for this request."""
    from compliance_tracker.core.database import get_db

    from .prisma_repositories import (
        PrismaAuditSink,
        PrismaConnectionRepository,
        PrismaInvoiceRepository,
        PrismaSettingsRepository,
    )

    db = await get_db()
    runtime = get_runtime(request)
    stored = await PrismaSettingsRepository(db).get_all()
    config = resolve_quickbooks_config(
        stored, settings, serving_base_url=str(request.base_url), strict=False
    )

    return QuickBooksService(
        config=config,
        http_client=runtime.http_client,
        connections=PrismaConnectionRepository(db),
        invoices=PrismaInvoiceRepository(db),
        audit=PrismaAuditSink(db),
        state_signer=runtime.state_signer,
        refresh_locks=runtime.refresh_locks,
        sync_locks=runtime.sync_locks,
    )
