import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from compliance_tracker.core.database import connect_db, disconnect_db
from compliance_tracker.core.settings import settings
from compliance_tracker.domains.integrations.quickbooks.dependencies import (
    QuickBooksRuntime,
)
from compliance_tracker.domains.integrations.quickbooks.routes import (
    router as quickbooks_router,
)

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await connect_db()
    app.state.quickbooks = QuickBooksRuntime.create()
    yield
    # Shutdown
    await app.state.quickbooks.aclose()
    await disconnect_db()


app = FastAPI(
    title="Compliance Tracker API",
    description="API for the compliance tracker's QuickBooks integration",
    version="0.1.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL] if settings.FRONTEND_URL else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(quickbooks_router, prefix="/api")


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Compliance Tracker API is running"}


@app.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}
