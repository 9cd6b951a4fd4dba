# compliance_tracker/domains/integrations/quickbooks/routes.py
import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Cookie, Depends, Query, Request, Response, status
from fastapi.responses import RedirectResponse

from compliance_tracker.core.settings import settings
from compliance_tracker.shared.exceptions import IntegrationError

from .dependencies import get_quickbooks_service
from .models import (
    AuthUrlResponse,
    CallbackParams,
    ConnectionStatusResponse,
    CustomerMappingRequest,
    DisconnectResponse,
    HealthCheckResponse,
    QuickBooksCustomer,
    SyncedInvoice,
    SyncResult,
)
from .service import QuickBooksService

logger = logging.getLogger(__name__)

STATE_COOKIE = "qb_oauth_state"

# Router for QuickBooks integration endpoints
router = APIRouter(prefix="/quickbooks", tags=["QuickBooks"])


def _dashboard_redirect(params: dict[str, str]) -> RedirectResponse:
    base_url = (settings.FRONTEND_URL or "").rstrip("/")
    response = RedirectResponse(
        url=f"{base_url}/dashboard?{urlencode(params)}",
        status_code=status.HTTP_302_FOUND,
    )
    response.delete_cookie(STATE_COOKIE, path="/")
    return response


@router.get(
    "/health",
    response_model=HealthCheckResponse,
    operation_id="quickbooksHealthCheck",
)
async def quickbooks_health_check(
    service: QuickBooksService = Depends(get_quickbooks_service),
) -> HealthCheckResponse:
    """Report QuickBooks configuration without calling the provider."""
    return service.health_check()


@router.post(
    "/{org_id}/connect",
    response_model=AuthUrlResponse,
    status_code=status.HTTP_200_OK,
    operation_id="startQuickbooksConnection",
)
async def start_quickbooks_connection(
    org_id: str,
    request: Request,
    response: Response,
    service: QuickBooksService = Depends(get_quickbooks_service),
) -> AuthUrlResponse:
    """
    Start the QuickBooks OAuth connection process for an organization.

    Generates the authorization URL the frontend redirects to. The CSRF
    state is also signed into an HTTP-only cookie so the callback can prove
    it belongs to this browser on any worker.

    **Business Rules**:
    - State expires in 30 minutes; the callback clears the cookie
    - Reconnecting an already connected organization reauthorizes it

    Raises:
        HTTP 500: If QuickBooks credentials or JWT_SECRET are not configured
    """
    auth = await service.start_connection(org_id)

    response.set_cookie(
        STATE_COOKIE,
        auth.state_token,
        max_age=settings.QB_STATE_TTL_MINUTES * 60,
        path="/",
        httponly=True,
        secure=request.url.scheme == "https",
        samesite="lax",
    )
    return auth


@router.get("/callback", operation_id="quickbooksOAuthCallback")
async def quickbooks_oauth_callback(
    code: Optional[str] = Query(None, description="OAuth authorization code"),
    state: Optional[str] = Query(None, description="CSRF state token"),
    realm_id: Optional[str] = Query(
        None, alias="realmId", description="QuickBooks company ID"
    ),
    error: Optional[str] = Query(None, description="OAuth error code"),
    error_description: Optional[str] = Query(
        None, description="OAuth error description"
    ),
    state_token: Optional[str] = Cookie(None, alias=STATE_COOKIE),
    service: QuickBooksService = Depends(get_quickbooks_service),
) -> RedirectResponse:
    """
    Handle the OAuth callback from QuickBooks after user authorization.

    **No authentication required** - callback from external service

    **Redirect Behavior**:
    - Success: `/dashboard?quickbooks_connected=true&realm_id={realm}`
    - Error: `/dashboard?error={error_code}&message={description}`
    """
    callback_params = CallbackParams(
        code=code,
        state=state,
        realm_id=realm_id,
        error=error,
        error_description=error_description,
    )

    try:
        connection = await service.complete_connection(
            callback_params, state_token
        )
    except IntegrationError as e:
        logger.warning(f"QuickBooks callback rejected: {e}")
        return _dashboard_redirect({"error": e.code, "message": e.message})
    except Exception as e:
        logger.error(f"QuickBooks callback failed: {e}", exc_info=True)
        return _dashboard_redirect(
            {"error": "CONNECTION_FAILED", "message": "Connection failed"}
        )

    return _dashboard_redirect(
        {"quickbooks_connected": "true", "realm_id": connection.realm_id}
    )


@router.get(
    "/{org_id}/status",
    response_model=ConnectionStatusResponse,
    operation_id="getQuickbooksConnectionStatus",
)
async def get_quickbooks_connection_status(
    org_id: str,
    service: QuickBooksService = Depends(get_quickbooks_service),
) -> ConnectionStatusResponse:
    """
    Get the stored QuickBooks connection status for an organization.

    **Status Values**:
    - `connected`: Usable connection
    - `token_expired`: Refresh token rejected; reconnect required
    - `error`: Last provider call failed
    - `disconnected`: No connection exists
    """
    return await service.get_connection_status(org_id)


@router.delete(
    "/{org_id}",
    response_model=DisconnectResponse,
    operation_id="disconnectQuickbooks",
)
async def disconnect_quickbooks(
    org_id: str,
    service: QuickBooksService = Depends(get_quickbooks_service),
) -> DisconnectResponse:
    """
    Disconnect QuickBooks for an organization.

    **Operations Performed**:
    1. Revoke tokens at QuickBooks (best effort)
    2. Delete cached invoices
    3. Delete the connection

    Raises:
        HTTP 404: If no QuickBooks connection exists for the organization
    """
    return await service.disconnect(org_id)


@router.get(
    "/{org_id}/customers",
    response_model=list[QuickBooksCustomer],
    operation_id="searchQuickbooksCustomers",
)
async def search_quickbooks_customers(
    org_id: str,
    search: str = Query("", description="Display or company name fragment"),
    service: QuickBooksService = Depends(get_quickbooks_service),
) -> list[QuickBooksCustomer]:
    return await service.search_customers(org_id, search)


@router.post(
    "/{org_id}/customer-mapping",
    response_model=ConnectionStatusResponse,
    operation_id="mapQuickbooksCustomer",
)
async def map_quickbooks_customer(
    org_id: str,
    mapping: CustomerMappingRequest,
    service: QuickBooksService = Depends(get_quickbooks_service),
) -> ConnectionStatusResponse:
    """Link a QuickBooks customer to the organization."""
    connection = await service.map_customer(org_id, mapping.customer_id)
    return ConnectionStatusResponse.from_connection(connection)


@router.get(
    "/{org_id}/invoices",
    response_model=list[SyncedInvoice],
    operation_id="listQuickbooksInvoices",
)
async def list_quickbooks_invoices(
    org_id: str,
    service: QuickBooksService = Depends(get_quickbooks_service),
) -> list[SyncedInvoice]:
    return await service.list_invoices(org_id)


@router.post(
    "/{org_id}/sync",
    response_model=SyncResult,
    operation_id="syncQuickbooksInvoices",
)
async def sync_quickbooks_invoices(
    org_id: str,
    deadline: Optional[float] = Query(
        None, gt=0, description="Time budget for the sync in seconds"
    ),
    service: QuickBooksService = Depends(get_quickbooks_service),
) -> SyncResult:
    """
    Sync the mapped customer's invoices from QuickBooks.

    Runs inline so the caller gets per-invoice failures back.

    Raises:
        HTTP 400: If no customer is mapped
        HTTP 404: If QuickBooks is not connected
        HTTP 429: If QuickBooks rate limits the fetch
        HTTP 502: If the fetch fails
    """
    return await service.sync_invoices(org_id, deadline=deadline)
