from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse

from app.core.config import get_settings
from app.db.base import RecordStore
from app.deps import get_coordinator, get_gateway, get_record_store
from app.services import payments as payments_service
from app.services.gopay import GoPayClient
from app.services.provisioning import ProvisioningCoordinator

router = APIRouter()


@router.api_route("/return", methods=["GET", "POST"])
async def payment_return(
    request: Request,
    id: str = Query(..., description="GoPay payment id"),
    store: RecordStore = Depends(get_record_store),
    gateway: GoPayClient = Depends(get_gateway),
    coordinator: ProvisioningCoordinator = Depends(get_coordinator),
):
    """Customer is back from GoPay. GET redirects the browser to the result page, POST answers JSON."""
    result = await payments_service.reconcile_return(store, gateway, coordinator, id)
    view = result.customer_view()
    if request.method == "GET":
        base = get_settings().frontend_base_url.rstrip("/")
        return RedirectResponse(f"{base}/payment/result?{urlencode(view)}", status_code=303)
    return view


@router.api_route("/notify", methods=["GET", "POST"])
async def payment_notify(
    request: Request,
    id: str | None = Query(default=None),
    store: RecordStore = Depends(get_record_store),
    gateway: GoPayClient = Depends(get_gateway),
    coordinator: ProvisioningCoordinator = Depends(get_coordinator),
):
    """GoPay notification. Only the payment id is read; the status always comes from the API."""
    body = await request.body() if request.method == "POST" else None
    await payments_service.handle_notification(store, gateway, coordinator, id, body)
    return {"status": "ok"}
