from fastapi import APIRouter, Depends

from app.core.exceptions import NotFoundError
from app.db.base import RecordStore
from app.deps import get_current_principal, get_gateway, get_optional_principal, get_record_store
from app.models.order import Order
from app.services import hosting as hosting_service
from app.services import payments as payments_service
from app.services.auth import Principal, authorize_order_access
from app.services.gopay import GoPayClient

router = APIRouter()


def order_view(order: Order) -> dict:
    return {
        "order_id": order.id,
        "status": order.status,
        "payment_status": order.payment_status,
        "plan_id": order.plan_id,
        "plan_name": order.plan_name,
        "price": str(order.price),
        "currency": order.currency,
        "domain_name": order.domain_name,
        "created_at": order.created_at,
        "paid_at": order.paid_at,
    }


async def _load_order(store: RecordStore, order_id: int, principal: Principal) -> Order:
    order = await store.get_order(order_id)
    if order is None:
        raise NotFoundError("Order not found")
    authorize_order_access(principal, order)
    return order


@router.post("", status_code=201)
async def create_order(
    body: payments_service.CheckoutRequest,
    principal: Principal | None = Depends(get_optional_principal),
    store: RecordStore = Depends(get_record_store),
    gateway: GoPayClient = Depends(get_gateway),
):
    """Create the order and a GoPay payment; the client redirects to redirect_url."""
    user_id = principal.user_id if principal else None
    return await payments_service.create_checkout(store, gateway, body, user_id)


@router.get("/{order_id}")
async def get_order(
    order_id: int,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_record_store),
):
    order = await _load_order(store, order_id, principal)
    return order_view(order)


@router.get("/{order_id}/hosting")
async def get_order_hosting(
    order_id: int,
    principal: Principal = Depends(get_current_principal),
    store: RecordStore = Depends(get_record_store),
):
    """Panel login details for the owner once the account is provisioned."""
    await _load_order(store, order_id, principal)
    service = await hosting_service.get_service_for_order(store, order_id)
    return hosting_service.customer_hosting_view(service)
