"""GoPay checkout and payment reconciliation.

Every path that learns about a payment (customer return, gateway
notification, worker) ends in ``reconcile_payment``, which trusts nothing but
a fresh status read from the gateway client and is safe to run any number of
times, in any order.
"""

import asyncio
from datetime import datetime
from decimal import Decimal

import orjson
from pydantic import BaseModel, Field

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import (
    BadRequestError,
    GatewayInvalidRequest,
    GatewayUnavailable,
    NotFoundError,
    UntrustedPaymentStatusError,
)
from app.core.logging import bind_order_id, get_logger
from app.db.base import RecordStore
from app.models.hosting_service import SagaState
from app.models.order import Order
from app.services import hosting as hosting_service
from app.services.gopay import GatewayPaymentStatus, GoPayClient, PaymentState
from app.services.provisioning import ProvisioningCoordinator, ProvisioningOutcome

log = get_logger(__name__)

# gateway state -> (payment_status, order status)
_STATE_MAP = {
    PaymentState.PAID: ("paid", "processing"),
    PaymentState.CANCELED: ("failed", "cancelled"),
    PaymentState.AUTHORIZATION_DECLINED: ("failed", "cancelled"),
    PaymentState.PAYMENT_METHOD_DISABLED: ("failed", "cancelled"),
    PaymentState.TIMEOUTED: ("failed", "expired"),
    PaymentState.REFUNDED: ("refunded", "cancelled"),
}

# Allowed payment_status moves; anything else is a stale or out-of-order read
_PAYMENT_TRANSITIONS = {
    "unpaid": {"paid", "failed"},
    "failed": {"paid"},
    "paid": {"refunded"},
    "refunded": set(),
}


class CheckoutRequest(BaseModel):
    plan_id: str
    plan_name: str
    price: Decimal = Field(gt=0)
    currency: str = "CZK"
    billing_period_months: int = Field(default=12, ge=1, le=120)
    customer_name: str = Field(min_length=1)
    customer_email: str = Field(min_length=3)
    customer_phone: str | None = None
    billing_company: str | None = None
    billing_address: str | None = None
    billing_city: str | None = None
    billing_zip: str | None = None
    billing_country: str | None = None
    billing_ico: str | None = None
    billing_dic: str | None = None
    domain_name: str | None = None


class CheckoutResponse(BaseModel):
    order_id: int
    payment_id: str
    redirect_url: str


class ReconcileResult(BaseModel):
    order_id: int
    status: str
    payment_status: str
    gateway_state: str
    final: bool
    provisioning: ProvisioningOutcome | None = None

    def customer_view(self) -> dict:
        """What the paying customer may see: no saga or panel detail."""
        return {"order_id": self.order_id, "status": self.status, "payment_status": self.payment_status}


async def create_checkout(
    store: RecordStore,
    gateway: GoPayClient,
    data: CheckoutRequest,
    user_id: str | None = None,
) -> CheckoutResponse:
    """Record a pending order and open a GoPay payment for it."""
    settings = get_settings()
    fields = data.model_dump()
    fields["domain_name"] = hosting_service.normalize_domain(data.domain_name)
    fields["customer_email"] = data.customer_email.strip().lower()
    order = Order(id=await store.next_id("orders"), user_id=user_id, **fields)
    order = await store.insert_order(order)
    bind_order_id(order.id)

    base = settings.public_base_url.rstrip("/")
    try:
        intent = await gateway.create_payment_intent(
            order,
            return_url=f"{base}/v1/payments/return",
            notify_url=f"{base}/v1/payments/notify",
        )
    except (GatewayUnavailable, GatewayInvalidRequest) as e:
        # Order stays pending/unpaid without a payment id
        log.warning("checkout_gateway_failed", code=e.code, error=e.message)
        raise

    await store.update_order(order.id, {
        "payment_id": intent.intent_id,
        "gateway_status": intent.state or PaymentState.CREATED.value,
        "updated_at": datetime.utcnow(),
    })
    await log_event(
        store, user_id, "order_created", "order", str(order.id),
        {"payment_id": intent.intent_id, "plan_id": order.plan_id, "price": str(order.price)},
    )
    log.info("checkout_created", payment_id=intent.intent_id, plan_id=order.plan_id)
    return CheckoutResponse(order_id=order.id, payment_id=intent.intent_id, redirect_url=intent.redirect_url)


async def apply_payment_status(store: RecordStore, order: Order, status: GatewayPaymentStatus) -> Order:
    """Move the order's payment status forward from an authoritative gateway read.

    Only a GatewayPaymentStatus from the gateway client is accepted; regressing
    reads (e.g. CREATED arriving after PAID) are ignored.
    """
    if not isinstance(status, GatewayPaymentStatus):
        raise UntrustedPaymentStatusError(
            f"Refusing to update order {order.id} from {type(status).__name__}; "
            "only gateway status reads may change payment status"
        )
    if status.intent_id != order.payment_id:
        raise UntrustedPaymentStatusError(
            f"Status for payment {status.intent_id} does not belong to order {order.id}"
        )

    while True:
        now = datetime.utcnow()
        fields: dict = {"gateway_status": status.state.value, "updated_at": now}
        target = _STATE_MAP.get(status.state)
        if status.state == PaymentState.PARTIALLY_REFUNDED and order.payment_status != "paid":
            # The PAID read was missed; a partial refund still means the payment was captured
            target = ("paid", "processing")
        if target is None:
            # Pending states and PARTIALLY_REFUNDED on a paid order leave payment_status alone
            recordable = "paid" if status.state == PaymentState.PARTIALLY_REFUNDED else "unpaid"
            if order.payment_status != recordable:
                log.info("payment_read_ignored", gateway_state=status.state.value, payment_status=order.payment_status)
                return order
            if order.gateway_status == status.state.value:
                return order
        else:
            payment_status, order_status = target
            if payment_status == order.payment_status:
                return order
            if payment_status not in _PAYMENT_TRANSITIONS[order.payment_status]:
                log.warning(
                    "payment_regression_ignored",
                    gateway_state=status.state.value,
                    payment_status=order.payment_status,
                )
                return order
            fields["payment_status"] = payment_status
            fields["status"] = order_status
            if payment_status == "paid":
                fields["paid_at"] = now

        updated = await store.update_order(order.id, fields, expected={"payment_status": order.payment_status})
        if updated is not None:
            if "payment_status" in fields:
                log.info(
                    "payment_status_changed",
                    old=order.payment_status,
                    new=updated.payment_status,
                    gateway_state=status.state.value,
                )
                await log_event(
                    store, order.user_id, f"payment_{updated.payment_status}", "order", str(order.id),
                    {"payment_id": order.payment_id, "gateway_state": status.state.value},
                )
            return updated
        # A concurrent reconcile moved the order; decide again from what it wrote
        order = await store.get_order(order.id)


async def reconcile_payment(
    store: RecordStore,
    gateway: GoPayClient,
    coordinator: ProvisioningCoordinator,
    intent_id: str,
) -> ReconcileResult:
    """Bring the order for ``intent_id`` in line with the gateway and provision when paid."""
    order = await store.find_order_by_payment_id(intent_id)
    if order is None:
        raise NotFoundError("Unknown payment")
    bind_order_id(order.id)

    status = await gateway.get_payment_status(intent_id)
    order = await apply_payment_status(store, order, status)

    outcome = None
    if order.payment_status == "paid":
        service = await store.get_hosting_service_by_order(order.id)
        if service is None or service.saga_state != SagaState.PROVISIONED:
            outcome = await coordinator.provision(order.id)
            order = await store.get_order(order.id)
    elif order.payment_status == "refunded":
        service = await store.get_hosting_service_by_order(order.id)
        if service is not None and service.hestia_created and service.status == "active":
            await hosting_service.suspend_service(store, coordinator.panel, order.id, reason="refunded")

    log.info(
        "payment_reconciled",
        gateway_state=status.state.value,
        payment_status=order.payment_status,
        status=order.status,
        provisioning=outcome.result if outcome else None,
    )
    return ReconcileResult(
        order_id=order.id,
        status=order.status,
        payment_status=order.payment_status,
        gateway_state=status.state.value,
        final=status.is_final,
        provisioning=outcome,
    )


async def reconcile_return(
    store: RecordStore,
    gateway: GoPayClient,
    coordinator: ProvisioningCoordinator,
    intent_id: str,
    attempts: int | None = None,
    interval: float | None = None,
) -> ReconcileResult:
    """Customer came back from the gateway: reconcile, polling while the payment is still open."""
    settings = get_settings()
    attempts = max(1, attempts if attempts is not None else settings.return_poll_attempts)
    interval = interval if interval is not None else settings.return_poll_interval_seconds
    for attempt in range(1, attempts + 1):
        result = await reconcile_payment(store, gateway, coordinator, intent_id)
        if result.final or attempt == attempts:
            return result
        log.info("payment_return_poll", attempt=attempt, gateway_state=result.gateway_state)
        await asyncio.sleep(interval)
    return result


def extract_payment_id(query_id: str | None, body: bytes | None) -> str:
    """Payment id from a notification; nothing else in the payload is used."""
    if query_id:
        return query_id
    if body:
        try:
            data = orjson.loads(body)
        except orjson.JSONDecodeError:
            data = None
        if isinstance(data, dict) and data.get("id") is not None:
            return str(data["id"])
    raise BadRequestError("Missing payment id")


async def handle_notification(
    store: RecordStore,
    gateway: GoPayClient,
    coordinator: ProvisioningCoordinator,
    query_id: str | None,
    body: bytes | None = None,
) -> ReconcileResult:
    """GoPay notification: untrusted, possibly duplicated or out of order."""
    intent_id = extract_payment_id(query_id, body)
    log.info("payment_notification", payment_id=intent_id)
    return await reconcile_payment(store, gateway, coordinator, intent_id)
