"""In-process stand-ins for the GoPay and HestiaCP clients."""

import asyncio
import itertools
from collections import deque
from decimal import Decimal

from app.core.exceptions import GatewayInvalidRequest, PanelAlreadyExists, PanelCommandError
from app.core.security import create_access_token
from app.models.order import Order
from app.services.gopay import GatewayPaymentStatus, PaymentIntent, PaymentState, to_minor_units
from app.services.hestiacp import PanelUser, SslResult, generate_password, generate_username


class FakePanel:
    """Keeps users and domains in dicts and records every call.

    Each call yields to the event loop once so concurrent sagas interleave.
    ``fail["create_web_domain"] = PanelCommandError(...)`` makes that call raise.
    """

    def __init__(self, base_url: str = "https://panel.test:8083") -> None:
        self.base_url = base_url
        self.users: dict[str, dict] = {}
        self.domains: dict[str, set[str]] = {}
        self.suspended: set[str] = set()
        self.calls: list[tuple] = []
        self.fail: dict[str, Exception] = {}
        self.ssl_ok = True

    async def _enter(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        await asyncio.sleep(0)
        exc = self.fail.get(name)
        if exc is not None:
            raise exc

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    async def user_exists(self, username: str) -> bool:
        await self._enter("user_exists", username)
        return username in self.users

    async def domain_exists(self, username: str, domain: str) -> bool:
        await self._enter("domain_exists", username, domain)
        return domain in self.domains.get(username, set())

    async def create_user(self, email, username=None, password=None, package=None) -> PanelUser:
        await self._enter("create_user", username)
        user = PanelUser(
            username=username or generate_username(email),
            password=password or generate_password(),
            package=package or "default",
        )
        if user.username in self.users:
            raise PanelAlreadyExists("v-add-user", user.username)
        self.users[user.username] = {"email": email, "password": user.password, "package": user.package}
        return user

    async def create_web_domain(self, username: str, domain: str, ip: str | None = None) -> bool:
        await self._enter("create_web_domain", username, domain)
        if username not in self.users:
            raise PanelCommandError("v-add-web-domain", "3")
        owned = self.domains.setdefault(username, set())
        if domain in owned:
            return False
        if any(domain in other for name, other in self.domains.items() if name != username):
            raise PanelCommandError("v-add-web-domain", "4", f"Domain {domain} belongs to another account")
        owned.add(domain)
        return True

    async def setup_ssl(self, username: str, domain: str) -> SslResult:
        await self._enter("setup_ssl", username, domain)
        if self.ssl_ok:
            return SslResult(ok=True)
        return SslResult(ok=False, warning="SSL setup failed (15); it can be retried once DNS points at the server")

    async def delete_user(self, username: str) -> None:
        await self._enter("delete_user", username)
        self.users.pop(username, None)
        self.domains.pop(username, None)
        self.suspended.discard(username)

    async def suspend_user(self, username: str) -> None:
        await self._enter("suspend_user", username)
        self.suspended.add(username)

    async def unsuspend_user(self, username: str) -> None:
        await self._enter("unsuspend_user", username)
        self.suspended.discard(username)

    def login_url(self, username: str) -> str:
        return f"{self.base_url}/login/?user={username}"


class FakeGateway:
    """Payment states per intent id. ``script(id, [...])`` queues states for successive reads."""

    def __init__(self) -> None:
        self.states: dict[str, PaymentState] = {}
        self.scripted: dict[str, deque] = {}
        self.created: list[dict] = []
        self.status_reads = 0
        self.fail_create: Exception | None = None
        self._ids = itertools.count(3000000001)

    def set_state(self, intent_id: str, state: PaymentState) -> None:
        self.states[intent_id] = state

    def script(self, intent_id: str, states: list[PaymentState]) -> None:
        self.scripted[intent_id] = deque(states)

    async def create_payment_intent(self, order: Order, return_url: str, notify_url: str) -> PaymentIntent:
        if self.fail_create is not None:
            raise self.fail_create
        intent_id = str(next(self._ids))
        self.states[intent_id] = PaymentState.CREATED
        self.created.append({
            "order_id": order.id,
            "amount": to_minor_units(order.price),
            "currency": order.currency,
            "return_url": return_url,
            "notify_url": notify_url,
        })
        return PaymentIntent(
            intent_id=intent_id,
            redirect_url=f"https://gw.sandbox.gopay.com/gw/v3/{intent_id}",
            state="CREATED",
        )

    async def get_payment_status(self, intent_id: str) -> GatewayPaymentStatus:
        self.status_reads += 1
        queued = self.scripted.get(intent_id)
        if queued:
            self.states[intent_id] = queued.popleft()
        if intent_id not in self.states:
            raise GatewayInvalidRequest(f"Unknown payment {intent_id}")
        return GatewayPaymentStatus(intent_id=intent_id, state=self.states[intent_id])


async def seed_order(
    store,
    order_id: int = 42,
    payment_id: str | None = "3000000042",
    domain_name: str | None = "example.cz",
    payment_status: str = "unpaid",
    status: str = "pending",
    user_id: str | None = "user-1",
    price: Decimal = Decimal("500"),
) -> Order:
    order = Order(
        id=order_id,
        user_id=user_id,
        plan_id="basic",
        plan_name="Basic",
        price=price,
        currency="CZK",
        customer_name="Jana Novakova",
        customer_email="jana.novakova@example.cz",
        status=status,
        payment_status=payment_status,
        payment_id=payment_id,
        gateway_status="PAID" if payment_status == "paid" else "CREATED",
        domain_name=domain_name,
    )
    return await store.insert_order(order)


def bearer(user_id: str = "user-1", role: str = "user") -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token({'user_id': user_id, 'role': role})}"}
