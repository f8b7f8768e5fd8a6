"""GoPay payment gateway: payment intents and authoritative status reads."""

import asyncio
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from functools import lru_cache
from typing import Any

import httpx

from app.core.config import get_settings
from app.core.exceptions import GatewayInvalidRequest, GatewayUnavailable
from app.core.logging import get_logger
from app.models.order import Order

log = get_logger(__name__)


class PaymentState(str, Enum):
    CREATED = "CREATED"
    PAYMENT_METHOD_CHOSEN = "PAYMENT_METHOD_CHOSEN"
    AUTHORIZED = "AUTHORIZED"
    PAID = "PAID"
    CANCELED = "CANCELED"
    TIMEOUTED = "TIMEOUTED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    PAYMENT_METHOD_DISABLED = "PAYMENT_METHOD_DISABLED"
    AUTHORIZATION_DECLINED = "AUTHORIZATION_DECLINED"


# The customer can no longer change these by paying
FINAL_STATES = frozenset({
    PaymentState.PAID,
    PaymentState.CANCELED,
    PaymentState.TIMEOUTED,
    PaymentState.REFUNDED,
    PaymentState.PARTIALLY_REFUNDED,
    PaymentState.PAYMENT_METHOD_DISABLED,
    PaymentState.AUTHORIZATION_DECLINED,
})


@dataclass(frozen=True)
class PaymentIntent:
    intent_id: str
    redirect_url: str
    state: str | None = None


@dataclass(frozen=True)
class GatewayPaymentStatus:
    """A status read straight from the gateway API; the only input allowed to mark an order paid."""
    intent_id: str
    state: PaymentState

    @property
    def is_final(self) -> bool:
        return self.state in FINAL_STATES


def to_minor_units(price: Decimal) -> int:
    return int((Decimal(price) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class GoPayClient:
    def __init__(
        self,
        api_url: str | None = None,
        go_id: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self.api_url = api_url or settings.gopay_api_url
        self.go_id = go_id if go_id is not None else settings.gopay_go_id
        self.client_id = client_id if client_id is not None else settings.gopay_client_id
        self.client_secret = client_secret if client_secret is not None else settings.gopay_client_secret
        self.timeout = timeout if timeout is not None else settings.gopay_timeout_seconds
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.gopay_max_attempts)
        self.backoff_base = backoff_base if backoff_base is not None else settings.panel_backoff_base_seconds
        self._transport = transport
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                base_url=self.api_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                resp = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayUnavailable("GoPay request timed out") from e
        except httpx.TransportError as e:
            raise GatewayUnavailable(f"GoPay unreachable: {e}") from e
        if resp.status_code >= 500:
            raise GatewayUnavailable(f"GoPay answered HTTP {resp.status_code}")
        return resp

    async def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        resp = await self._request(
            "POST",
            "/oauth2/token",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials", "scope": "payment-all"},
            headers={"Accept": "application/json"},
        )
        if resp.status_code >= 400:
            log.error("gopay_oauth_failed", status_code=resp.status_code)
            raise GatewayInvalidRequest("GoPay rejected the client credentials")
        data = resp.json()
        self._token = data["access_token"]
        # Refresh a minute early so a token never expires mid-request
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 1800)) - 60, 0)
        return self._token

    async def _authorized(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = await self._access_token()
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        resp = await self._request(method, path, headers=headers, **kwargs)
        if resp.status_code == 401:
            self._token = None
            raise GatewayUnavailable("GoPay access token rejected")
        return resp

    async def create_payment_intent(self, order: Order, return_url: str, notify_url: str) -> PaymentIntent:
        """Create a card payment for the order. Not retried: a repeat would create a second payment."""
        first_name, _, last_name = order.customer_name.strip().partition(" ")
        amount = to_minor_units(order.price)
        description = f"{order.plan_name} hosting"
        payload = {
            "payer": {
                "default_payment_instrument": "PAYMENT_CARD",
                "allowed_payment_instruments": ["PAYMENT_CARD"],
                "contact": {
                    "first_name": first_name or order.customer_name,
                    "last_name": last_name,
                    "email": order.customer_email,
                },
            },
            "target": {"type": "ACCOUNT", "goid": int(self.go_id or 0)},
            "amount": amount,
            "currency": order.currency,
            "order_number": str(order.id),
            "order_description": description,
            "items": [{"name": description, "amount": amount, "count": 1}],
            "callback": {"return_url": return_url, "notification_url": notify_url},
            "lang": "CS",
        }
        resp = await self._authorized("POST", "/payments/payment", json=payload)
        if resp.status_code >= 400:
            log.warning("gopay_create_rejected", order_id=order.id, status_code=resp.status_code)
            raise GatewayInvalidRequest("GoPay rejected the payment", details={"gateway": _safe_json(resp)})
        data = resp.json()
        intent = PaymentIntent(intent_id=str(data["id"]), redirect_url=data.get("gw_url", ""), state=data.get("state"))
        log.info("gopay_payment_created", order_id=order.id, payment_id=intent.intent_id, amount=amount)
        return intent

    async def get_payment_status(self, intent_id: str) -> GatewayPaymentStatus:
        """Authoritative payment state, retried with backoff while the gateway is unavailable."""
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = await self._authorized("GET", f"/payments/payment/{intent_id}")
                break
            except GatewayUnavailable as e:
                if attempt >= self.max_attempts:
                    log.error("gopay_status_unavailable", payment_id=intent_id, attempts=attempt)
                    raise
                delay = self.backoff_base * (2 ** (attempt - 1))
                log.warning("gopay_status_retry", payment_id=intent_id, attempt=attempt, reason=e.message)
                await asyncio.sleep(delay)
        if resp.status_code >= 400:
            raise GatewayInvalidRequest(f"Unknown payment {intent_id}", details={"gateway": _safe_json(resp)})
        raw_state = resp.json().get("state")
        try:
            state = PaymentState(raw_state)
        except ValueError:
            raise GatewayInvalidRequest(f"Unexpected payment state {raw_state!r}") from None
        return GatewayPaymentStatus(intent_id=str(intent_id), state=state)


def _safe_json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text[:500]


@lru_cache
def get_gateway_client() -> GoPayClient:
    """Process-wide client so the OAuth token is reused across requests."""
    return GoPayClient()
