"""Provisioning saga: paid order -> HestiaCP user -> web domain -> SSL.

The saga is driven by the persisted ``HostingService.saga_state``, never by
where a previous call stopped. Every step starts by claiming the service with
a compare-and-set on ``(saga_state, saga_version)``; a caller that loses the
claim walks away without touching the control panel. An in-flight step whose
owner crashed can be taken over once ``SAGA_LEASE_SECONDS`` have passed since
its last transition.

Failure handling:
- user creation failure -> USER_CREATE_FAILED, retried by the next trigger
- domain creation failure -> DOMAIN_CREATE_FAILED -> COMPENSATING (delete the
  user) -> ROLLED_BACK, which only a manual retry restarts
- SSL failure -> warning only, the service is still PROVISIONED
"""

import calendar
from datetime import datetime, timedelta
from typing import Literal

from pydantic import BaseModel

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.encryption import decrypt_secret, encrypt_secret
from app.core.exceptions import NotFoundError, PanelAlreadyExists, PanelCommandError, PanelError
from app.core.logging import bind_order_id, get_logger
from app.db.base import RecordStore, get_store
from app.models.hosting_service import IN_FLIGHT_STATES, HostingService, SagaState
from app.models.order import Order
from app.services.hestiacp import HestiaClient, SslResult, generate_password, generate_username, get_panel_client

log = get_logger(__name__)

S = SagaState

# Resting state -> in-flight state a trigger may claim from it
_AUTO_CLAIMS = {
    S.NOT_STARTED: S.USER_CREATING,
    S.USER_CREATE_FAILED: S.USER_CREATING,
    S.USER_CREATED: S.DOMAIN_CREATING,
    S.DOMAIN_CREATED: S.SSL_ATTEMPTING,
    S.DOMAIN_CREATE_FAILED: S.COMPENSATING,
}
_MANUAL_CLAIMS = {**_AUTO_CLAIMS, S.ROLLED_BACK: S.USER_CREATING}

# After a step lands in one of these, the same run carries on
_FORWARD = {
    S.USER_CREATED: S.DOMAIN_CREATING,
    S.DOMAIN_CREATED: S.SSL_ATTEMPTING,
    S.DOMAIN_CREATE_FAILED: S.COMPENSATING,
}

# States the background resume job re-drives
RESUMABLE_STATES = frozenset(_AUTO_CLAIMS) | IN_FLIGHT_STATES

FREE_USERNAME_ATTEMPTS = 5

ProvisioningResult = Literal[
    "provisioned",
    "already_provisioned",
    "busy",
    "failed",
    "rolled_back",
    "awaiting_domain",
    "not_paid",
]


class ProvisioningOutcome(BaseModel):
    order_id: int
    result: ProvisioningResult
    state: SagaState | None = None
    error: str | None = None
    warning: str | None = None


def add_months(dt: datetime, months: int) -> datetime:
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


class ProvisioningCoordinator:
    def __init__(
        self,
        store: RecordStore,
        panel: HestiaClient,
        lease_seconds: int | None = None,
    ) -> None:
        self.store = store
        self.panel = panel
        self.settings = get_settings()
        self.lease_seconds = lease_seconds if lease_seconds is not None else self.settings.saga_lease_seconds
        self._steps = {
            S.USER_CREATING: self._create_user,
            S.DOMAIN_CREATING: self._create_domain,
            S.SSL_ATTEMPTING: self._setup_ssl,
            S.COMPENSATING: self._compensate,
        }

    async def provision(self, order_id: int, manual: bool = False) -> ProvisioningOutcome:
        """Drive the order's hosting service as far as it can go right now.

        Safe to call any number of times, concurrently, from any trigger.
        ``manual`` additionally allows restarting a rolled-back service.
        """
        bind_order_id(order_id)
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        if order.payment_status != "paid":
            log.info("saga_skipped_unpaid", payment_status=order.payment_status)
            return ProvisioningOutcome(order_id=order_id, result="not_paid")

        service = await self.ensure_service(order)
        if service.status == "cancelled":
            log.info("saga_skipped_cancelled")
            outcome = self._outcome(service, "failed")
            outcome.error = "Hosting service was cancelled"
            return outcome
        if service.saga_state == S.PROVISIONED:
            return self._outcome(service, "already_provisioned")
        if not order.domain_name:
            log.info("saga_awaiting_domain", state=service.saga_state.value)
            return self._outcome(service, "awaiting_domain")
        if service.saga_state == S.ROLLED_BACK and not manual:
            return self._outcome(service, "rolled_back")

        claimed = await self._claim(service, _MANUAL_CLAIMS if manual else _AUTO_CLAIMS)
        if claimed is None:
            log.info("saga_busy", state=service.saga_state.value, version=service.saga_version)
            return self._outcome(service, "busy")
        service = claimed
        log.info("saga_claimed", state=service.saga_state.value, manual=manual, attempt=service.saga_attempts)

        while service.saga_state in IN_FLIGHT_STATES:
            ran = service.saga_state
            result = await self._steps[ran](order, service)
            if result is None:
                return self._outcome(service, "busy")
            service = result
            log.info("saga_step", step=ran.value, state=service.saga_state.value)
            nxt = _FORWARD.get(service.saga_state)
            if nxt is None or ran == S.COMPENSATING:
                break
            result = await self._advance(service, nxt)
            if result is None:
                return self._outcome(service, "busy")
            service = result

        return self._final_outcome(service)

    async def ensure_service(self, order: Order) -> HostingService:
        """Return the order's hosting service, creating it on first use."""
        service = await self.store.get_hosting_service_by_order(order.id)
        if service is not None:
            return service
        service = HostingService(
            id=await self.store.next_id("hosting_services"),
            order_id=order.id,
            user_id=order.user_id,
            hestia_package=self.settings.package_for_plan(order.plan_id),
        )
        return await self.store.insert_hosting_service(service)

    def _lease_expired(self, service: HostingService) -> bool:
        return datetime.utcnow() - service.saga_updated_at > timedelta(seconds=self.lease_seconds)

    async def _claim(self, service: HostingService, claims: dict[SagaState, SagaState]) -> HostingService | None:
        state = service.saga_state
        if state in IN_FLIGHT_STATES:
            if not self._lease_expired(service):
                return None
            log.warning("saga_takeover", state=state.value, last_transition=service.saga_updated_at.isoformat())
            target = state
        else:
            target = claims.get(state)
            if target is None:
                return None
        return await self.store.transition_saga(
            service.id, state, service.saga_version, target, {"saga_attempts": service.saga_attempts + 1}
        )

    async def _advance(
        self,
        service: HostingService,
        new_state: SagaState,
        fields: dict | None = None,
    ) -> HostingService | None:
        updated = await self.store.transition_saga(
            service.id, service.saga_state, service.saga_version, new_state, fields
        )
        if updated is None:
            log.warning("saga_lost_claim", state=service.saga_state.value, wanted=new_state.value)
        return updated

    async def _free_username(self, email: str) -> str:
        for _ in range(FREE_USERNAME_ATTEMPTS):
            candidate = generate_username(email)
            if not await self.panel.user_exists(candidate):
                return candidate
        raise PanelCommandError("v-add-user", "4", "Could not find a free username")

    async def _create_user(self, order: Order, service: HostingService) -> HostingService | None:
        username = service.hestia_username
        password = decrypt_secret(service.credentials_encrypted)
        package = service.hestia_package or self.settings.package_for_plan(order.plan_id)
        try:
            if username and await self.panel.user_exists(username):
                # An earlier attempt created it and died before recording the step
                log.info("saga_user_already_on_panel", username=username)
                return await self._advance(service, S.USER_CREATED, {"hestia_package": package})
            if not username or not password:
                username = username or await self._free_username(order.customer_email)
                password = password or generate_password()
                # Persist before creating so a retry reuses the same account name
                service = await self._advance(service, S.USER_CREATING, {
                    "hestia_username": username,
                    "credentials_encrypted": encrypt_secret(password),
                    "hestia_package": package,
                })
                if service is None:
                    return None
            try:
                await self.panel.create_user(
                    order.customer_email, username=username, password=password, package=package
                )
            except PanelAlreadyExists:
                log.info("saga_user_created_by_earlier_attempt", username=username)
        except PanelError as e:
            log.warning("saga_user_failed", username=username, error=e.message)
            failed = await self._advance(service, S.USER_CREATE_FAILED, {
                "hestia_error": f"Failed to create user: {e.message}",
            })
            if failed is not None:
                await log_event(
                    self.store, order.user_id, "hosting_user_failed", "hosting_service", str(service.id),
                    {"order_id": order.id, "error": e.message},
                )
            return failed
        return await self._advance(service, S.USER_CREATED, {
            "hestia_username": username,
            "hestia_package": package,
        })

    async def _create_domain(self, order: Order, service: HostingService) -> HostingService | None:
        domain = order.domain_name
        try:
            await self.panel.create_web_domain(service.hestia_username, domain)
        except PanelError as e:
            log.warning("saga_domain_failed", username=service.hestia_username, domain=domain, error=e.message)
            return await self._advance(service, S.DOMAIN_CREATE_FAILED, {
                "hestia_error": f"Failed to create domain: {e.message}",
            })
        return await self._advance(service, S.DOMAIN_CREATED, {"hestia_domain": domain})

    async def _compensate(self, order: Order, service: HostingService) -> HostingService | None:
        """Delete the user created for this order so no account is left without a site."""
        try:
            await self.panel.delete_user(service.hestia_username)
        except PanelError as e:
            log.error("saga_rollback_failed", username=service.hestia_username, error=e.message)
            await log_event(
                self.store, order.user_id, "hosting_rollback_failed", "hosting_service", str(service.id),
                {"order_id": order.id, "username": service.hestia_username, "error": e.message},
            )
            return await self._advance(service, S.DOMAIN_CREATE_FAILED)
        rolled_back = await self._advance(service, S.ROLLED_BACK, {
            "hestia_created": False,
            "hestia_domain": None,
        })
        if rolled_back is not None:
            log.warning("saga_rolled_back", username=service.hestia_username, error=service.hestia_error)
            await log_event(
                self.store, order.user_id, "hosting_rolled_back", "hosting_service", str(service.id),
                {"order_id": order.id, "username": service.hestia_username, "error": service.hestia_error},
            )
        return rolled_back

    async def _setup_ssl(self, order: Order, service: HostingService) -> HostingService | None:
        username = service.hestia_username
        domain = service.hestia_domain or order.domain_name
        try:
            ssl = await self.panel.setup_ssl(username, domain)
        except PanelError as e:
            ssl = SslResult(ok=False, warning=f"SSL setup failed: {e.message}")
        now = datetime.utcnow()
        provisioned = await self._advance(service, S.PROVISIONED, {
            "hestia_created": True,
            "hestia_error": None,
            "hestia_warning": ssl.warning,
            "hestia_domain": domain,
            "status": "active",
            "cpanel_url": self.panel.login_url(username),
            "hestia_created_at": service.hestia_created_at or now,
            "activated_at": service.activated_at or now,
            "expires_at": service.expires_at or add_months(now, order.billing_period_months),
        })
        if provisioned is None:
            return None
        await self.store.update_order(order.id, {"status": "active"}, expected={"status": "processing"})
        log.info("saga_provisioned", username=username, domain=domain, ssl=ssl.ok)
        await log_event(
            self.store, order.user_id, "hosting_provisioned", "hosting_service", str(service.id),
            {"order_id": order.id, "username": username, "domain": domain, "ssl": ssl.ok},
        )
        current = await self.store.get_order(order.id)
        if current is not None and current.payment_status != "paid":
            return await self._suspend_unpaid(current, provisioned)
        return provisioned

    async def _suspend_unpaid(self, order: Order, service: HostingService) -> HostingService:
        """The payment was refunded while the account was being created; suspend what was built."""
        try:
            await self.panel.suspend_user(service.hestia_username)
        except PanelError as e:
            log.warning("saga_unpaid_suspend_failed", payment_status=order.payment_status, error=e.message)
            return service
        now = datetime.utcnow()
        updated = await self.store.update_hosting_service(
            service.id,
            {"status": "suspended", "suspended_at": now, "updated_at": now},
            expected={"status": "active"},
        )
        if updated is None:
            return await self.store.get_hosting_service_by_order(order.id) or service
        log.info("hosting_suspended", username=service.hestia_username, reason=order.payment_status)
        await log_event(
            self.store, order.user_id, "hosting_suspended", "hosting_service", str(service.id),
            {"order_id": order.id, "reason": order.payment_status},
        )
        return updated

    @staticmethod
    def _outcome(service: HostingService, result: ProvisioningResult) -> ProvisioningOutcome:
        return ProvisioningOutcome(
            order_id=service.order_id,
            result=result,
            state=service.saga_state,
            error=service.hestia_error,
            warning=service.hestia_warning,
        )

    def _final_outcome(self, service: HostingService) -> ProvisioningOutcome:
        if service.saga_state == S.PROVISIONED:
            return self._outcome(service, "provisioned")
        if service.saga_state == S.ROLLED_BACK:
            return self._outcome(service, "rolled_back")
        return self._outcome(service, "failed")


def get_coordinator() -> ProvisioningCoordinator:
    return ProvisioningCoordinator(get_store(), get_panel_client())
