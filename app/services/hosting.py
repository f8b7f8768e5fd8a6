"""Hosting account lifecycle after provisioning: suspend, unsuspend, cancel, expiry."""

from datetime import datetime

from app.core.audit import log_event
from app.core.encryption import decrypt_secret
from app.core.exceptions import AppError, BadRequestError, ConflictError, NotFoundError, PanelError
from app.core.logging import get_logger
from app.db.base import RecordStore
from app.models.hosting_service import IN_FLIGHT_STATES, HostingService, SagaState
from app.services.hestiacp import HestiaClient
from app.services.provisioning import RESUMABLE_STATES, ProvisioningCoordinator, ProvisioningOutcome

log = get_logger(__name__)


def normalize_domain(domain: str | None) -> str | None:
    if domain is None:
        return None
    domain = domain.strip().lower().rstrip(".")
    if domain.startswith("www."):
        domain = domain[4:]
    return domain or None


async def get_service_for_order(store: RecordStore, order_id: int) -> HostingService:
    service = await store.get_hosting_service_by_order(order_id)
    if service is None:
        raise NotFoundError("Hosting service not found")
    return service


def _require_account(service: HostingService) -> str:
    if not service.hestia_created or not service.hestia_username:
        raise BadRequestError("Hosting account has not been provisioned")
    return service.hestia_username


async def suspend_service(
    store: RecordStore,
    panel: HestiaClient,
    order_id: int,
    reason: str = "admin",
    user_id: str | None = None,
) -> HostingService:
    """Suspend the panel account. Suspending a suspended service is a no-op."""
    service = await get_service_for_order(store, order_id)
    if service.status == "suspended":
        return service
    if service.status == "cancelled":
        raise ConflictError("Hosting service is cancelled")
    username = _require_account(service)
    await panel.suspend_user(username)
    now = datetime.utcnow()
    updated = await store.update_hosting_service(
        service.id,
        {"status": "suspended", "suspended_at": now, "updated_at": now},
        expected={"status": service.status},
    )
    if updated is None:
        return await get_service_for_order(store, order_id)
    log.info("hosting_suspended", order_id=order_id, username=username, reason=reason)
    await log_event(
        store, user_id, "hosting_suspended", "hosting_service", str(service.id),
        {"order_id": order_id, "reason": reason},
    )
    return updated


async def unsuspend_service(
    store: RecordStore,
    panel: HestiaClient,
    order_id: int,
    user_id: str | None = None,
) -> HostingService:
    service = await get_service_for_order(store, order_id)
    if service.status == "active":
        return service
    if service.status != "suspended":
        raise ConflictError(f"Hosting service is {service.status}")
    username = _require_account(service)
    await panel.unsuspend_user(username)
    updated = await store.update_hosting_service(
        service.id,
        {"status": "active", "suspended_at": None, "updated_at": datetime.utcnow()},
        expected={"status": "suspended"},
    )
    if updated is None:
        return await get_service_for_order(store, order_id)
    log.info("hosting_unsuspended", order_id=order_id, username=username)
    await log_event(store, user_id, "hosting_unsuspended", "hosting_service", str(service.id), {"order_id": order_id})
    return updated


async def cancel_service(
    store: RecordStore,
    panel: HestiaClient,
    order_id: int,
    user_id: str | None = None,
) -> HostingService:
    """Delete the panel account and mark the service cancelled; the record itself is kept."""
    service = await get_service_for_order(store, order_id)
    if service.status == "cancelled":
        return service
    if service.saga_state in IN_FLIGHT_STATES:
        raise ConflictError("Provisioning is in progress", details={"saga_state": service.saga_state.value})
    if service.hestia_username:
        await panel.delete_user(service.hestia_username)
    now = datetime.utcnow()
    updated = await store.update_hosting_service(
        service.id,
        {"status": "cancelled", "hestia_created": False, "cancelled_at": now, "updated_at": now},
        expected={"saga_state": service.saga_state, "status": service.status},
    )
    if updated is None:
        raise ConflictError("Hosting service changed while cancelling, try again")
    await store.update_order(order_id, {"status": "cancelled", "updated_at": now})
    log.info("hosting_cancelled", order_id=order_id, username=service.hestia_username)
    await log_event(
        store, user_id, "hosting_cancelled", "hosting_service", str(service.id),
        {"order_id": order_id, "username": service.hestia_username},
    )
    return updated


async def assign_domain(
    store: RecordStore,
    coordinator: ProvisioningCoordinator,
    order_id: int,
    domain: str,
    user_id: str | None = None,
) -> ProvisioningOutcome:
    """Give a hosting-only order its domain and continue provisioning."""
    order = await store.get_order(order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    domain = normalize_domain(domain)
    if not domain or "." not in domain:
        raise BadRequestError("Invalid domain name")
    service = await store.get_hosting_service_by_order(order_id)
    if service is not None and service.saga_state not in (SagaState.NOT_STARTED, SagaState.ROLLED_BACK):
        raise ConflictError(
            "Domain can only be set before provisioning starts",
            details={"saga_state": service.saga_state.value},
        )
    if order.domain_name != domain:
        updated = await store.update_order(
            order_id,
            {"domain_name": domain, "updated_at": datetime.utcnow()},
            expected={"domain_name": order.domain_name},
        )
        if updated is None:
            raise ConflictError("Order changed while assigning the domain, try again")
        await log_event(
            store, user_id, "order_domain_assigned", "order", str(order_id),
            {"domain": domain, "previous": order.domain_name},
        )
    manual = service is not None and service.saga_state == SagaState.ROLLED_BACK
    return await coordinator.provision(order_id, manual=manual)


async def enforce_expiry(store: RecordStore, panel: HestiaClient, now: datetime | None = None) -> int:
    """Suspend active services past their paid period. Returns how many were suspended."""
    now = now or datetime.utcnow()
    services = await store.list_hosting_services(status="active", expires_before=now, limit=200)
    suspended = 0
    for service in services:
        try:
            await suspend_service(store, panel, service.order_id, reason="expired")
            suspended += 1
        except PanelError as e:
            log.warning("hosting_expiry_suspend_failed", order_id=service.order_id, error=e.message)
    if services:
        log.info("hosting_expiry_enforced", due=len(services), suspended=suspended)
    return suspended


async def resume_stalled(
    store: RecordStore,
    coordinator: ProvisioningCoordinator,
    limit: int = 50,
) -> list[ProvisioningOutcome]:
    """Re-drive services left between steps (crashed worker, panel outage, lost notification)."""
    services = await store.list_hosting_services(saga_states=RESUMABLE_STATES, status="pending", limit=limit)
    outcomes = []
    for service in services:
        try:
            outcomes.append(await coordinator.provision(service.order_id))
        except AppError as e:
            log.warning("saga_resume_failed", order_id=service.order_id, code=e.code, error=e.message)
    if services:
        log.info(
            "saga_resume_done",
            checked=len(services),
            provisioned=sum(1 for o in outcomes if o.result == "provisioned"),
        )
    return outcomes


def customer_hosting_view(service: HostingService) -> dict:
    """Account details for the order owner; the password only once the account exists."""
    view = {
        "order_id": service.order_id,
        "status": service.status,
        "username": service.hestia_username if service.hestia_created else None,
        "domain": service.hestia_domain,
        "cpanel_url": service.cpanel_url,
        "expires_at": service.expires_at,
        "password": None,
    }
    if service.hestia_created and service.status != "cancelled":
        view["password"] = decrypt_secret(service.credentials_encrypted) or None
    return view


def admin_hosting_view(service: HostingService) -> dict:
    return service.model_dump(mode="json", exclude={"credentials_encrypted"})
