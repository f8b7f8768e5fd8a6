from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from app.core.audit import log_event
from app.core.exceptions import ConflictError
from app.db.base import RecordStore
from app.deps import get_coordinator, get_panel, get_record_store, require_admin
from app.services import hosting as hosting_service
from app.services.auth import Principal
from app.services.hestiacp import HestiaClient
from app.services.provisioning import ProvisioningCoordinator

router = APIRouter()


class AssignDomainRequest(BaseModel):
    domain: str


@router.get("/hosting/{order_id}")
async def admin_get_hosting(
    order_id: int,
    admin: Principal = Depends(require_admin),
    store: RecordStore = Depends(get_record_store),
):
    """Admin: provisioning record including saga state, error and warning."""
    service = await hosting_service.get_service_for_order(store, order_id)
    return hosting_service.admin_hosting_view(service)


@router.post("/hosting/{order_id}/retry")
async def admin_retry_provisioning(
    order_id: int,
    background: bool = Query(default=False),
    admin: Principal = Depends(require_admin),
    store: RecordStore = Depends(get_record_store),
    coordinator: ProvisioningCoordinator = Depends(get_coordinator),
):
    """Admin: re-run provisioning, including after a rollback. background=true queues it on the worker."""
    service = await store.get_hosting_service_by_order(order_id)
    if service is not None and service.status == "cancelled":
        raise ConflictError("Hosting service is cancelled")
    await log_event(store, admin.user_id, "hosting_retry_requested", "order", str(order_id), {"background": background})
    if background:
        from app.worker.tasks import enqueue_provision_order
        await enqueue_provision_order(order_id, manual=True)
        return {"order_id": order_id, "result": "queued"}
    outcome = await coordinator.provision(order_id, manual=True)
    return outcome.model_dump(mode="json")


@router.post("/hosting/{order_id}/suspend")
async def admin_suspend_hosting(
    order_id: int,
    admin: Principal = Depends(require_admin),
    store: RecordStore = Depends(get_record_store),
    panel: HestiaClient = Depends(get_panel),
):
    service = await hosting_service.suspend_service(store, panel, order_id, reason="admin", user_id=admin.user_id)
    return hosting_service.admin_hosting_view(service)


@router.post("/hosting/{order_id}/unsuspend")
async def admin_unsuspend_hosting(
    order_id: int,
    admin: Principal = Depends(require_admin),
    store: RecordStore = Depends(get_record_store),
    panel: HestiaClient = Depends(get_panel),
):
    service = await hosting_service.unsuspend_service(store, panel, order_id, user_id=admin.user_id)
    return hosting_service.admin_hosting_view(service)


@router.post("/hosting/{order_id}/cancel")
async def admin_cancel_hosting(
    order_id: int,
    admin: Principal = Depends(require_admin),
    store: RecordStore = Depends(get_record_store),
    panel: HestiaClient = Depends(get_panel),
):
    """Admin: delete the panel account; the hosting record stays as cancelled."""
    service = await hosting_service.cancel_service(store, panel, order_id, user_id=admin.user_id)
    return hosting_service.admin_hosting_view(service)


@router.post("/orders/{order_id}/domain")
async def admin_assign_domain(
    order_id: int,
    body: AssignDomainRequest,
    admin: Principal = Depends(require_admin),
    store: RecordStore = Depends(get_record_store),
    coordinator: ProvisioningCoordinator = Depends(get_coordinator),
):
    """Admin: set the domain of a hosting-only order and continue provisioning."""
    outcome = await hosting_service.assign_domain(store, coordinator, order_id, body.domain, user_id=admin.user_id)
    return outcome.model_dump(mode="json")


@router.get("/audit")
async def admin_audit_log(
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    admin: Principal = Depends(require_admin),
    store: RecordStore = Depends(get_record_store),
):
    events = await store.list_audit_events(entity_type=entity_type, entity_id=entity_id, limit=limit)
    return {"items": [e.model_dump(mode="json") for e in events]}
