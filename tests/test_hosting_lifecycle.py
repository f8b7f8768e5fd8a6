"""Suspend, unsuspend, cancel, domain assignment, expiry and resume."""

from datetime import datetime, timedelta

import pytest

from app.core.exceptions import BadRequestError, ConflictError, PanelUnavailable
from app.models.hosting_service import SagaState
from app.services import hosting as hosting_service
from fakes import seed_order

pytestmark = pytest.mark.asyncio


async def provisioned(store, coordinator, order_id=42, payment_id="3000000042", domain="example.cz"):
    await seed_order(
        store, order_id=order_id, payment_id=payment_id, domain_name=domain, payment_status="paid", status="processing"
    )
    await coordinator.provision(order_id)
    return await store.get_hosting_service_by_order(order_id)


async def test_suspend_and_unsuspend(store, panel, coordinator):
    service = await provisioned(store, coordinator)

    suspended = await hosting_service.suspend_service(store, panel, 42, user_id="admin-1")
    again = await hosting_service.suspend_service(store, panel, 42)

    assert suspended.status == again.status == "suspended"
    assert suspended.suspended_at is not None
    assert panel.count("suspend_user") == 1
    assert service.hestia_username in panel.suspended

    active = await hosting_service.unsuspend_service(store, panel, 42)

    assert active.status == "active"
    assert active.suspended_at is None
    assert service.hestia_username not in panel.suspended


async def test_suspend_requires_account(store, panel, coordinator):
    await seed_order(store, payment_status="paid", status="processing", domain_name=None)
    await coordinator.provision(42)

    with pytest.raises(BadRequestError):
        await hosting_service.suspend_service(store, panel, 42)


async def test_cancel_deletes_account_and_keeps_record(store, panel, coordinator):
    service = await provisioned(store, coordinator)

    cancelled = await hosting_service.cancel_service(store, panel, 42)

    assert cancelled.status == "cancelled"
    assert cancelled.hestia_created is False
    assert cancelled.cancelled_at is not None
    assert service.hestia_username not in panel.users
    assert (await store.get_order(42)).status == "cancelled"
    assert await store.get_hosting_service_by_order(42) is not None

    # Nothing brings a cancelled service back
    outcome = await coordinator.provision(42, manual=True)
    assert outcome.result == "failed"
    assert panel.count("create_user") == 1


async def test_cancel_refused_while_step_runs(store, panel, coordinator):
    await seed_order(store, payment_status="paid", status="processing")
    service = await coordinator.ensure_service(await store.get_order(42))
    await store.transition_saga(service.id, SagaState.NOT_STARTED, 0, SagaState.DOMAIN_CREATING)

    with pytest.raises(ConflictError):
        await hosting_service.cancel_service(store, panel, 42)


async def test_assign_domain_continues_provisioning(store, panel, coordinator):
    await seed_order(store, payment_status="paid", status="processing", domain_name=None)
    assert (await coordinator.provision(42)).result == "awaiting_domain"

    outcome = await hosting_service.assign_domain(store, coordinator, 42, " WWW.Example.CZ ")

    assert outcome.result == "provisioned"
    assert (await store.get_order(42)).domain_name == "example.cz"
    service = await store.get_hosting_service_by_order(42)
    assert panel.domains[service.hestia_username] == {"example.cz"}


async def test_assign_domain_after_provisioning_is_refused(store, panel, coordinator):
    await provisioned(store, coordinator)

    with pytest.raises(ConflictError):
        await hosting_service.assign_domain(store, coordinator, 42, "other.cz")


async def test_assign_invalid_domain(store, coordinator):
    await seed_order(store, payment_status="paid", status="processing", domain_name=None)

    with pytest.raises(BadRequestError):
        await hosting_service.assign_domain(store, coordinator, 42, "localhost")


async def test_expired_services_are_suspended(store, panel, coordinator):
    await provisioned(store, coordinator)
    await provisioned(store, coordinator, order_id=43, payment_id="3000000043", domain="example.org")
    first = await store.get_hosting_service_by_order(42)
    await store.update_hosting_service(first.id, {"expires_at": datetime.utcnow() - timedelta(days=1)})

    count = await hosting_service.enforce_expiry(store, panel)

    assert count == 1
    assert (await store.get_hosting_service_by_order(42)).status == "suspended"
    assert (await store.get_hosting_service_by_order(43)).status == "active"


async def test_expiry_continues_past_panel_errors(store, panel, coordinator):
    service = await provisioned(store, coordinator)
    await store.update_hosting_service(service.id, {"expires_at": datetime.utcnow() - timedelta(days=1)})
    panel.fail["suspend_user"] = PanelUnavailable("down")

    assert await hosting_service.enforce_expiry(store, panel) == 0
    assert (await store.get_hosting_service_by_order(42)).status == "active"


async def test_resume_picks_up_failed_user_step(store, panel, coordinator):
    await seed_order(store, payment_status="paid", status="processing")
    panel.fail["create_user"] = PanelUnavailable("down")
    await coordinator.provision(42)
    del panel.fail["create_user"]

    outcomes = await hosting_service.resume_stalled(store, coordinator)

    assert [o.result for o in outcomes] == ["provisioned"]
    assert (await store.get_order(42)).status == "active"


async def test_customer_view_reveals_password_once_provisioned(store, panel, coordinator):
    service = await provisioned(store, coordinator)

    view = hosting_service.customer_hosting_view(service)

    assert view["username"] == service.hestia_username
    assert view["password"] == panel.users[service.hestia_username]["password"]
    assert "credentials_encrypted" not in hosting_service.admin_hosting_view(service)
