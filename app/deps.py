"""Shared FastAPI dependencies."""

from fastapi import Depends, Header

from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.core.security import load_access_token, parse_bearer
from app.db.base import RecordStore, get_store
from app.services.auth import Principal
from app.services.gopay import GoPayClient, get_gateway_client
from app.services.hestiacp import HestiaClient, get_panel_client
from app.services.provisioning import ProvisioningCoordinator


def get_record_store() -> RecordStore:
    return get_store()


def get_gateway() -> GoPayClient:
    return get_gateway_client()


def get_panel() -> HestiaClient:
    return get_panel_client()


def get_coordinator(
    store: RecordStore = Depends(get_record_store),
    panel: HestiaClient = Depends(get_panel),
) -> ProvisioningCoordinator:
    return ProvisioningCoordinator(store, panel)


async def get_optional_principal(authorization: str | None = Header(default=None)) -> Principal | None:
    """Dependency: bearer access token if present; guests get None."""
    token = parse_bearer(authorization)
    if token is None:
        return None
    payload = load_access_token(token)
    if not payload or not payload.get("user_id"):
        raise UnauthorizedError("Invalid or expired access token")
    return Principal(user_id=str(payload["user_id"]), role=payload.get("role", "user"))


async def get_current_principal(principal: Principal | None = Depends(get_optional_principal)) -> Principal:
    if principal is None:
        raise UnauthorizedError("Not authenticated")
    return principal


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    """Dependency: require current user to have role admin."""
    if not principal.is_admin:
        raise ForbiddenError("Admin only")
    return principal
