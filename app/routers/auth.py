from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.db.base import RecordStore
from app.deps import get_current_principal, get_record_store
from app.services import auth as auth_service
from app.services.auth import Principal

router = APIRouter()


class RefreshRequest(BaseModel):
    refresh_token: str


@router.post("/refresh")
async def auth_refresh(body: RefreshRequest, store: RecordStore = Depends(get_record_store)):
    """Exchange a refresh token for a new access/refresh pair. The old refresh token stops working."""
    return await auth_service.rotate_refresh_token(store, body.refresh_token)


@router.post("/logout")
async def auth_logout(body: RefreshRequest, store: RecordStore = Depends(get_record_store)):
    await auth_service.revoke_refresh_token(store, body.refresh_token)
    return {"status": "ok"}


@router.get("/me")
async def auth_me(principal: Principal = Depends(get_current_principal)):
    return {"user_id": principal.user_id, "role": principal.role}
