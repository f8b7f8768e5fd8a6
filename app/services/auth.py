"""Access/refresh token pairs and order authorization."""

from datetime import datetime, timedelta

from pydantic import BaseModel

from app.core.config import get_settings
from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.core.logging import get_logger
from app.core.security import create_access_token, generate_refresh_token, hash_refresh_token
from app.db.base import RecordStore
from app.models.order import Order
from app.models.refresh_token import RefreshToken

log = get_logger(__name__)


class Principal(BaseModel):
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


async def issue_tokens(store: RecordStore, user_id: str, role: str = "user") -> TokenPair:
    settings = get_settings()
    refresh = generate_refresh_token()
    await store.insert_refresh_token(
        RefreshToken(
            token_hash=hash_refresh_token(refresh),
            user_id=user_id,
            role=role,
            expires_at=datetime.utcnow() + timedelta(days=settings.refresh_token_ttl_days),
        )
    )
    return TokenPair(
        access_token=create_access_token({"user_id": user_id, "role": role}),
        refresh_token=refresh,
        expires_in=settings.access_token_ttl_seconds,
    )


async def rotate_refresh_token(store: RecordStore, refresh_token: str) -> TokenPair:
    """Trade a refresh token for a new pair. Each refresh token works once."""
    stored = await store.consume_refresh_token(hash_refresh_token(refresh_token))
    if stored is None:
        log.warning("refresh_token_rejected", reason="unknown_or_used")
        raise UnauthorizedError("Invalid refresh token")
    if stored.is_expired():
        log.info("refresh_token_rejected", reason="expired", user_id=stored.user_id)
        raise UnauthorizedError("Refresh token expired")
    return await issue_tokens(store, stored.user_id, stored.role)


async def revoke_refresh_token(store: RecordStore, refresh_token: str) -> None:
    await store.consume_refresh_token(hash_refresh_token(refresh_token))


def authorize_order_access(principal: Principal, order: Order) -> None:
    if principal.is_admin:
        return
    if order.user_id is None or order.user_id != principal.user_id:
        raise ForbiddenError("Not your order")
