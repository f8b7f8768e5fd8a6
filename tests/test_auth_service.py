"""Refresh-token rotation and order authorization."""

from datetime import datetime, timedelta

import pytest

from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.core.security import hash_refresh_token, load_access_token
from app.models.refresh_token import RefreshToken
from app.services import auth as auth_service
from app.services.auth import Principal
from fakes import seed_order

pytestmark = pytest.mark.asyncio


async def test_issue_tokens(store):
    pair = await auth_service.issue_tokens(store, "user-1")

    assert load_access_token(pair.access_token) == {"user_id": "user-1", "role": "user"}
    assert pair.refresh_token != pair.access_token


async def test_refresh_token_is_single_use(store):
    pair = await auth_service.issue_tokens(store, "user-1", role="admin")

    rotated = await auth_service.rotate_refresh_token(store, pair.refresh_token)

    assert rotated.refresh_token != pair.refresh_token
    assert load_access_token(rotated.access_token)["role"] == "admin"
    with pytest.raises(UnauthorizedError):
        await auth_service.rotate_refresh_token(store, pair.refresh_token)
    # The new token still works
    await auth_service.rotate_refresh_token(store, rotated.refresh_token)


async def test_expired_refresh_token_is_rejected(store):
    await store.insert_refresh_token(
        RefreshToken(
            token_hash=hash_refresh_token("old-token"),
            user_id="user-1",
            expires_at=datetime.utcnow() - timedelta(seconds=1),
        )
    )

    with pytest.raises(UnauthorizedError):
        await auth_service.rotate_refresh_token(store, "old-token")
    assert await store.consume_refresh_token(hash_refresh_token("old-token")) is None


async def test_logout_revokes(store):
    pair = await auth_service.issue_tokens(store, "user-1")

    await auth_service.revoke_refresh_token(store, pair.refresh_token)

    with pytest.raises(UnauthorizedError):
        await auth_service.rotate_refresh_token(store, pair.refresh_token)


async def test_order_access(store):
    order = await seed_order(store, user_id="user-1")
    guest_order = await seed_order(store, order_id=43, payment_id="3000000043", user_id=None)

    auth_service.authorize_order_access(Principal(user_id="user-1"), order)
    auth_service.authorize_order_access(Principal(user_id="admin-1", role="admin"), guest_order)
    with pytest.raises(ForbiddenError):
        auth_service.authorize_order_access(Principal(user_id="user-2"), order)
    with pytest.raises(ForbiddenError):
        auth_service.authorize_order_access(Principal(user_id="user-1"), guest_order)


async def test_tampered_access_token():
    pair_token = "not-a-real-token"

    assert load_access_token(pair_token) is None
