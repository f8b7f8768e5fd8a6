import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-memory record store; fake panel and gateway are injected per test
os.environ.setdefault("RECORD_STORE_BACKEND", "memory")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("HESTIACP_URL", "https://panel.test:8083")
os.environ.setdefault("PUBLIC_BASE_URL", "https://api.test")
os.environ.setdefault("FRONTEND_BASE_URL", "https://shop.test")
os.environ.setdefault("RETURN_POLL_INTERVAL_SECONDS", "0")

from app.db.memory import MemoryRecordStore  # noqa: E402
from app.services.provisioning import ProvisioningCoordinator  # noqa: E402
from fakes import FakeGateway, FakePanel, bearer  # noqa: E402


@pytest.fixture
def store() -> MemoryRecordStore:
    return MemoryRecordStore()


@pytest.fixture
def panel() -> FakePanel:
    return FakePanel()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def coordinator(store, panel) -> ProvisioningCoordinator:
    return ProvisioningCoordinator(store, panel)


@pytest_asyncio.fixture
async def client(store, panel, gateway) -> AsyncGenerator[AsyncClient, None]:
    from app import deps
    from app.main import app
    app.dependency_overrides[deps.get_record_store] = lambda: store
    app.dependency_overrides[deps.get_panel] = lambda: panel
    app.dependency_overrides[deps.get_gateway] = lambda: gateway
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def user_headers() -> dict[str, str]:
    return bearer("user-1")


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return bearer("admin-1", role="admin")
