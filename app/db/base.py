from abc import ABC, abstractmethod
from datetime import datetime
from functools import lru_cache
from typing import Any, Iterable

from app.core.config import get_settings
from app.models.audit_log import AuditEvent
from app.models.failed_job import FailedJob
from app.models.hosting_service import HostingService, SagaState
from app.models.order import Order
from app.models.refresh_token import RefreshToken


class RecordStore(ABC):
    """Durable storage for orders, hosting services and refresh tokens.

    Every update is a single-record operation. Methods taking ``expected``
    only apply when each listed field currently equals the given value and
    return None otherwise (or when the record is missing).
    """

    @abstractmethod
    async def next_id(self, sequence: str) -> int:
        """Allocate the next integer id for ``sequence`` ("orders", "hosting_services")."""
        ...

    # Orders

    @abstractmethod
    async def insert_order(self, order: Order) -> Order:
        ...

    @abstractmethod
    async def get_order(self, order_id: int) -> Order | None:
        ...

    @abstractmethod
    async def find_order_by_payment_id(self, payment_id: str) -> Order | None:
        ...

    @abstractmethod
    async def update_order(
        self,
        order_id: int,
        fields: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> Order | None:
        ...

    # Hosting services

    @abstractmethod
    async def get_hosting_service(self, service_id: int) -> HostingService | None:
        ...

    @abstractmethod
    async def get_hosting_service_by_order(self, order_id: int) -> HostingService | None:
        ...

    @abstractmethod
    async def insert_hosting_service(self, service: HostingService) -> HostingService:
        """Insert unless the order already has a service; return whichever record is stored."""
        ...

    @abstractmethod
    async def transition_saga(
        self,
        service_id: int,
        expected_state: SagaState,
        expected_version: int,
        new_state: SagaState,
        fields: dict[str, Any] | None = None,
    ) -> HostingService | None:
        """Compare-and-set on (saga_state, saga_version).

        On success the state becomes ``new_state``, the version is bumped,
        ``saga_updated_at`` is refreshed and ``fields`` are written in the
        same update. Returns None when another writer got there first.
        """
        ...

    @abstractmethod
    async def update_hosting_service(
        self,
        service_id: int,
        fields: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> HostingService | None:
        ...

    @abstractmethod
    async def list_hosting_services(
        self,
        saga_states: Iterable[SagaState] | None = None,
        status: str | None = None,
        expires_before: datetime | None = None,
        limit: int = 100,
    ) -> list[HostingService]:
        ...

    # Refresh tokens

    @abstractmethod
    async def insert_refresh_token(self, token: RefreshToken) -> None:
        ...

    @abstractmethod
    async def consume_refresh_token(self, token_hash: str) -> RefreshToken | None:
        """Remove and return the token; concurrent consumers get it at most once."""
        ...

    # Audit / dead letter

    @abstractmethod
    async def insert_audit_event(self, event: AuditEvent) -> None:
        ...

    @abstractmethod
    async def list_audit_events(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        ...

    @abstractmethod
    async def insert_failed_job(self, job: FailedJob) -> None:
        ...


def saga_transition_fields(new_state: SagaState, fields: dict[str, Any] | None) -> dict[str, Any]:
    now = datetime.utcnow()
    out = dict(fields or {})
    out["saga_state"] = new_state
    out["saga_updated_at"] = now
    out["updated_at"] = now
    return out


@lru_cache
def get_store() -> RecordStore:
    settings = get_settings()
    if settings.record_store_backend == "memory":
        from app.db.memory import MemoryRecordStore
        return MemoryRecordStore()
    from app.db.mongo import MongoRecordStore
    return MongoRecordStore()
