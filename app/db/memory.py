import asyncio
import itertools
from collections import defaultdict
from datetime import datetime
from typing import Any, Iterable

from app.db.base import RecordStore, saga_transition_fields
from app.models.audit_log import AuditEvent
from app.models.failed_job import FailedJob
from app.models.hosting_service import HostingService, SagaState
from app.models.order import Order
from app.models.refresh_token import RefreshToken


def _matches(record: Any, expected: dict[str, Any] | None) -> bool:
    return all(getattr(record, k) == v for k, v in (expected or {}).items())


class MemoryRecordStore(RecordStore):
    """In-process store for development and tests. Records are copied in and out."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._sequences: dict[str, itertools.count] = defaultdict(lambda: itertools.count(1))
        self._orders: dict[int, Order] = {}
        self._services: dict[int, HostingService] = {}
        self._tokens: dict[str, RefreshToken] = {}
        self.audit_events: list[AuditEvent] = []
        self.failed_jobs: list[FailedJob] = []

    async def next_id(self, sequence: str) -> int:
        async with self._lock:
            return next(self._sequences[sequence])

    async def insert_order(self, order: Order) -> Order:
        async with self._lock:
            if order.id in self._orders:
                raise ValueError(f"Order {order.id} already exists")
            self._orders[order.id] = order.model_copy(deep=True)
            return order.model_copy(deep=True)

    async def get_order(self, order_id: int) -> Order | None:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def find_order_by_payment_id(self, payment_id: str) -> Order | None:
        for order in self._orders.values():
            if order.payment_id == payment_id:
                return order.model_copy(deep=True)
        return None

    async def update_order(
        self,
        order_id: int,
        fields: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> Order | None:
        async with self._lock:
            current = self._orders.get(order_id)
            if current is None or not _matches(current, expected):
                return None
            updated = current.model_copy(update={**fields, "updated_at": datetime.utcnow()}, deep=True)
            self._orders[order_id] = updated
            return updated.model_copy(deep=True)

    async def get_hosting_service(self, service_id: int) -> HostingService | None:
        service = self._services.get(service_id)
        return service.model_copy(deep=True) if service else None

    async def get_hosting_service_by_order(self, order_id: int) -> HostingService | None:
        for service in self._services.values():
            if service.order_id == order_id:
                return service.model_copy(deep=True)
        return None

    async def insert_hosting_service(self, service: HostingService) -> HostingService:
        async with self._lock:
            for existing in self._services.values():
                if existing.order_id == service.order_id:
                    return existing.model_copy(deep=True)
            self._services[service.id] = service.model_copy(deep=True)
            return service.model_copy(deep=True)

    async def transition_saga(
        self,
        service_id: int,
        expected_state: SagaState,
        expected_version: int,
        new_state: SagaState,
        fields: dict[str, Any] | None = None,
    ) -> HostingService | None:
        async with self._lock:
            current = self._services.get(service_id)
            if current is None:
                return None
            if current.saga_state != expected_state or current.saga_version != expected_version:
                return None
            update = saga_transition_fields(new_state, fields)
            update["saga_version"] = current.saga_version + 1
            updated = current.model_copy(update=update, deep=True)
            self._services[service_id] = updated
            return updated.model_copy(deep=True)

    async def update_hosting_service(
        self,
        service_id: int,
        fields: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> HostingService | None:
        async with self._lock:
            current = self._services.get(service_id)
            if current is None or not _matches(current, expected):
                return None
            updated = current.model_copy(update={**fields, "updated_at": datetime.utcnow()}, deep=True)
            self._services[service_id] = updated
            return updated.model_copy(deep=True)

    async def list_hosting_services(
        self,
        saga_states: Iterable[SagaState] | None = None,
        status: str | None = None,
        expires_before: datetime | None = None,
        limit: int = 100,
    ) -> list[HostingService]:
        states = set(saga_states) if saga_states is not None else None
        out = []
        for service in sorted(self._services.values(), key=lambda s: s.id):
            if states is not None and service.saga_state not in states:
                continue
            if status is not None and service.status != status:
                continue
            if expires_before is not None and (service.expires_at is None or service.expires_at >= expires_before):
                continue
            out.append(service.model_copy(deep=True))
            if len(out) >= limit:
                break
        return out

    async def insert_refresh_token(self, token: RefreshToken) -> None:
        async with self._lock:
            self._tokens[token.token_hash] = token.model_copy()

    async def consume_refresh_token(self, token_hash: str) -> RefreshToken | None:
        async with self._lock:
            return self._tokens.pop(token_hash, None)

    async def insert_audit_event(self, event: AuditEvent) -> None:
        self.audit_events.append(event.model_copy(deep=True))

    async def list_audit_events(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        out = [
            e for e in reversed(self.audit_events)
            if (entity_type is None or e.entity_type == entity_type)
            and (entity_id is None or e.entity_id == entity_id)
        ]
        return out[:limit]

    async def insert_failed_job(self, job: FailedJob) -> None:
        self.failed_jobs.append(job.model_copy(deep=True))
