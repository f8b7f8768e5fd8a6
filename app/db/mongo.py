"""MongoDB record store: beanie documents for schema and indexes, atomic updates via the motor collection."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable

from beanie import Document
from pydantic import Field
from pymongo import IndexModel, ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.db.base import RecordStore, saga_transition_fields
from app.models.audit_log import AuditEvent
from app.models.failed_job import FailedJob
from app.models.hosting_service import HostingService, SagaState
from app.models.order import Order
from app.models.refresh_token import RefreshToken


class CounterDocument(Document):
    id: str
    seq: int = 0

    class Settings:
        name = "counters"


class OrderDocument(Document):
    id: int
    user_id: str | None = None
    plan_id: str
    plan_name: str
    price: str  # Decimal as string, no Decimal128 round trip
    currency: str = "CZK"
    billing_period_months: int = 12
    customer_name: str
    customer_email: str
    customer_phone: str | None = None
    billing_company: str | None = None
    billing_address: str | None = None
    billing_city: str | None = None
    billing_zip: str | None = None
    billing_country: str | None = None
    billing_ico: str | None = None
    billing_dic: str | None = None
    status: str = "pending"
    payment_status: str = "unpaid"
    payment_id: str | None = None
    gateway_status: str | None = None
    domain_name: str | None = None
    paid_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "orders"
        indexes = [
            [("payment_id", 1)],
            [("user_id", 1), ("created_at", -1)],
        ]


class HostingServiceDocument(Document):
    id: int
    order_id: int
    user_id: str | None = None
    hestia_username: str | None = None
    hestia_domain: str | None = None
    hestia_package: str | None = None
    hestia_created: bool = False
    hestia_error: str | None = None
    hestia_warning: str | None = None
    credentials_encrypted: str | None = None
    cpanel_url: str | None = None
    status: str = "pending"
    saga_state: str = SagaState.NOT_STARTED.value
    saga_version: int = 0
    saga_attempts: int = 0
    saga_updated_at: datetime = Field(default_factory=datetime.utcnow)
    hestia_created_at: datetime | None = None
    activated_at: datetime | None = None
    expires_at: datetime | None = None
    suspended_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "hosting_services"
        indexes = [
            # One service per order; concurrent lazy creation relies on this
            IndexModel([("order_id", 1)], unique=True, name="order_id_unique"),
            [("saga_state", 1)],
            [("status", 1), ("expires_at", 1)],
        ]


class RefreshTokenDocument(Document):
    id: str  # token hash
    user_id: str
    role: str = "user"
    expires_at: datetime
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "refresh_tokens"
        indexes = [[("user_id", 1)], [("expires_at", 1)]]


class AuditLogDocument(Document):
    user_id: str | None = None
    event_type: str
    entity_type: str
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "audit_logs"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("entity_type", 1), ("entity_id", 1)],
        ]


class FailedJobDocument(Document):
    job_name: str
    job_id: str
    args: list[Any] = Field(default_factory=list)
    kwargs: dict[str, Any] = Field(default_factory=dict)
    reason: str = ""
    retries: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "failed_jobs"
        indexes = [[("job_name", 1)], [("created_at", -1)]]


DOCUMENT_MODELS = [
    CounterDocument,
    OrderDocument,
    HostingServiceDocument,
    RefreshTokenDocument,
    AuditLogDocument,
    FailedJobDocument,
]


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    return value


def _encode_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: _encode(v) for k, v in fields.items()}


def _from_raw(model, raw: dict[str, Any] | None):
    if raw is None:
        return None
    raw = dict(raw)
    raw["id"] = raw.pop("_id")
    return model.model_validate(raw)


def _from_doc(model, doc: Document | None):
    if doc is None:
        return None
    return model.model_validate(doc.model_dump())


class MongoRecordStore(RecordStore):
    async def next_id(self, sequence: str) -> int:
        raw = await CounterDocument.get_motor_collection().find_one_and_update(
            {"_id": sequence},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(raw["seq"])

    async def insert_order(self, order: Order) -> Order:
        doc = OrderDocument(**_encode_fields(order.model_dump()))
        await doc.insert()
        return order

    async def get_order(self, order_id: int) -> Order | None:
        return _from_doc(Order, await OrderDocument.get(order_id))

    async def find_order_by_payment_id(self, payment_id: str) -> Order | None:
        doc = await OrderDocument.find_one(OrderDocument.payment_id == payment_id)
        return _from_doc(Order, doc)

    async def update_order(
        self,
        order_id: int,
        fields: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> Order | None:
        query = {"_id": order_id, **_encode_fields(expected or {})}
        update = _encode_fields({**fields, "updated_at": datetime.utcnow()})
        raw = await OrderDocument.get_motor_collection().find_one_and_update(
            query, {"$set": update}, return_document=ReturnDocument.AFTER
        )
        return _from_raw(Order, raw)

    async def get_hosting_service(self, service_id: int) -> HostingService | None:
        return _from_doc(HostingService, await HostingServiceDocument.get(service_id))

    async def get_hosting_service_by_order(self, order_id: int) -> HostingService | None:
        doc = await HostingServiceDocument.find_one(HostingServiceDocument.order_id == order_id)
        return _from_doc(HostingService, doc)

    async def insert_hosting_service(self, service: HostingService) -> HostingService:
        doc = HostingServiceDocument(**_encode_fields(service.model_dump()))
        try:
            await doc.insert()
        except DuplicateKeyError:
            existing = await self.get_hosting_service_by_order(service.order_id)
            if existing is None:
                raise
            return existing
        return service

    async def transition_saga(
        self,
        service_id: int,
        expected_state: SagaState,
        expected_version: int,
        new_state: SagaState,
        fields: dict[str, Any] | None = None,
    ) -> HostingService | None:
        update = _encode_fields(saga_transition_fields(new_state, fields))
        raw = await HostingServiceDocument.get_motor_collection().find_one_and_update(
            {"_id": service_id, "saga_state": expected_state.value, "saga_version": expected_version},
            {"$set": update, "$inc": {"saga_version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        return _from_raw(HostingService, raw)

    async def update_hosting_service(
        self,
        service_id: int,
        fields: dict[str, Any],
        expected: dict[str, Any] | None = None,
    ) -> HostingService | None:
        query = {"_id": service_id, **_encode_fields(expected or {})}
        update = _encode_fields({**fields, "updated_at": datetime.utcnow()})
        raw = await HostingServiceDocument.get_motor_collection().find_one_and_update(
            query, {"$set": update}, return_document=ReturnDocument.AFTER
        )
        return _from_raw(HostingService, raw)

    async def list_hosting_services(
        self,
        saga_states: Iterable[SagaState] | None = None,
        status: str | None = None,
        expires_before: datetime | None = None,
        limit: int = 100,
    ) -> list[HostingService]:
        query: dict[str, Any] = {}
        if saga_states is not None:
            query["saga_state"] = {"$in": [s.value for s in saga_states]}
        if status is not None:
            query["status"] = status
        if expires_before is not None:
            query["expires_at"] = {"$lt": expires_before}
        cursor = HostingServiceDocument.get_motor_collection().find(query).sort("_id", 1).limit(limit)
        return [_from_raw(HostingService, raw) async for raw in cursor]

    async def insert_refresh_token(self, token: RefreshToken) -> None:
        data = token.model_dump()
        data["id"] = data.pop("token_hash")
        await RefreshTokenDocument(**data).insert()

    async def consume_refresh_token(self, token_hash: str) -> RefreshToken | None:
        raw = await RefreshTokenDocument.get_motor_collection().find_one_and_delete({"_id": token_hash})
        if raw is None:
            return None
        raw = dict(raw)
        raw["token_hash"] = raw.pop("_id")
        return RefreshToken.model_validate(raw)

    async def insert_audit_event(self, event: AuditEvent) -> None:
        await AuditLogDocument(**event.model_dump()).insert()

    async def list_audit_events(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        query: dict[str, Any] = {}
        if entity_type is not None:
            query["entity_type"] = entity_type
        if entity_id is not None:
            query["entity_id"] = entity_id
        docs = await AuditLogDocument.find(query).sort("-created_at").limit(limit).to_list()
        return [AuditEvent.model_validate(d.model_dump(exclude={"id", "revision_id"})) for d in docs]

    async def insert_failed_job(self, job: FailedJob) -> None:
        await FailedJobDocument(**job.model_dump()).insert()
