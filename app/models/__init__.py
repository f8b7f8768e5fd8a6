from app.models.audit_log import AuditEvent
from app.models.failed_job import FailedJob
from app.models.hosting_service import HostingService, SagaState
from app.models.order import Order
from app.models.refresh_token import RefreshToken

__all__ = [
    "Order",
    "HostingService",
    "SagaState",
    "RefreshToken",
    "AuditEvent",
    "FailedJob",
]
