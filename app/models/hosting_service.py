from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

ServiceStatus = Literal["pending", "active", "suspended", "cancelled"]


class SagaState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    USER_CREATING = "USER_CREATING"
    USER_CREATED = "USER_CREATED"
    DOMAIN_CREATING = "DOMAIN_CREATING"
    DOMAIN_CREATED = "DOMAIN_CREATED"
    SSL_ATTEMPTING = "SSL_ATTEMPTING"
    PROVISIONED = "PROVISIONED"
    USER_CREATE_FAILED = "USER_CREATE_FAILED"
    DOMAIN_CREATE_FAILED = "DOMAIN_CREATE_FAILED"
    COMPENSATING = "COMPENSATING"
    ROLLED_BACK = "ROLLED_BACK"


# A step is running while the service sits in one of these
IN_FLIGHT_STATES = frozenset({
    SagaState.USER_CREATING,
    SagaState.DOMAIN_CREATING,
    SagaState.SSL_ATTEMPTING,
    SagaState.COMPENSATING,
})


class HostingService(BaseModel):
    """Provisioning record for one order; the only source of truth for whether a panel account exists."""
    id: int
    order_id: int
    user_id: str | None = None

    hestia_username: str | None = None
    hestia_domain: str | None = None
    hestia_package: str | None = None
    hestia_created: bool = False
    hestia_error: str | None = None
    hestia_warning: str | None = None  # non-fatal, e.g. SSL pending DNS
    credentials_encrypted: str | None = None  # Fernet, see app.core.encryption
    cpanel_url: str | None = None

    status: ServiceStatus = "pending"
    saga_state: SagaState = SagaState.NOT_STARTED
    saga_version: int = 0  # bumped on every saga transition, compare-and-set key
    saga_attempts: int = 0
    saga_updated_at: datetime = Field(default_factory=datetime.utcnow)

    hestia_created_at: datetime | None = None
    activated_at: datetime | None = None
    expires_at: datetime | None = None
    suspended_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
