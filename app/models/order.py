from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

OrderStatus = Literal["pending", "processing", "active", "cancelled", "expired"]
PaymentStatus = Literal["unpaid", "paid", "failed", "refunded"]


class Order(BaseModel):
    """A hosting plan purchase. Guest checkout leaves user_id empty."""
    id: int
    user_id: str | None = None
    plan_id: str
    plan_name: str
    price: Decimal  # major units, e.g. 500 CZK
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

    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "unpaid"
    payment_id: str | None = None  # gateway payment intent id
    gateway_status: str | None = None  # raw gateway state, e.g. "PAID"
    domain_name: str | None = None

    paid_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
