import math
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from models.base import new_id, utc_now

PaymentRequestStatus = Literal["pending", "approved", "rejected", "paid"]
PAYMENT_REQUEST_STATUSES: tuple[str, ...] = ("pending", "approved", "rejected", "paid")

MIN_REQUEST_AMOUNT = 100
MAX_REQUEST_AMOUNT = 10_000_000


class BankDetails(BaseModel):
    account_holder: str = Field(min_length=1, max_length=100)
    bank_name: str = Field(min_length=1, max_length=100)
    account_number: str = Field(pattern=r"^[0-9]{10,20}$")
    routing_number: str | None = Field(default=None, pattern=r"^[0-9]{9}$")
    branch_name: str = Field(min_length=1, max_length=100)

    @field_validator("*", mode="before")
    @classmethod
    def _strip(cls, value):
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value


class PaymentRequest(BaseModel):
    request_id: str = Field(default_factory=new_id)
    project_id: str
    creator_id: str

    requested_amount: int = Field(ge=MIN_REQUEST_AMOUNT, le=MAX_REQUEST_AMOUNT)
    admin_fee: int = Field(default=0, ge=0)
    net_amount: int = Field(ge=0)
    status: PaymentRequestStatus = "pending"
    bank_details: BankDetails

    admin_notes: str | None = Field(default=None, max_length=1000)
    processed_by: str | None = None
    processed_at: datetime | None = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def processing_days(self) -> int | None:
        if not self.processed_at:
            return None
        seconds = (self.processed_at - self.created_at).total_seconds()
        return math.ceil(seconds / 86400)
