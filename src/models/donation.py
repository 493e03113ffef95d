from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, EmailStr

from models.base import new_id, utc_now
from models.user import BD_PHONE_PATTERN


PaymentStatus = Literal["pending", "processing", "success", "failed", "cancelled", "refunded"]
PAYMENT_STATUSES: tuple[str, ...] = ("pending", "processing", "success", "failed", "cancelled", "refunded")

RewardStatus = Literal["pending", "redeemed", "expired"]

MIN_DONATION_AMOUNT = 10
MAX_DONATION_AMOUNT = 500_000


class DonorInfo(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    email: EmailStr
    phone: str | None = Field(default=None, pattern=BD_PHONE_PATTERN)


class Donation(BaseModel):
    donation_id: str = Field(default_factory=new_id)
    project_id: str
    project_creator_id: str
    donor_id: str | None = None

    amount: int = Field(ge=MIN_DONATION_AMOUNT, le=MAX_DONATION_AMOUNT)
    admin_fee: int = Field(ge=0)
    net_amount: int = Field(ge=0)
    currency: str = "bdt"

    payment_status: PaymentStatus = "pending"
    payment_method: str = "stripe"
    transaction_id: str
    checkout_session_id: str | None = None
    payment_intent_id: str | None = None

    reward_tier_id: str | None = None
    reward_value: int = Field(default=0, ge=0)
    reward_status: RewardStatus = "pending"
    qr_code_data: str | None = None
    qr_code_url: str | None = None

    is_anonymous: bool = False
    message: str | None = Field(default=None, max_length=500)
    donor_info: DonorInfo | None = None
    donor_display_name: str = "Anonymous Donor"

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_successful(self) -> bool:
        return self.payment_status == "success"

    @property
    def has_reward(self) -> bool:
        return self.reward_value > 0 or bool(self.reward_tier_id)
