from pydantic import BaseModel, EmailStr, Field
from typing import Optional

from models.payment_request import BankDetails


class CreateUserRequest(BaseModel):
    user_id: str = Field(alias="cognito_id")
    name: str
    email: EmailStr
    phone_number: Optional[str] = None
    avatar: Optional[str] = None

    model_config = {"populate_by_name": True}


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = None
    phone_number: Optional[str] = None
    avatar: Optional[str] = None


class UpdateRoleRequest(BaseModel):
    role: str


class ProjectUpdateRequest(BaseModel):
    title: str
    content: str
    images: list[str] = []


class ProjectStatusRequest(BaseModel):
    status: str
    reason: Optional[str] = None


class InitiatePaymentRequest(BaseModel):
    project_id: str
    amount: int
    customer_name: str
    customer_email: EmailStr
    customer_phone: Optional[str] = None
    reward_tier_id: Optional[str] = None
    is_anonymous: bool = False
    message: Optional[str] = Field(default=None, max_length=500)


class RefundRequest(BaseModel):
    reason: Optional[str] = None


class DonationMessageRequest(BaseModel):
    message: str = Field(max_length=500)


class CreatePaymentRequestBody(BaseModel):
    project_id: str
    requested_amount: int
    bank_details: BankDetails


class AdminNotesRequest(BaseModel):
    notes: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str


class FileValidationRequest(BaseModel):
    file_name: str
    content_type: str
    size: int


class PresignedUploadRequest(FileValidationRequest):
    folder: str
