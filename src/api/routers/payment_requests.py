from fastapi import APIRouter, Depends, Query
from typing import Optional

from api import responses
from api.auth import get_current_user, require_creator
from api.schemas import CreatePaymentRequestBody
from core.dependencies import get_payment_request_service
from models.user import AuthenticatedUser
from services.payment_request_service import PaymentRequestService, present_request

router = APIRouter(prefix="/payment-requests", tags=["payment-requests"])


@router.post("")
def create_payment_request(
    body: CreatePaymentRequestBody,
    user: AuthenticatedUser = Depends(require_creator),
    service: PaymentRequestService = Depends(get_payment_request_service)
):
    request = service.create(
        user,
        project_id=body.project_id,
        requested_amount=body.requested_amount,
        bank_details=body.bank_details.model_dump(),
    )
    return responses.created(present_request(request), "Payment request submitted successfully")


@router.get("/creator")
def creator_payment_requests(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: AuthenticatedUser = Depends(require_creator),
    service: PaymentRequestService = Depends(get_payment_request_service)
):
    requests, meta = service.list_for_creator(user, status=status, page=page, limit=limit)
    return responses.success(requests, meta=meta)


@router.get("/creator/balances")
def creator_balances(
    user: AuthenticatedUser = Depends(require_creator),
    service: PaymentRequestService = Depends(get_payment_request_service)
):
    return responses.success(service.creator_balances(user))


@router.get("/project/{project_id}")
def project_payment_requests(
    project_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    service: PaymentRequestService = Depends(get_payment_request_service)
):
    return responses.success(service.list_for_project(user, project_id))


@router.get("/project/{project_id}/balance")
def project_balance(
    project_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    service: PaymentRequestService = Depends(get_payment_request_service)
):
    return responses.success(service.project_balance(user, project_id))


@router.get("/{request_id}")
def get_payment_request(
    request_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    service: PaymentRequestService = Depends(get_payment_request_service)
):
    return responses.success(service.get(user, request_id))
