import logging
from datetime import datetime
from fastapi import APIRouter, Depends, Header, Request
from typing import Optional
import stripe

from api import responses
from api.auth import get_current_user, require_admin
from api.schemas import InitiatePaymentRequest, RefundRequest
from core.dependencies import get_payment_service
from models.base import as_utc
from models.user import AuthenticatedUser
from services.payment_service import PaymentService

router = APIRouter(tags=["payments"])
logger = logging.getLogger(__name__)


@router.post("/payments/initiate")
def initiate_payment(
    body: InitiatePaymentRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service)
):
    payment = payment_service.initiate_payment(
        user,
        project_id=body.project_id,
        amount=body.amount,
        customer_name=body.customer_name,
        customer_email=body.customer_email,
        customer_phone=body.customer_phone,
        reward_tier_id=body.reward_tier_id,
        is_anonymous=body.is_anonymous,
        message=body.message,
    )
    return responses.success(payment, "Payment initiated successfully")


@router.post("/webhooks/stripe")
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: str = Header(...),
    payment_service: PaymentService = Depends(get_payment_service)
):
    """
    Receives webhook events from Stripe, validates them,
    and queues them in SQS for background processing.
    """
    payload = await request.body()

    try:
        payment_service.queue_payment_webhook(
            payload=payload,
            signature_header=stripe_signature
        )
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        return responses.error("Invalid signature", status_code=400)
    except ValueError as e:
        logger.warning(f"Webhook invalid payload: {e}")
        return responses.error("Invalid payload", status_code=400)

    return responses.success({"status": "queued"})


@router.get("/payments/methods")
def payment_methods(payment_service: PaymentService = Depends(get_payment_service)):
    return responses.success(payment_service.payment_methods())


@router.get("/payments/statistics")
def payment_statistics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    admin: AuthenticatedUser = Depends(require_admin),
    payment_service: PaymentService = Depends(get_payment_service)
):
    stats = payment_service.statistics(
        start=as_utc(start_date) if start_date else None,
        end=as_utc(end_date) if end_date else None,
    )
    return responses.success(stats)


@router.get("/payments/{transaction_id}/status")
def payment_status(transaction_id: str, payment_service: PaymentService = Depends(get_payment_service)):
    return responses.success(payment_service.payment_status(transaction_id))


@router.post("/payments/{transaction_id}/refund")
def refund_payment(
    transaction_id: str,
    body: RefundRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    payment_service: PaymentService = Depends(get_payment_service)
):
    refund = payment_service.refund(admin, transaction_id, body.reason)
    return responses.success(refund, "Refund processed successfully")
