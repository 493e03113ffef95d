from datetime import datetime
from fastapi import APIRouter, Depends, Query
from typing import Optional

from api import responses
from api.auth import get_current_user, get_optional_user, require_creator
from api.schemas import DonationMessageRequest
from core.dependencies import get_donation_service
from models.base import as_utc
from models.user import AuthenticatedUser
from services.donation_service import DonationService

router = APIRouter(prefix="/donations", tags=["donations"])


@router.get("")
def list_donations(
    project_id: Optional[str] = None,
    status: Optional[str] = None,
    has_reward: Optional[bool] = None,
    donor_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: Optional[AuthenticatedUser] = Depends(get_optional_user),
    donation_service: DonationService = Depends(get_donation_service)
):
    donations, meta = donation_service.list_donations(
        user,
        project_id=project_id,
        status=status,
        has_reward=has_reward,
        donor_id=donor_id,
        page=page,
        limit=limit,
    )
    return responses.success(donations, meta=meta)


@router.get("/recent")
def get_recent_donations(
    limit: int = Query(10, ge=1, le=50),
    donation_service: DonationService = Depends(get_donation_service)
):
    return responses.success(donation_service.recent(limit=limit))


@router.get("/total")
def get_total_donations(donation_service: DonationService = Depends(get_donation_service)):
    return responses.success(donation_service.total())


@router.get("/statistics")
def donation_statistics(
    project_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    donation_service: DonationService = Depends(get_donation_service)
):
    stats = donation_service.statistics(
        project_id=project_id,
        start=as_utc(start_date) if start_date else None,
        end=as_utc(end_date) if end_date else None,
    )
    return responses.success(stats)


@router.get("/rewards/pending")
def pending_rewards(
    project_id: Optional[str] = None,
    user: AuthenticatedUser = Depends(require_creator),
    donation_service: DonationService = Depends(get_donation_service)
):
    return responses.success(donation_service.pending_rewards(user, project_id))


@router.get("/project/{project_id}")
def donations_by_project(
    project_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: Optional[AuthenticatedUser] = Depends(get_optional_user),
    donation_service: DonationService = Depends(get_donation_service)
):
    donations, meta = donation_service.by_project(project_id, user, page=page, limit=limit)
    return responses.success(donations, meta=meta)


@router.get("/user/{user_id}")
def donations_by_user(
    user_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: AuthenticatedUser = Depends(get_current_user),
    donation_service: DonationService = Depends(get_donation_service)
):
    donations, meta = donation_service.by_user(user, user_id, page=page, limit=limit)
    return responses.success(donations, meta=meta)


@router.get("/{donation_id}")
def get_donation(
    donation_id: str,
    user: Optional[AuthenticatedUser] = Depends(get_optional_user),
    donation_service: DonationService = Depends(get_donation_service)
):
    return responses.success(donation_service.get(donation_id, user))


@router.get("/{donation_id}/qr")
def get_donation_qr(donation_id: str, donation_service: DonationService = Depends(get_donation_service)):
    return responses.success(donation_service.qr(donation_id))


@router.get("/{donation_id}/verify")
def verify_reward(donation_id: str, donation_service: DonationService = Depends(get_donation_service)):
    return responses.success(donation_service.verify_reward(donation_id))


@router.post("/{donation_id}/redeem")
def redeem_reward(
    donation_id: str,
    user: AuthenticatedUser = Depends(require_creator),
    donation_service: DonationService = Depends(get_donation_service)
):
    donation = donation_service.redeem_reward(user, donation_id)
    return responses.success(donation_service.present(donation, user), "Reward redeemed successfully")


@router.post("/{donation_id}/regenerate-qr")
def regenerate_qr(
    donation_id: str,
    user: AuthenticatedUser = Depends(require_creator),
    donation_service: DonationService = Depends(get_donation_service)
):
    donation = donation_service.regenerate_qr(user, donation_id)
    return responses.success(
        {"donation_id": donation.donation_id, "qr_code_url": donation.qr_code_url},
        "QR code regenerated successfully"
    )


@router.post("/{donation_id}/message")
def update_donation_message(
    donation_id: str,
    body: DonationMessageRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    donation_service: DonationService = Depends(get_donation_service)
):
    donation = donation_service.update_message(user, donation_id, body.message)
    return responses.success(donation_service.present(donation, user), "Message updated successfully")
