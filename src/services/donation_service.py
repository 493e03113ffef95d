import base64
import logging
from collections import defaultdict
from datetime import datetime, timedelta

from core.exceptions import NotFoundError, PermissionDeniedError, ValidationFailedError
from data_access.dynamodb import DynamoDataAccess
from models.base import utc_now
from models.donation import Donation
from models.user import AuthenticatedUser
from services import funding
from services.common import ensure_owner_or_admin, paginate
from services.qr_service import QRService

logger = logging.getLogger(__name__)

DEFAULT_STATISTICS_DAYS = 30


def public_donation(donation: Donation) -> dict:
    """Donation as shown to anyone: no donor contact details."""
    return {
        "donation_id": donation.donation_id,
        "project_id": donation.project_id,
        "amount": donation.amount,
        "currency": donation.currency,
        "donor_display_name": donation.donor_display_name,
        "is_anonymous": donation.is_anonymous,
        "message": donation.message,
        "reward_value": donation.reward_value,
        "reward_status": donation.reward_status,
        "payment_status": donation.payment_status,
        "created_at": donation.created_at,
    }


def _can_see_private(actor: AuthenticatedUser | None, donation: Donation) -> bool:
    if actor is None:
        return False
    return actor.is_admin or actor.user_id in (donation.donor_id, donation.project_creator_id)


class DonationService:
    def __init__(self, data_access: DynamoDataAccess, qr_service: QRService):
        self.data_access = data_access
        self.qr_service = qr_service

    def _get_or_404(self, donation_id: str) -> Donation:
        donation = self.data_access.get_donation(donation_id)
        if not donation:
            raise NotFoundError("Donation not found")
        return donation

    def present(self, donation: Donation, actor: AuthenticatedUser | None) -> dict:
        if _can_see_private(actor, donation):
            return donation.model_dump(mode="json")
        return public_donation(donation)

    def list_donations(
        self,
        actor: AuthenticatedUser | None = None,
        project_id: str | None = None,
        status: str | None = None,
        has_reward: bool | None = None,
        donor_id: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[dict], dict]:
        # Filtering by donor links anonymous donations to a user id
        if donor_id:
            if actor is None:
                raise PermissionDeniedError("Access denied")
            ensure_owner_or_admin(actor, donor_id)

        if project_id:
            donations = self.data_access.list_donations_by_project(project_id)
        elif donor_id:
            donations = self.data_access.list_donations_by_donor(donor_id)
        else:
            donations = self.data_access.list_donations()

        if status:
            donations = [d for d in donations if d.payment_status == status]
        if donor_id:
            donations = [d for d in donations if d.donor_id == donor_id]
        if has_reward is not None:
            donations = [d for d in donations if d.has_reward == has_reward]
        # Unsettled donations are only visible to admins and to the donor
        if not donor_id and not (actor and actor.is_admin):
            donations = [d for d in donations if d.is_successful]

        donations.sort(key=lambda d: d.created_at, reverse=True)
        page_items, meta = paginate(donations, page, limit)
        return [self.present(d, actor) for d in page_items], meta

    def recent(self, limit: int = 10, include_anonymous: bool = True) -> list[dict]:
        donations = self.data_access.get_recent_donations(limit)
        if not include_anonymous:
            donations = [d for d in donations if not d.is_anonymous]
        return [public_donation(d) for d in donations]

    def total(self) -> dict:
        return self.data_access.get_total_donations()

    def get(self, donation_id: str, actor: AuthenticatedUser | None = None) -> dict:
        return self.present(self._get_or_404(donation_id), actor)

    def by_project(self, project_id: str, actor: AuthenticatedUser | None = None,
                   page: int = 1, limit: int = 20) -> tuple[list[dict], dict]:
        if not self.data_access.get_project(project_id):
            raise NotFoundError("Project not found")
        return self.list_donations(actor, project_id=project_id, status="success", page=page, limit=limit)

    def by_user(self, actor: AuthenticatedUser, user_id: str, page: int = 1,
                limit: int = 20) -> tuple[list[dict], dict]:
        ensure_owner_or_admin(actor, user_id)
        return self.list_donations(actor, donor_id=user_id, page=page, limit=limit)

    def qr(self, donation_id: str) -> dict:
        donation = self._get_or_404(donation_id)
        if not donation.is_successful:
            raise ValidationFailedError("QR code is only available for successful donations")
        if not donation.has_reward:
            raise ValidationFailedError("This donation has no reward attached")

        image = self.qr_service.render_png(self.qr_service.verification_url(donation.donation_id))
        return {
            "donation_id": donation.donation_id,
            "qr_code_url": donation.qr_code_url,
            "qr_code_data": donation.qr_code_data,
            "format": "base64",
            "qr_code": base64.b64encode(image).decode("ascii"),
            "reward_value": donation.reward_value,
            "reward_status": donation.reward_status,
        }

    def verify_reward(self, donation_id: str, now: datetime | None = None) -> dict:
        donation = self._get_or_404(donation_id)
        eligibility = funding.reward_eligibility(donation, now or utc_now())
        project = self.data_access.get_project(donation.project_id)
        tier = project.find_tier(donation.reward_tier_id) if project else None
        return {
            "donation": public_donation(donation),
            "project": {"project_id": project.project_id, "title": project.title, "slug": project.slug}
            if project else None,
            "reward_tier": tier[1].model_dump(mode="json") if tier else None,
            "redeemable": eligibility.redeemable,
            "reason": eligibility.reason,
            "expires_at": eligibility.expires_at,
            "is_expired": eligibility.is_expired,
        }

    def redeem_reward(self, actor: AuthenticatedUser, donation_id: str, now: datetime | None = None) -> Donation:
        donation = self._get_or_404(donation_id)
        if not actor.is_admin and actor.user_id != donation.project_creator_id:
            raise PermissionDeniedError("Only the project creator can redeem this reward")

        eligibility = funding.reward_eligibility(donation, now or utc_now())
        if eligibility.is_expired and donation.reward_status == "pending":
            self.data_access.update_reward_status(donation_id, "expired")
        if not eligibility.redeemable:
            raise ValidationFailedError(
                "Reward cannot be redeemed. Check payment status and redemption status.",
                [eligibility.reason],
            )

        redeemed = self.data_access.update_reward_status(donation_id, "redeemed")
        if not redeemed:
            raise ValidationFailedError("Reward has already been redeemed", ["already_redeemed"])
        logger.info(f"Reward for donation {donation_id} redeemed by {actor.user_id}")
        return redeemed

    def pending_rewards(self, actor: AuthenticatedUser, project_id: str | None = None) -> list[dict]:
        if project_id:
            project = self.data_access.get_project(project_id)
            if not project:
                raise NotFoundError("Project not found")
            ensure_owner_or_admin(actor, project.creator_id)
            donations = self.data_access.list_donations_by_project(project_id)
        elif actor.is_admin:
            donations = self.data_access.list_donations()
        else:
            donations = [
                donation
                for project in self.data_access.list_projects_by_creator(actor.user_id)
                for donation in self.data_access.list_donations_by_project(project.project_id)
            ]

        pending = [
            d for d in donations
            if d.is_successful and d.reward_value > 0 and d.reward_status == "pending"
        ]
        pending.sort(key=lambda d: d.created_at, reverse=True)
        return [d.model_dump(mode="json") for d in pending]

    def statistics(self, project_id: str | None = None, start: datetime | None = None,
                   end: datetime | None = None) -> dict:
        end = end or utc_now()
        start = start or end - timedelta(days=DEFAULT_STATISTICS_DAYS)

        if project_id:
            if not self.data_access.get_project(project_id):
                raise NotFoundError("Project not found")
            donations = self.data_access.list_donations_by_project(project_id)
        else:
            donations = self.data_access.list_donations()

        successful = [d for d in donations if d.is_successful and start <= d.created_at <= end]
        daily = defaultdict(lambda: {"amount": 0, "count": 0})
        for donation in successful:
            day = daily[donation.created_at.date().isoformat()]
            day["amount"] += donation.amount
            day["count"] += 1

        total_amount = sum(d.amount for d in successful)
        return {
            "total_amount": total_amount,
            "total_net_amount": sum(d.net_amount for d in successful),
            "total_admin_fee": sum(d.admin_fee for d in successful),
            "donation_count": len(successful),
            "average_donation": round(total_amount / len(successful)) if successful else 0,
            "daily": [{"date": date, **totals} for date, totals in sorted(daily.items())],
            "period": {"start_date": start, "end_date": end},
        }

    def update_message(self, actor: AuthenticatedUser, donation_id: str, message: str) -> Donation:
        donation = self._get_or_404(donation_id)
        if donation.donor_id != actor.user_id:
            raise PermissionDeniedError("Only the donor can update this message")
        if not donation.is_successful:
            raise ValidationFailedError("Messages can only be added to successful donations")
        message = message.strip()
        if len(message) > 500:
            raise ValidationFailedError("Message cannot exceed 500 characters")
        return self.data_access.update_donation(donation_id, {"message": message or None}) or donation

    def regenerate_qr(self, actor: AuthenticatedUser, donation_id: str) -> Donation:
        donation = self._get_or_404(donation_id)
        if not actor.is_admin and actor.user_id != donation.project_creator_id:
            raise PermissionDeniedError("Access denied")
        if not donation.is_successful or not donation.has_reward:
            raise ValidationFailedError("QR codes are only issued for successful donations with rewards")
        project = self.data_access.get_project(donation.project_id)
        if not project:
            raise NotFoundError("Project not found")

        qr_code_data, qr_code_url = self.qr_service.generate_donation_qr(donation, project)
        return self.data_access.update_donation(
            donation_id, {"qr_code_data": qr_code_data, "qr_code_url": qr_code_url}
        ) or donation
