import os
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

# Settings are read at import time by the API entry point; keep SSM out of the picture
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_dummy")
os.environ.setdefault("PAYMENT_QUEUE_URL", "https://sqs.local/payments")
os.environ.setdefault("NOTIFICATION_QUEUE_URL", "https://sqs.local/notifications")
os.environ.setdefault("AWS_REGION", "ap-southeast-1")

from models.base import utc_now  # noqa: E402
from models.donation import Donation, DonorInfo  # noqa: E402
from models.payment_request import BankDetails, PaymentRequest  # noqa: E402
from models.project import Location, Project, RewardTier  # noqa: E402
from models.user import AuthenticatedUser, User  # noqa: E402
from services import funding  # noqa: E402

PROJECT_COUNTER_FIELDS = {"current_amount", "admin_fee_amount", "backer_count"}


class FakeDataAccess:
    """In-memory stand-in for DynamoDataAccess with the same conditional-write semantics."""

    def __init__(self):
        self.users: dict[str, User] = {}
        self.projects: dict[str, Project] = {}
        self.slugs: dict[str, str] = {}
        self.donations: dict[str, Donation] = {}
        self.payment_requests: dict[str, PaymentRequest] = {}
        self.pending_markers: dict[str, str] = {}
        self.totals = {"total_amount": 0, "total_admin_fee": 0, "donation_count": 0}

    @staticmethod
    def _copy(model):
        return model.model_copy(deep=True) if model is not None else None

    @staticmethod
    def _apply(model, fields):
        return model.model_copy(update={**fields, "updated_at": utc_now()}, deep=True)

    # Users

    def create_user(self, user):
        if user.user_id in self.users:
            return None
        self.users[user.user_id] = self._copy(user)
        return user

    def get_user(self, user_id):
        return self._copy(self.users.get(user_id))

    def update_user(self, user_id, fields):
        if user_id not in self.users:
            return None
        self.users[user_id] = self._apply(self.users[user_id], fields)
        return self._copy(self.users[user_id])

    def delete_user(self, user_id):
        self.users.pop(user_id, None)

    def list_users(self):
        return [self._copy(u) for u in self.users.values()]

    # Projects

    def claim_slug(self, slug, project_id):
        if slug in self.slugs:
            return False
        self.slugs[slug] = project_id
        return True

    def release_slug(self, slug):
        self.slugs.pop(slug, None)

    def create_project(self, project):
        self.projects[project.project_id] = self._copy(project)
        return project

    def get_project(self, project_id):
        return self._copy(self.projects.get(project_id))

    def get_project_by_slug(self, slug):
        project_id = self.slugs.get(slug)
        return self.get_project(project_id) if project_id else None

    def update_project(self, project_id, fields):
        if PROJECT_COUNTER_FIELDS & fields.keys():
            raise ValueError("Project counters can only change through credit_project/debit_project")
        if project_id not in self.projects:
            return None
        self.projects[project_id] = self._apply(self.projects[project_id], fields)
        return self._copy(self.projects[project_id])

    def append_project_update(self, project_id, update):
        project = self.projects[project_id]
        project.updates.append(update.model_copy())
        return self._copy(project)

    def _adjust(self, project_id, amount, admin_fee, backers, tier_index):
        project = self.projects[project_id]
        project.current_amount = max(0, project.current_amount + amount)
        project.admin_fee_amount = max(0, project.admin_fee_amount + admin_fee)
        project.backer_count = max(0, project.backer_count + backers)
        if tier_index is not None:
            tier = project.reward_tiers[tier_index]
            tier.current_backers = max(0, tier.current_backers + backers)
        return self._copy(project)

    def credit_project(self, project_id, amount, admin_fee, tier_index=None):
        return self._adjust(project_id, amount, admin_fee, 1, tier_index)

    def debit_project(self, project_id, amount, admin_fee, tier_index=None):
        return self._adjust(project_id, -amount, -admin_fee, -1, tier_index)

    def delete_project(self, project):
        self.projects.pop(project.project_id, None)
        self.release_slug(project.slug)

    def list_projects(self):
        return [self._copy(p) for p in self.projects.values()]

    def list_projects_by_creator(self, creator_id):
        return [self._copy(p) for p in self.projects.values() if p.creator_id == creator_id]

    # Donations

    def create_donation_record(self, donation):
        self.donations[donation.donation_id] = self._copy(donation)
        return donation

    def get_donation(self, donation_id):
        return self._copy(self.donations.get(donation_id))

    def get_donation_by_transaction(self, transaction_id):
        for donation in self.donations.values():
            if donation.transaction_id == transaction_id:
                return self._copy(donation)
        return None

    def update_donation(self, donation_id, fields):
        if donation_id not in self.donations:
            return None
        self.donations[donation_id] = self._apply(self.donations[donation_id], fields)
        return self._copy(self.donations[donation_id])

    def update_donation_status(self, donation_id, status, expected_status, **fields):
        donation = self.donations.get(donation_id)
        if not donation or donation.payment_status != expected_status:
            return None
        return self.update_donation(donation_id, {"payment_status": status, **fields})

    def update_reward_status(self, donation_id, status):
        donation = self.donations.get(donation_id)
        if not donation or donation.reward_status != "pending" or donation.payment_status != "success":
            return None
        return self.update_donation(donation_id, {"reward_status": status})

    def list_donations(self):
        return [self._copy(d) for d in self.donations.values()]

    def list_donations_by_project(self, project_id):
        return [self._copy(d) for d in self.donations.values() if d.project_id == project_id]

    def list_donations_by_donor(self, donor_id):
        return [self._copy(d) for d in self.donations.values() if d.donor_id == donor_id]

    def get_recent_donations(self, limit=10):
        successful = [d for d in self.donations.values() if d.payment_status == "success"]
        successful.sort(key=lambda d: d.created_at, reverse=True)
        return [self._copy(d) for d in successful[:limit]]

    def update_total_donations(self, amount, admin_fee, count=1):
        self.totals["total_amount"] += amount
        self.totals["total_admin_fee"] += admin_fee
        self.totals["donation_count"] += count

    def get_total_donations(self):
        return dict(self.totals)

    # Payment requests

    def claim_pending_request(self, project_id, request_id):
        if project_id in self.pending_markers:
            return False
        self.pending_markers[project_id] = request_id
        return True

    def release_pending_request(self, project_id, request_id):
        if self.pending_markers.get(project_id) == request_id:
            del self.pending_markers[project_id]

    def create_payment_request(self, request):
        self.payment_requests[request.request_id] = self._copy(request)
        return request

    def get_payment_request(self, request_id):
        return self._copy(self.payment_requests.get(request_id))

    def transition_payment_request(self, request_id, from_status, to_status, processed_by,
                                   processed_at, admin_notes=None):
        request = self.payment_requests.get(request_id)
        if not request or request.status != from_status:
            return None
        fields = {"status": to_status, "processed_by": processed_by, "processed_at": processed_at}
        if admin_notes:
            fields["admin_notes"] = admin_notes
        self.payment_requests[request_id] = self._apply(request, fields)
        return self._copy(self.payment_requests[request_id])

    def list_payment_requests(self):
        return [self._copy(r) for r in self.payment_requests.values()]

    def list_payment_requests_by_project(self, project_id):
        return [self._copy(r) for r in self.payment_requests.values() if r.project_id == project_id]

    def list_payment_requests_by_creator(self, creator_id):
        return [self._copy(r) for r in self.payment_requests.values() if r.creator_id == creator_id]


@pytest.fixture
def data_access():
    return FakeDataAccess()


@pytest.fixture
def admin():
    return AuthenticatedUser(user_id="admin-1", email="admin@example.com", name="Admin", role="admin")


@pytest.fixture
def creator():
    return AuthenticatedUser(user_id="creator-1", email="creator@example.com", name="Rahim Uddin", role="creator")


@pytest.fixture
def donor():
    return AuthenticatedUser(user_id="donor-1", email="donor@example.com", name="Karim Ahmed", role="user")


@pytest.fixture
def make_project(data_access):
    def factory(creator_id="creator-1", **overrides):
        now = utc_now()
        fields = {
            "creator_id": creator_id,
            "title": "Solar Lamps for Char Villages",
            "slug": "solar-lamps-for-char-villages",
            "description": "Bringing affordable solar lighting to families living on river islands. " * 2,
            "short_description": "Solar lamps for river island families",
            "category": "environment",
            "target_amount": 100_000,
            "start_date": now - timedelta(days=1),
            "end_date": now + timedelta(days=30),
            "status": "active",
            "location": Location(district="Kurigram", division="Rangpur"),
            "reward_tiers": [
                RewardTier(
                    tier_id="tier-basic",
                    title="Thank you card",
                    description="A handwritten card from the village",
                    minimum_amount=500,
                    estimated_delivery=now + timedelta(days=60),
                ),
                RewardTier(
                    tier_id="tier-lamp",
                    title="Your own lamp",
                    description="One solar lamp delivered to you",
                    minimum_amount=5_000,
                    max_backers=2,
                    estimated_delivery=now + timedelta(days=90),
                ),
            ],
            "story": "Families on the chars rely on kerosene for light, which is costly and dangerous. " * 3,
            "risks": "Floods may delay delivery of lamps to the most remote islands.",
            "tags": ["solar", "energy"],
        }
        fields.update(overrides)
        project = Project(**fields)
        data_access.create_project(project)
        data_access.claim_slug(project.slug, project.project_id)
        return project
    return factory


@pytest.fixture
def make_donation(data_access):
    def factory(project, amount=1_000, payment_status="success", donor_id="donor-1", **overrides):
        net_amount, admin_fee = funding.split_fee(amount)
        fields = {
            "project_id": project.project_id,
            "project_creator_id": project.creator_id,
            "donor_id": donor_id,
            "amount": amount,
            "admin_fee": admin_fee,
            "net_amount": net_amount,
            "payment_status": payment_status,
            "transaction_id": funding.generate_transaction_id(),
            "donor_info": DonorInfo(name="Karim Ahmed", email="donor@example.com"),
            "donor_display_name": "Karim Ahmed",
        }
        fields.update(overrides)
        donation = Donation(**fields)
        data_access.create_donation_record(donation)
        return donation
    return factory


@pytest.fixture
def bank_details():
    return BankDetails(
        account_holder="Rahim Uddin",
        bank_name="Sonali Bank",
        account_number="1234567890123",
        branch_name="Kurigram",
    )


@pytest.fixture
def sqs_client():
    return MagicMock()


@pytest.fixture
def qr_service():
    service = MagicMock()
    service.generate_donation_qr.return_value = ('{"donation_id": "x"}', "https://cdn.example.com/qr-codes/x.png")
    service.verification_url.side_effect = lambda donation_id: f"https://app.example.com/verify-reward/{donation_id}"
    service.render_png.return_value = b"\x89PNG"
    return service
