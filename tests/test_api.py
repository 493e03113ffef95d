import asyncio
from unittest.mock import MagicMock, patch

import pytest
import stripe
from fastapi.testclient import TestClient
from starlette.requests import Request

from api.auth import get_current_user, get_optional_user
from api.main import app
from core import dependencies
from core.exceptions import AuthenticationError
from models.user import AuthenticatedUser
from services.admin_service import AdminService
from services.donation_service import DonationService
from services.payment_request_service import PaymentRequestService
from services.payment_service import PaymentService
from services.project_service import ProjectService
from services.user_service import UserService


class CurrentUser:
    def __init__(self):
        self.user = None

    def require(self):
        if self.user is None:
            raise AuthenticationError("Could not find user claims")
        return self.user

    def optional(self):
        return self.user


@pytest.fixture
def current_user():
    return CurrentUser()


@pytest.fixture
def client(data_access, qr_service, sqs_client, current_user):
    project_service = ProjectService(data_access)
    payment_service = PaymentService(
        data_access, project_service, qr_service, sqs_client,
        payment_queue_url="https://sqs.local/payments",
        notification_queue_url="https://sqs.local/notifications",
        stripe_webhook_secret="whsec_test",
        frontend_url="https://app.example.com",
    )
    app.dependency_overrides.update({
        get_current_user: current_user.require,
        get_optional_user: current_user.optional,
        dependencies.get_project_service: lambda: project_service,
        dependencies.get_payment_service: lambda: payment_service,
        dependencies.get_donation_service: lambda: DonationService(data_access, qr_service),
        dependencies.get_payment_request_service: lambda: PaymentRequestService(
            data_access, sqs_client, "https://sqs.local/notifications"
        ),
        dependencies.get_user_service: lambda: UserService(data_access),
        dependencies.get_admin_service: lambda: AdminService(data_access),
    })
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"success": True, "message": None, "data": {"status": "ok"}}


def test_list_projects_returns_envelope_with_meta(client, make_project):
    make_project()
    body = client.get("/projects", params={"limit": 5}).json()
    assert body["success"] is True
    assert body["data"][0]["slug"] == "solar-lamps-for-char-villages"
    assert body["data"][0]["funding_progress"] == 0
    assert body["meta"]["total"] == 1
    assert body["meta"]["has_next_page"] is False


def test_get_project_by_slug_not_found(client):
    response = client.get("/projects/unknown-slug")
    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "Project not found", "errors": []}


def test_create_project_requires_creator_role(client, current_user, donor, creator):
    payload = {"title": "Library Boats", "category": "education"}

    response = client.post("/projects", json=payload)
    assert response.status_code == 401

    current_user.user = donor
    response = client.post("/projects", json=payload)
    assert response.status_code == 403
    assert response.json()["message"] == "Insufficient permissions"

    current_user.user = creator
    response = client.post("/projects", json=payload)
    assert response.status_code == 400
    assert response.json()["errors"]


def test_initiate_payment(client, current_user, donor, make_project):
    current_user.user = donor
    project = make_project()
    session = MagicMock(id="cs_test_9", url="https://checkout.stripe.com/c/pay/cs_test_9")
    with patch("stripe.checkout.Session.create", return_value=session):
        response = client.post("/payments/initiate", json={
            "project_id": project.project_id,
            "amount": 1_000,
            "customer_name": "Karim Ahmed",
            "customer_email": "donor@example.com",
        })

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["payment_gateway_url"] == "https://checkout.stripe.com/c/pay/cs_test_9"
    assert data["admin_fee"] == 30


def test_request_validation_errors_use_envelope(client, current_user, donor):
    current_user.user = donor
    response = client.post("/payments/initiate", json={"amount": "lots"})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["message"] == "Validation failed"
    assert any(error.startswith("project_id") for error in body["errors"])


def test_overlong_donation_message_is_a_bad_request(client, current_user, donor, make_project):
    current_user.user = donor
    project = make_project()
    response = client.post("/payments/initiate", json={
        "project_id": project.project_id,
        "amount": 1_000,
        "customer_name": "Karim Ahmed",
        "customer_email": "donor@example.com",
        "message": "x" * 501,
    })
    assert response.status_code == 400
    assert any(error.startswith("message") for error in response.json()["errors"])


def test_donor_filter_requires_self_or_admin(client, current_user, creator, donor, make_project, make_donation):
    project = make_project()
    make_donation(project, is_anonymous=True, donor_display_name="Anonymous Donor")

    response = client.get("/donations", params={"donor_id": donor.user_id})
    assert response.status_code == 403
    assert response.json()["success"] is False

    current_user.user = creator
    assert client.get("/donations", params={"donor_id": donor.user_id}).status_code == 403

    current_user.user = donor
    response = client.get("/donations", params={"donor_id": donor.user_id})
    assert response.status_code == 200
    assert response.json()["meta"]["total"] == 1


def test_webhook_rejects_bad_signature(client, sqs_client):
    error = stripe.SignatureVerificationError("bad signature", "t=1,v1=abc")
    with patch("stripe.Webhook.construct_event", side_effect=error):
        response = client.post("/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=abc"})
    assert response.status_code == 400
    assert response.json()["message"] == "Invalid signature"
    sqs_client.send_message.assert_not_called()


def test_webhook_queues_event(client, sqs_client):
    with patch("stripe.Webhook.construct_event"):
        response = client.post("/webhooks/stripe", content=b'{"id": "evt_1"}',
                               headers={"stripe-signature": "t=1,v1=abc"})
    assert response.status_code == 200
    assert response.json()["data"] == {"status": "queued"}
    sqs_client.send_message.assert_called_once()


def test_verify_and_redeem_reward(client, current_user, creator, make_project, make_donation):
    project = make_project()
    donation = make_donation(project, amount=600, reward_tier_id="tier-basic", reward_value=500)

    verify = client.get(f"/donations/{donation.donation_id}/verify").json()["data"]
    assert verify["redeemable"] is True

    current_user.user = creator
    response = client.post(f"/donations/{donation.donation_id}/redeem")
    assert response.status_code == 200
    assert response.json()["data"]["reward_status"] == "redeemed"

    again = client.post(f"/donations/{donation.donation_id}/redeem")
    assert again.status_code == 400
    assert again.json()["errors"] == ["already_redeemed"]


def test_withdrawal_flow(client, current_user, creator, admin, make_project, make_donation, bank_details):
    project = make_project()
    make_donation(project, amount=10_000)

    current_user.user = creator
    response = client.post("/payment-requests", json={
        "project_id": project.project_id,
        "requested_amount": 5_000,
        "bank_details": bank_details.model_dump(),
    })
    assert response.status_code == 201
    request_id = response.json()["data"]["request_id"]

    balance = client.get(f"/payment-requests/project/{project.project_id}/balance").json()["data"]
    assert balance["available_amount"] == 9_700

    assert client.post(f"/admin/payment-requests/{request_id}/approve", json={}).status_code == 403

    current_user.user = admin
    approved = client.post(f"/admin/payment-requests/{request_id}/approve", json={"notes": "ok"})
    assert approved.json()["data"]["status"] == "approved"

    current_user.user = creator
    balance = client.get(f"/payment-requests/project/{project.project_id}/balance").json()["data"]
    assert balance["available_amount"] == 4_700


def test_admin_dashboard(client, current_user, admin, make_project):
    make_project()
    current_user.user = admin
    body = client.get("/admin/dashboard").json()
    assert body["data"]["totals"]["active_projects"] == 1


def _request_with_claims(claims):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [],
        "aws.event": {"requestContext": {"authorizer": {"claims": claims}}},
    }
    return Request(scope)


def test_get_current_user_reads_cognito_claims():
    user = asyncio.run(get_current_user(_request_with_claims({
        "sub": "abc", "email": "a@example.com", "name": "A", "custom:role": "creator", "email_verified": "true",
    })))
    assert user == AuthenticatedUser(user_id="abc", email="a@example.com", name="A", role="creator")


def test_get_current_user_defaults_unknown_roles():
    user = asyncio.run(get_current_user(_request_with_claims({"sub": "abc", "custom:role": "root"})))
    assert user.role == "user"


def test_get_current_user_without_claims():
    with pytest.raises(AuthenticationError):
        asyncio.run(get_current_user(_request_with_claims({})))
