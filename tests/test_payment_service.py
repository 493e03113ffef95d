import json
from unittest.mock import MagicMock, patch

import pytest
import stripe

from core.exceptions import NotFoundError, PaymentGatewayError, PermissionDeniedError, ValidationFailedError
from services.payment_service import PaymentService, to_minor_units
from services.project_service import ProjectService


@pytest.fixture
def service(data_access, qr_service, sqs_client):
    return PaymentService(
        data_access=data_access,
        project_service=ProjectService(data_access),
        qr_service=qr_service,
        sqs_client=sqs_client,
        payment_queue_url="https://sqs.local/payments",
        notification_queue_url="https://sqs.local/notifications",
        stripe_webhook_secret="whsec_test",
        frontend_url="https://app.example.com/",
        currency="bdt",
    )


@pytest.fixture
def checkout_session():
    with patch("stripe.checkout.Session.create") as create:
        create.return_value = MagicMock(id="cs_test_1", url="https://checkout.stripe.com/c/pay/cs_test_1")
        yield create


def checkout_event(donation, event_type="checkout.session.completed", payment_status="paid",
                   amount_total=None):
    return json.dumps({
        "id": "evt_1",
        "type": event_type,
        "data": {"object": {
            "id": "cs_test_1",
            "payment_intent": "pi_1",
            "payment_status": payment_status,
            "amount_total": amount_total if amount_total is not None else donation.amount * 100,
            "client_reference_id": donation.donation_id,
            "metadata": {"donation_id": donation.donation_id},
        }},
    })


def initiate(service, donor, project, amount=1_500, **kwargs):
    return service.initiate_payment(
        donor,
        project_id=project.project_id,
        amount=amount,
        customer_name="Karim Ahmed",
        customer_email=" Donor@Example.com ",
        **kwargs,
    )


def test_to_minor_units():
    assert to_minor_units(1_500, "bdt") == 150_000
    assert to_minor_units(1_500, "JPY") == 1_500


def test_initiate_payment_creates_pending_donation(service, data_access, donor, make_project, checkout_session):
    project = make_project()
    result = initiate(service, donor, project)

    assert result["payment_gateway_url"] == "https://checkout.stripe.com/c/pay/cs_test_1"
    assert (result["amount"], result["net_amount"], result["admin_fee"]) == (1_500, 1_455, 45)
    assert result["transaction_id"].startswith("PG_")

    donation = data_access.get_donation(result["donation_id"])
    assert donation.payment_status == "pending"
    assert donation.checkout_session_id == "cs_test_1"
    assert donation.donor_info.email == "donor@example.com"
    assert donation.donor_display_name == "Karim Ahmed"

    kwargs = checkout_session.call_args.kwargs
    assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 150_000
    assert kwargs["line_items"][0]["price_data"]["currency"] == "bdt"
    assert kwargs["metadata"]["donation_id"] == donation.donation_id
    assert kwargs["success_url"].startswith(
        f"https://app.example.com/payment/success?donation={donation.donation_id}"
        f"&transaction={donation.transaction_id}"
    )
    assert kwargs["cancel_url"] == (
        f"https://app.example.com/payment/failed?error=payment_cancelled&transaction={donation.transaction_id}"
    )


def test_anonymous_donations_hide_the_name(service, data_access, donor, make_project, checkout_session):
    project = make_project()
    result = initiate(service, donor, project, is_anonymous=True)
    donation = data_access.get_donation(result["donation_id"])
    assert donation.donor_display_name == "Anonymous Donor"
    assert donation.donor_info.name == "Karim Ahmed"


@pytest.mark.parametrize("amount", [9, 500_001])
def test_initiate_rejects_out_of_range_amounts(service, donor, make_project, amount, checkout_session):
    with pytest.raises(ValidationFailedError):
        initiate(service, donor, make_project(), amount=amount)
    checkout_session.assert_not_called()


def test_initiate_rejects_overlong_message(service, data_access, donor, make_project, checkout_session):
    project = make_project()
    with pytest.raises(ValidationFailedError) as exc:
        initiate(service, donor, project, message="x" * 501)
    assert exc.value.errors
    assert data_access.donations == {}
    checkout_session.assert_not_called()


def test_initiate_rejects_projects_not_accepting_donations(service, donor, make_project, checkout_session):
    with pytest.raises(ValidationFailedError):
        initiate(service, donor, make_project(status="draft"))
    with pytest.raises(NotFoundError):
        service.initiate_payment(donor, "missing", 1_000, "Karim", "donor@example.com")


def test_reward_selection(service, data_access, donor, make_project, checkout_session):
    project = make_project()
    result = initiate(service, donor, project, amount=600, reward_tier_id="tier-basic")
    assert data_access.get_donation(result["donation_id"]).reward_value == 500

    with pytest.raises(ValidationFailedError, match="Minimum amount"):
        initiate(service, donor, project, amount=400, reward_tier_id="tier-basic")
    with pytest.raises(ValidationFailedError, match="Invalid reward tier"):
        initiate(service, donor, project, reward_tier_id="tier-unknown")

    data_access.projects[project.project_id].reward_tiers[1].current_backers = 2
    with pytest.raises(ValidationFailedError, match="fully backed"):
        initiate(service, donor, project, amount=5_000, reward_tier_id="tier-lamp")


def test_gateway_failure_marks_donation_failed(service, data_access, donor, make_project):
    project = make_project()
    with patch("stripe.checkout.Session.create", side_effect=stripe.APIConnectionError("down")):
        with pytest.raises(PaymentGatewayError):
            initiate(service, donor, project)
    [donation] = data_access.list_donations()
    assert donation.payment_status == "failed"


def test_settlement_credits_project_once(service, data_access, make_project, make_donation, sqs_client, qr_service):
    project = make_project()
    donation = make_donation(project, amount=6_000, payment_status="pending",
                             reward_tier_id="tier-lamp", reward_value=5_000)

    service.handle_payment_event(checkout_event(donation))
    service.handle_payment_event(checkout_event(donation))

    settled = data_access.get_donation(donation.donation_id)
    assert settled.payment_status == "success"
    assert settled.payment_intent_id == "pi_1"
    assert settled.qr_code_url == "https://cdn.example.com/qr-codes/x.png"

    stored = data_access.get_project(project.project_id)
    assert stored.current_amount == 6_000
    assert stored.admin_fee_amount == 180
    assert stored.backer_count == 1
    assert stored.reward_tiers[1].current_backers == 1
    assert data_access.get_total_donations() == {"total_amount": 6_000, "total_admin_fee": 180, "donation_count": 1}

    qr_service.generate_donation_qr.assert_called_once()
    sqs_client.send_message.assert_called_once()
    job = json.loads(sqs_client.send_message.call_args.kwargs["MessageBody"])
    assert job["type"] == "RECEIPT"
    assert job["email_to"] == "donor@example.com"
    assert job["qr_code_url"] == "https://cdn.example.com/qr-codes/x.png"


def test_amount_mismatch_fails_donation(service, data_access, make_project, make_donation, sqs_client):
    project = make_project()
    donation = make_donation(project, amount=1_000, payment_status="pending")

    service.handle_payment_event(checkout_event(donation, amount_total=100))

    assert data_access.get_donation(donation.donation_id).payment_status == "failed"
    assert data_access.get_project(project.project_id).current_amount == 0
    sqs_client.send_message.assert_not_called()


def test_delayed_payment_settles_on_async_success(service, data_access, make_project, make_donation):
    project = make_project()
    donation = make_donation(project, amount=1_000, payment_status="pending")

    service.handle_payment_event(checkout_event(donation, payment_status="unpaid"))
    assert data_access.get_donation(donation.donation_id).payment_status == "processing"

    service.handle_payment_event(checkout_event(donation, "checkout.session.async_payment_succeeded"))
    assert data_access.get_donation(donation.donation_id).payment_status == "success"
    assert data_access.get_project(project.project_id).backer_count == 1


def test_failed_and_expired_sessions(service, data_access, make_project, make_donation):
    project = make_project()
    failed = make_donation(project, payment_status="processing")
    expired = make_donation(project, payment_status="pending")

    service.handle_payment_event(checkout_event(failed, "checkout.session.async_payment_failed"))
    service.handle_payment_event(checkout_event(expired, "checkout.session.expired"))

    assert data_access.get_donation(failed.donation_id).payment_status == "failed"
    assert data_access.get_donation(expired.donation_id).payment_status == "cancelled"


def test_qr_failure_does_not_undo_settlement(service, data_access, make_project, make_donation, qr_service):
    qr_service.generate_donation_qr.side_effect = RuntimeError("s3 down")
    project = make_project()
    donation = make_donation(project, amount=600, payment_status="pending",
                             reward_tier_id="tier-basic", reward_value=500)

    settled = service.settle_donation(donation.donation_id, json.loads(checkout_event(donation))["data"]["object"])

    assert settled.payment_status == "success"
    assert settled.qr_code_url is None


def test_settlement_closes_project_that_reached_target(service, data_access, make_project, make_donation):
    project = make_project(target_amount=1_000)
    donation = make_donation(project, amount=1_000, payment_status="pending")

    service.handle_payment_event(checkout_event(donation))
    assert data_access.get_project(project.project_id).status == "funded"


def test_queue_payment_webhook_forwards_raw_payload(service, sqs_client):
    payload = b'{"id": "evt_1", "type": "checkout.session.completed"}'
    with patch("stripe.Webhook.construct_event") as construct_event:
        service.queue_payment_webhook(payload, "t=1,v1=abc")

    construct_event.assert_called_once_with(payload=payload, sig_header="t=1,v1=abc", secret="whsec_test")
    sqs_client.send_message.assert_called_once_with(
        QueueUrl="https://sqs.local/payments", MessageBody=payload.decode("utf-8")
    )


def test_queue_payment_webhook_rejects_bad_signature(service, sqs_client):
    error = stripe.SignatureVerificationError("bad signature", "t=1,v1=abc")
    with patch("stripe.Webhook.construct_event", side_effect=error):
        with pytest.raises(stripe.SignatureVerificationError):
            service.queue_payment_webhook(b"{}", "t=1,v1=abc")
    sqs_client.send_message.assert_not_called()


def test_refund_reverses_counters(service, data_access, admin, make_project, make_donation):
    project = make_project()
    donation = make_donation(project, amount=2_000, payment_intent_id="pi_9")
    data_access.credit_project(project.project_id, 2_000, 60)
    data_access.update_total_donations(2_000, 60)

    with patch("stripe.Refund.create", return_value=MagicMock(id="re_1", status="succeeded")) as create:
        result = service.refund(admin, donation.transaction_id, "Duplicate payment")

    assert result == {"refund_id": "re_1", "status": "succeeded"}
    assert create.call_args.kwargs["payment_intent"] == "pi_9"
    assert data_access.get_donation(donation.donation_id).payment_status == "refunded"
    stored = data_access.get_project(project.project_id)
    assert (stored.current_amount, stored.admin_fee_amount, stored.backer_count) == (0, 0, 0)
    assert data_access.get_total_donations()["total_amount"] == 0


def test_refund_reopens_funded_project(service, data_access, admin, make_project, make_donation):
    project = make_project(target_amount=2_000, status="funded")
    donation = make_donation(project, amount=2_000, payment_intent_id="pi_9")
    data_access.credit_project(project.project_id, 2_000, 60)

    with patch("stripe.Refund.create", return_value=MagicMock(id="re_1", status="succeeded")):
        service.refund(admin, donation.transaction_id)

    assert data_access.get_project(project.project_id).status == "active"


def test_gateway_refund_failure_restores_donation(service, data_access, admin, make_project, make_donation):
    project = make_project()
    donation = make_donation(project, amount=2_000, payment_intent_id="pi_9")
    data_access.credit_project(project.project_id, 2_000, 60)

    with patch("stripe.Refund.create", side_effect=stripe.APIConnectionError("network down")):
        with pytest.raises(PaymentGatewayError):
            service.refund(admin, donation.transaction_id)

    assert data_access.get_donation(donation.donation_id).payment_status == "success"
    assert data_access.get_project(project.project_id).current_amount == 2_000


def test_refund_race_never_reaches_stripe(service, data_access, admin, make_project, make_donation):
    project = make_project()
    donation = make_donation(project, payment_intent_id="pi_9")
    stale = data_access.get_donation(donation.donation_id)
    data_access.update_donation(donation.donation_id, {"payment_status": "refunded"})

    with patch.object(data_access, "get_donation_by_transaction", return_value=stale), \
            patch("stripe.Refund.create") as create:
        with pytest.raises(ValidationFailedError):
            service.refund(admin, donation.transaction_id)
    create.assert_not_called()


def test_refund_guards(service, admin, donor, make_project, make_donation):
    project = make_project()
    pending = make_donation(project, payment_status="pending", payment_intent_id="pi_2")
    with pytest.raises(PermissionDeniedError):
        service.refund(donor, pending.transaction_id)
    with pytest.raises(ValidationFailedError):
        service.refund(admin, pending.transaction_id)
    with pytest.raises(NotFoundError):
        service.refund(admin, "PG_MISSING")


def test_payment_status(service, make_project, make_donation):
    project = make_project()
    donation = make_donation(project)
    status = service.payment_status(donation.transaction_id)
    assert status["status"] == "success"
    assert status["project"]["slug"] == project.slug


def test_statistics(service, make_project, make_donation):
    project = make_project()
    make_donation(project, amount=1_000)
    make_donation(project, amount=3_000)
    make_donation(project, amount=500, payment_status="failed")

    stats = service.statistics()
    assert stats["overview"]["total_amount"] == 4_000
    assert stats["overview"]["average_donation"] == 2_000
    assert stats["overview"]["unique_project_count"] == 1
    assert stats["status_breakdown"][0] == {
        "status": "success", "count": 2, "total_amount": 4_000, "total_net_amount": 3_880, "total_admin_fee": 120,
    }
