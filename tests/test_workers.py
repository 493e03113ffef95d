import json
from unittest.mock import MagicMock, patch

import pytest

from workers import notification_worker, payment_worker, project_status_worker


def sqs_event(*bodies):
    return {"Records": [
        {"messageId": f"m-{i}", "body": body if isinstance(body, str) else json.dumps(body)}
        for i, body in enumerate(bodies)
    ]}


def test_payment_worker_hands_each_record_to_service():
    service = MagicMock()
    with patch.object(payment_worker, "get_payment_service", return_value=service):
        result = payment_worker.lambda_handler(sqs_event('{"id": "evt_1"}', '{"id": "evt_2"}'), None)

    assert result == {"statusCode": 200}
    assert [c.args[0] for c in service.handle_payment_event.call_args_list] == ['{"id": "evt_1"}', '{"id": "evt_2"}']


def test_payment_worker_reraises_so_sqs_retries():
    service = MagicMock()
    service.handle_payment_event.side_effect = RuntimeError("table unavailable")
    with patch.object(payment_worker, "get_payment_service", return_value=service):
        with pytest.raises(RuntimeError):
            payment_worker.lambda_handler(sqs_event('{"id": "evt_1"}'), None)


def test_notification_worker_dispatches_by_type():
    service = MagicMock()
    event = sqs_event(
        {
            "type": "RECEIPT",
            "email_to": "donor@example.com",
            "amount": 1_000,
            "donation_id": "d-1",
            "project_title": "Solar Lamps",
            "transaction_id": "PG-1",
            "qr_code_url": "https://cdn.example.com/qr-codes/d-1.png",
        },
        {
            "type": "WITHDRAWAL",
            "email_to": "creator@example.com",
            "status": "paid",
            "requested_amount": 5_000,
            "project_title": "Solar Lamps",
            "notes": "Sent via BEFTN",
        },
        {"type": "NEWSLETTER"},
    )
    with patch.object(notification_worker, "get_notification_service", return_value=service):
        assert notification_worker.lambda_handler(event, None) == {"statusCode": 200}

    service.send_donation_receipt.assert_called_once_with(
        email_to="donor@example.com",
        amount=1_000,
        donation_id="d-1",
        project_title="Solar Lamps",
        transaction_id="PG-1",
        qr_code_url="https://cdn.example.com/qr-codes/d-1.png",
    )
    service.send_withdrawal_update.assert_called_once_with(
        email_to="creator@example.com",
        status="paid",
        requested_amount=5_000,
        project_title="Solar Lamps",
        notes="Sent via BEFTN",
    )


def test_notification_worker_reraises_on_bad_job():
    with patch.object(notification_worker, "get_notification_service", return_value=MagicMock()):
        with pytest.raises(KeyError):
            notification_worker.lambda_handler(sqs_event({"type": "RECEIPT"}), None)


def test_project_status_worker_reports_changes():
    service = MagicMock()
    service.refresh_statuses.return_value = 3
    with patch.object(project_status_worker, "get_project_service", return_value=service):
        assert project_status_worker.lambda_handler({}, None) == {"statusCode": 200, "updated": 3}
