import json
import logging
from typing import Any

from botocore.exceptions import ClientError
from pydantic import ValidationError

from core.exceptions import ConflictError, NotFoundError, PermissionDeniedError, ValidationFailedError
from data_access.dynamodb import DynamoDataAccess
from models.base import utc_now
from models.payment_request import (
    MAX_REQUEST_AMOUNT,
    MIN_REQUEST_AMOUNT,
    BankDetails,
    PaymentRequest,
)
from models.project import Project
from models.user import AuthenticatedUser
from services import funding
from services.common import ensure_owner_or_admin, paginate

logger = logging.getLogger(__name__)


def present_request(request: PaymentRequest) -> dict:
    data = request.model_dump(mode="json")
    data["processing_days"] = request.processing_days
    return data


class PaymentRequestService:
    def __init__(self, data_access: DynamoDataAccess, sqs_client, notification_queue_url: str):
        self.data_access = data_access
        self.sqs_client = sqs_client
        self.notification_queue_url = notification_queue_url

    def _get_or_404(self, request_id: str) -> PaymentRequest:
        request = self.data_access.get_payment_request(request_id)
        if not request:
            raise NotFoundError("Payment request not found")
        return request

    def _owned_project(self, actor: AuthenticatedUser, project_id: str) -> Project:
        project = self.data_access.get_project(project_id)
        if not project:
            raise NotFoundError("Project not found")
        ensure_owner_or_admin(actor, project.creator_id, "You do not own this project")
        return project

    def _balance(self, project_id: str) -> funding.ProjectBalance:
        return funding.project_balance(
            self.data_access.list_donations_by_project(project_id),
            self.data_access.list_payment_requests_by_project(project_id),
        )

    def project_balance(self, actor: AuthenticatedUser, project_id: str) -> dict:
        project = self._owned_project(actor, project_id)
        return {
            "project_id": project.project_id,
            "project_title": project.title,
            **self._balance(project_id).to_dict(),
        }

    def creator_balances(self, actor: AuthenticatedUser) -> dict:
        projects = []
        for project in self.data_access.list_projects_by_creator(actor.user_id):
            balance = self._balance(project.project_id)
            projects.append({
                "project_id": project.project_id,
                "project_title": project.title,
                "project_status": project.status,
                **balance.to_dict(),
            })
        return {
            "projects": projects,
            "total_available": sum(p["available_amount"] for p in projects),
        }

    def create(self, actor: AuthenticatedUser, project_id: str, requested_amount: int,
               bank_details: dict[str, Any]) -> PaymentRequest:
        project = self.data_access.get_project(project_id)
        if not project:
            raise NotFoundError("Project not found")
        if project.creator_id != actor.user_id:
            raise PermissionDeniedError("You can only request payments for your own projects")

        if not MIN_REQUEST_AMOUNT <= requested_amount <= MAX_REQUEST_AMOUNT:
            raise ValidationFailedError(
                f"Request amount must be between {MIN_REQUEST_AMOUNT} and {MAX_REQUEST_AMOUNT:,}"
            )
        try:
            details = BankDetails.model_validate(bank_details)
        except ValidationError as e:
            raise ValidationFailedError("Complete bank details are required", [err["msg"] for err in e.errors()])

        requests = self.data_access.list_payment_requests_by_project(project_id)
        if any(r.status == "pending" for r in requests):
            raise ConflictError("There is already a pending payment request for this project")

        balance = funding.project_balance(self.data_access.list_donations_by_project(project_id), requests)
        if requested_amount > balance.available_amount:
            raise ValidationFailedError(
                f"Requested amount exceeds available balance of {balance.available_amount}"
            )

        request = PaymentRequest(
            project_id=project_id,
            creator_id=actor.user_id,
            requested_amount=requested_amount,
            admin_fee=funding.proportional_fee(requested_amount, balance),
            net_amount=requested_amount,
            bank_details=details,
        )
        # Concurrent creates race on the marker; the read above is only a fast path
        if not self.data_access.claim_pending_request(project_id, request.request_id):
            raise ConflictError("There is already a pending payment request for this project")
        try:
            self.data_access.create_payment_request(request)
        except ClientError:
            self.data_access.release_pending_request(project_id, request.request_id)
            raise
        logger.info(f"Payment request {request.request_id} of {requested_amount} created for project {project_id}")
        return request

    def list_for_project(self, actor: AuthenticatedUser, project_id: str) -> list[dict]:
        self._owned_project(actor, project_id)
        requests = self.data_access.list_payment_requests_by_project(project_id)
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return [present_request(r) for r in requests]

    def list_for_creator(self, actor: AuthenticatedUser, status: str | None = None,
                         page: int = 1, limit: int = 20) -> tuple[list[dict], dict]:
        requests = self.data_access.list_payment_requests_by_creator(actor.user_id)
        if status:
            requests = [r for r in requests if r.status == status]
        requests.sort(key=lambda r: r.created_at, reverse=True)
        page_items, meta = paginate(requests, page, limit)
        return [present_request(r) for r in page_items], meta

    def get(self, actor: AuthenticatedUser, request_id: str) -> dict:
        request = self._get_or_404(request_id)
        ensure_owner_or_admin(actor, request.creator_id)
        return present_request(request)

    # Admin transitions

    def _transition(self, admin: AuthenticatedUser, request_id: str, from_status: str, to_status: str,
                    notes: str | None) -> PaymentRequest:
        if not admin.is_admin:
            raise PermissionDeniedError("Only admins can process payment requests")
        updated = self.data_access.transition_payment_request(
            request_id,
            from_status=from_status,
            to_status=to_status,
            processed_by=admin.user_id,
            processed_at=utc_now(),
            admin_notes=notes,
        )
        if not updated:
            raise ValidationFailedError(f"Only {from_status} requests can be marked as {to_status}")
        if from_status == "pending":
            self.data_access.release_pending_request(updated.project_id, updated.request_id)
        logger.info(f"Payment request {request_id} moved {from_status} -> {to_status} by {admin.user_id}")
        self._notify_creator(updated)
        return updated

    def approve(self, admin: AuthenticatedUser, request_id: str, notes: str | None = None) -> PaymentRequest:
        request = self._get_or_404(request_id)
        if request.status != "pending":
            raise ValidationFailedError("Only pending requests can be approved")
        balance = self._balance(request.project_id)
        if request.requested_amount > balance.available_amount:
            raise ValidationFailedError(
                f"Requested amount exceeds available balance of {balance.available_amount}"
            )
        return self._transition(admin, request_id, "pending", "approved", notes)

    def reject(self, admin: AuthenticatedUser, request_id: str, reason: str) -> PaymentRequest:
        if not reason or not reason.strip():
            raise ValidationFailedError("Rejection reason is required")
        self._get_or_404(request_id)
        return self._transition(admin, request_id, "pending", "rejected", reason.strip())

    def mark_paid(self, admin: AuthenticatedUser, request_id: str, notes: str | None = None) -> PaymentRequest:
        self._get_or_404(request_id)
        return self._transition(admin, request_id, "approved", "paid", notes)

    def _notify_creator(self, request: PaymentRequest):
        creator = self.data_access.get_user(request.creator_id)
        if not creator:
            logger.warning(f"No profile for creator {request.creator_id}; skipping withdrawal e-mail")
            return
        project = self.data_access.get_project(request.project_id)
        notification_job = {
            "type": "WITHDRAWAL",
            "email_to": creator.email,
            "status": request.status,
            "requested_amount": request.requested_amount,
            "project_title": project.title if project else "",
            "notes": request.admin_notes,
        }
        try:
            self.sqs_client.send_message(
                QueueUrl=self.notification_queue_url,
                MessageBody=json.dumps(notification_job)
            )
        except ClientError as e:
            # The transition is already committed
            logger.error(f"Failed to queue withdrawal notification for {request.request_id}: {e}")
