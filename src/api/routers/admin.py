from datetime import datetime
from fastapi import APIRouter, Depends, Query
from typing import Optional

from api import responses
from api.auth import require_admin
from api.schemas import AdminNotesRequest, ProjectStatusRequest, RejectRequest
from core.dependencies import (
    get_admin_service,
    get_payment_request_service,
    get_project_service,
    get_user_service,
)
from models.base import as_utc
from models.user import AuthenticatedUser
from services.admin_service import AdminService
from services.payment_request_service import PaymentRequestService, present_request
from services.project_service import ProjectService
from services.user_service import UserService

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/dashboard")
def dashboard(
    admin: AuthenticatedUser = Depends(require_admin),
    admin_service: AdminService = Depends(get_admin_service)
):
    return responses.success(admin_service.dashboard())


@router.get("/payment-requests")
def list_payment_requests(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: AuthenticatedUser = Depends(require_admin),
    admin_service: AdminService = Depends(get_admin_service)
):
    requests, meta = admin_service.list_payment_requests(status=status, page=page, limit=limit)
    return responses.success(requests, meta=meta)


@router.post("/payment-requests/{request_id}/approve")
def approve_payment_request(
    request_id: str,
    body: AdminNotesRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    service: PaymentRequestService = Depends(get_payment_request_service)
):
    request = service.approve(admin, request_id, body.notes)
    return responses.success(present_request(request), "Payment request approved")


@router.post("/payment-requests/{request_id}/reject")
def reject_payment_request(
    request_id: str,
    body: RejectRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    service: PaymentRequestService = Depends(get_payment_request_service)
):
    request = service.reject(admin, request_id, body.reason)
    return responses.success(present_request(request), "Payment request rejected")


@router.post("/payment-requests/{request_id}/mark-paid")
def mark_payment_request_paid(
    request_id: str,
    body: AdminNotesRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    service: PaymentRequestService = Depends(get_payment_request_service)
):
    request = service.mark_paid(admin, request_id, body.notes)
    return responses.success(present_request(request), "Payment request marked as paid")


@router.get("/projects")
def list_projects(
    status: Optional[str] = None,
    category: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: AuthenticatedUser = Depends(require_admin),
    admin_service: AdminService = Depends(get_admin_service)
):
    projects, meta = admin_service.list_projects(
        status=status, category=category, search=search, page=page, limit=limit
    )
    return responses.success(projects, meta=meta)


@router.put("/projects/{project_id}/status")
def update_project_status(
    project_id: str,
    body: ProjectStatusRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    project_service: ProjectService = Depends(get_project_service)
):
    result = project_service.set_status(admin, project_id, body.status, body.reason)
    return responses.success(result, "Project status updated successfully")


@router.get("/donations")
def list_donations(
    status: Optional[str] = None,
    project_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: AuthenticatedUser = Depends(require_admin),
    admin_service: AdminService = Depends(get_admin_service)
):
    donations, meta = admin_service.list_donations(
        status=status,
        project_id=project_id,
        start=as_utc(start_date) if start_date else None,
        end=as_utc(end_date) if end_date else None,
        page=page,
        limit=limit,
    )
    return responses.success(donations, meta=meta)


@router.get("/reports/financial")
def financial_report(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    admin: AuthenticatedUser = Depends(require_admin),
    admin_service: AdminService = Depends(get_admin_service)
):
    report = admin_service.financial_report(
        start=as_utc(start_date) if start_date else None,
        end=as_utc(end_date) if end_date else None,
    )
    return responses.success(report)


@router.delete("/users/{user_id}")
def delete_user(
    user_id: str,
    admin: AuthenticatedUser = Depends(require_admin),
    user_service: UserService = Depends(get_user_service)
):
    user_service.delete_user(admin, user_id)
    return responses.success(message="User deleted successfully")
