import logging
from collections import Counter, defaultdict
from datetime import datetime

from core.exceptions import ValidationFailedError
from data_access.dynamodb import DynamoDataAccess
from models.base import utc_now
from models.payment_request import PAYMENT_REQUEST_STATUSES
from models.project import PROJECT_STATUSES
from services import funding
from services.common import paginate
from services.payment_request_service import present_request
from services.project_service import matches_search, present_project

logger = logging.getLogger(__name__)

TOP_PROJECTS = 5
RECENT_ACTIVITY = 10


def _sum_requests(requests) -> dict:
    return {
        "count": len(requests),
        "requested_amount": sum(r.requested_amount for r in requests),
        "admin_fee": sum(r.admin_fee for r in requests),
    }


class AdminService:
    """Read models for the admin console. Moderation writes live in the owning services."""

    def __init__(self, data_access: DynamoDataAccess):
        self.data_access = data_access

    def dashboard(self, now: datetime | None = None) -> dict:
        now = now or utc_now()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        projects = self.data_access.list_projects()
        donations = self.data_access.list_donations()
        requests = self.data_access.list_payment_requests()
        users = self.data_access.list_users()

        successful = [d for d in donations if d.is_successful]
        this_month = [d for d in successful if d.created_at >= month_start]
        pending_requests = [r for r in requests if r.status == "pending"]
        status_counts = Counter(p.status for p in projects)

        top_projects = sorted(projects, key=lambda p: p.current_amount, reverse=True)[:TOP_PROJECTS]
        recent = sorted(donations, key=lambda d: d.created_at, reverse=True)[:RECENT_ACTIVITY]

        return {
            "totals": {
                "total_raised": sum(d.amount for d in successful),
                "total_admin_fees": sum(d.admin_fee for d in successful),
                "total_donations": len(successful),
                "total_projects": len(projects),
                "active_projects": status_counts.get("active", 0),
                "total_users": len(users),
                "total_creators": sum(1 for u in users if u.role == "creator"),
                "pending_payment_requests": len(pending_requests),
                "pending_payment_amount": sum(r.requested_amount for r in pending_requests),
            },
            "projects_by_status": {status: status_counts.get(status, 0) for status in PROJECT_STATUSES},
            "this_month": {
                "total_raised": sum(d.amount for d in this_month),
                "admin_fees": sum(d.admin_fee for d in this_month),
                "donation_count": len(this_month),
                "new_projects": sum(1 for p in projects if p.created_at >= month_start),
                "new_users": sum(1 for u in users if u.created_at >= month_start),
            },
            "top_projects": [
                {
                    "project_id": p.project_id,
                    "title": p.title,
                    "slug": p.slug,
                    "current_amount": p.current_amount,
                    "target_amount": p.target_amount,
                    "backer_count": p.backer_count,
                    "funding_progress": funding.funding_progress(p.current_amount, p.target_amount),
                }
                for p in top_projects
            ],
            "recent_activity": [
                {
                    "donation_id": d.donation_id,
                    "project_id": d.project_id,
                    "amount": d.amount,
                    "payment_status": d.payment_status,
                    "donor_display_name": d.donor_display_name,
                    "created_at": d.created_at,
                }
                for d in recent
            ],
        }

    def list_payment_requests(self, status: str | None = None, page: int = 1,
                              limit: int = 20) -> tuple[list[dict], dict]:
        if status and status not in PAYMENT_REQUEST_STATUSES:
            raise ValidationFailedError("Invalid payment request status")
        requests = self.data_access.list_payment_requests()
        if status:
            requests = [r for r in requests if r.status == status]
        requests.sort(key=lambda r: r.created_at, reverse=True)
        page_items, meta = paginate(requests, page, limit)

        titles: dict[str, str | None] = {}
        results = []
        for request in page_items:
            if request.project_id not in titles:
                project = self.data_access.get_project(request.project_id)
                titles[request.project_id] = project.title if project else None
            data = present_request(request)
            data["project_title"] = titles[request.project_id]
            results.append(data)
        return results, meta

    def list_projects(self, status: str | None = None, category: str | None = None,
                      search: str | None = None, page: int = 1, limit: int = 20) -> tuple[list[dict], dict]:
        projects = self.data_access.list_projects()
        if status:
            projects = [p for p in projects if p.status == status]
        if category:
            projects = [p for p in projects if p.category == category]
        if search:
            projects = [p for p in projects if matches_search(p, search)]
        projects.sort(key=lambda p: p.created_at, reverse=True)
        page_items, meta = paginate(projects, page, limit)

        results = []
        for project in page_items:
            donations = self.data_access.list_donations_by_project(project.project_id)
            requests = self.data_access.list_payment_requests_by_project(project.project_id)
            data = present_project(project)
            data["stats"] = {
                **funding.project_balance(donations, requests).to_dict(),
                "pending_donations": sum(1 for d in donations if d.payment_status in ("pending", "processing")),
                "failed_donations": sum(1 for d in donations if d.payment_status == "failed"),
                "pending_payment_requests": sum(1 for r in requests if r.status == "pending"),
            }
            results.append(data)
        return results, meta

    def list_donations(self, status: str | None = None, project_id: str | None = None,
                       start: datetime | None = None, end: datetime | None = None,
                       page: int = 1, limit: int = 20) -> tuple[list[dict], dict]:
        if project_id:
            donations = self.data_access.list_donations_by_project(project_id)
        else:
            donations = self.data_access.list_donations()
        if status:
            donations = [d for d in donations if d.payment_status == status]
        if start:
            donations = [d for d in donations if d.created_at >= start]
        if end:
            donations = [d for d in donations if d.created_at <= end]
        donations.sort(key=lambda d: d.created_at, reverse=True)
        page_items, meta = paginate(donations, page, limit)
        return [d.model_dump(mode="json") for d in page_items], meta

    def financial_report(self, start: datetime | None = None, end: datetime | None = None) -> dict:
        if start and end and start > end:
            raise ValidationFailedError("start_date must be before end_date")

        def in_period(created_at: datetime) -> bool:
            return (not start or created_at >= start) and (not end or created_at <= end)

        period_donations = [d for d in self.data_access.list_donations() if in_period(d.created_at)]
        donations = [d for d in period_donations if d.is_successful]
        refunded = [d for d in period_donations if d.payment_status == "refunded"]
        requests = [r for r in self.data_access.list_payment_requests() if in_period(r.created_at)]

        monthly = defaultdict(lambda: {"amount": 0, "admin_fee": 0, "count": 0})
        for donation in donations:
            month = monthly[donation.created_at.strftime("%Y-%m")]
            month["amount"] += donation.amount
            month["admin_fee"] += donation.admin_fee
            month["count"] += 1

        by_status = defaultdict(list)
        for request in requests:
            by_status[request.status].append(request)

        return {
            "period": {"start_date": start, "end_date": end},
            "donations": {
                "gross_amount": sum(d.amount for d in donations),
                "net_amount": sum(d.net_amount for d in donations),
                "admin_fee_income": sum(d.admin_fee for d in donations),
                "count": len(donations),
                "refunded_amount": sum(d.amount for d in refunded),
                "refunded_count": len(refunded),
            },
            "monthly": [{"month": month, **totals} for month, totals in sorted(monthly.items())],
            "withdrawals": {status: _sum_requests(by_status[status]) for status in PAYMENT_REQUEST_STATUSES},
        }
