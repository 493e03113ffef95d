import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from core.exceptions import NotFoundError, PermissionDeniedError, ValidationFailedError
from data_access.dynamodb import DynamoDataAccess
from models.base import utc_now
from models.project import PROJECT_CATEGORIES, PROJECT_STATUSES, Project, ProjectUpdate
from models.user import AuthenticatedUser
from services import funding
from services.common import ensure_owner_or_admin, paginate

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = ("created_at", "current_amount", "backer_count", "end_date", "target_amount", "title")
# Fields a creator may not set directly
PROTECTED_FIELDS = frozenset({
    "project_id", "creator_id", "slug", "status", "current_amount", "admin_fee_amount",
    "backer_count", "updates", "created_at", "updated_at",
})
MAX_SLUG_ATTEMPTS = 50
STATS_WINDOW_DAYS = 30


def present_project(project: Project, now: datetime | None = None) -> dict:
    now = now or utc_now()
    data = project.model_dump(mode="json")
    data.update({
        "funding_progress": funding.funding_progress(project.current_amount, project.target_amount),
        "days_remaining": funding.days_remaining(project.end_date, now),
        "project_url": project.project_url,
        "can_receive_donations": funding.can_receive_donations(project, now),
        "available_reward_tiers": [
            tier.model_dump(mode="json") for tier in funding.available_reward_tiers(project.reward_tiers)
        ],
    })
    return data


def matches_search(project: Project, search: str) -> bool:
    needle = search.lower()
    haystack = [project.title, project.short_description, project.description, *project.tags]
    return any(needle in text.lower() for text in haystack)


class ProjectService:
    def __init__(self, data_access: DynamoDataAccess):
        self.data_access = data_access

    def _get_or_404(self, project_id: str) -> Project:
        project = self.data_access.get_project(project_id)
        if not project:
            raise NotFoundError("Project not found")
        return project

    def list_projects(
        self,
        category: str | None = None,
        status: str | None = "active",
        division: str | None = None,
        search: str | None = None,
        creator_id: str | None = None,
        sort: str = "created_at",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 12,
        now: datetime | None = None,
    ) -> tuple[list[dict], dict]:
        now = now or utc_now()
        if sort not in SORTABLE_FIELDS:
            raise ValidationFailedError(f"Cannot sort by '{sort}'")

        projects = self.data_access.list_projects()

        if status:
            projects = [p for p in projects if p.status == status and p.is_active]
            if status == "active":
                projects = [p for p in projects if p.start_date <= now <= p.end_date]
        if category and category in PROJECT_CATEGORIES:
            projects = [p for p in projects if p.category == category]
        if division:
            projects = [p for p in projects if p.location.division.lower() == division.lower()]
        if creator_id:
            projects = [p for p in projects if p.creator_id == creator_id]
        if search:
            projects = [p for p in projects if matches_search(p, search)]

        projects.sort(key=lambda p: getattr(p, sort), reverse=sort_order == "desc")
        page_items, meta = paginate(projects, page, limit)
        return [present_project(p, now) for p in page_items], meta

    def trending(self, limit: int = 6) -> list[dict]:
        projects = [p for p in self.data_access.list_projects() if p.status == "active" and p.is_active]
        projects.sort(key=lambda p: (p.backer_count, p.current_amount), reverse=True)
        return [present_project(p) for p in projects[:limit]]

    def by_category(self, limit: int = 6) -> dict[str, list[dict]]:
        grouped: dict[str, list[dict]] = {category: [] for category in PROJECT_CATEGORIES}
        for project in self.data_access.list_projects():
            if project.status != "active" or not project.is_active:
                continue
            if len(grouped[project.category]) < limit:
                grouped[project.category].append(present_project(project))
        return grouped

    def get_by_slug(self, slug: str) -> dict:
        project = self.data_access.get_project_by_slug(slug)
        if not project:
            raise NotFoundError("Project not found")
        return present_project(project)

    def get(self, project_id: str) -> Project:
        return self._get_or_404(project_id)

    def _claim_unique_slug(self, title: str, project_id: str, current_slug: str | None = None) -> str:
        base_slug = funding.generate_slug(title)
        if not base_slug:
            raise ValidationFailedError("Title must contain letters or numbers")
        slug = base_slug
        for counter in range(1, MAX_SLUG_ATTEMPTS + 1):
            # A project already holds its own slug
            if slug == current_slug or self.data_access.claim_slug(slug, project_id):
                return slug
            slug = f"{base_slug}-{counter}"
        raise ValidationFailedError("Could not generate a unique slug for this title")

    def create(self, actor: AuthenticatedUser, data: dict[str, Any]) -> Project:
        if actor.role not in ("creator", "admin"):
            raise PermissionDeniedError("Only creators can create projects")

        fields = {k: v for k, v in data.items() if k not in PROTECTED_FIELDS}
        try:
            draft = Project(creator_id=actor.user_id, slug="pending", status="active", **fields)
        except ValidationError as e:
            raise ValidationFailedError("Invalid project data", [err["msg"] for err in e.errors()])

        slug = self._claim_unique_slug(draft.title, draft.project_id)
        project = draft.model_copy(update={"slug": slug})
        self.data_access.create_project(project)
        logger.info(f"Project {project.project_id} created by {actor.user_id} with slug {slug}")
        return project

    def update(self, actor: AuthenticatedUser, project_id: str, data: dict[str, Any]) -> Project:
        project = self._get_or_404(project_id)
        ensure_owner_or_admin(actor, project.creator_id, "You do not own this project")
        if project.status == "funded":
            raise ValidationFailedError("Cannot update funded projects")

        fields = {
            k: v for k, v in data.items()
            if k in Project.model_fields and k not in PROTECTED_FIELDS
        }
        if not fields:
            return project
        try:
            merged = Project.model_validate({**project.model_dump(), **fields})
        except ValidationError as e:
            raise ValidationFailedError("Invalid project data", [err["msg"] for err in e.errors()])

        if "reward_tiers" in fields:
            # Backer counts belong to settled donations, not to the edit form
            backers = {tier.tier_id: tier.current_backers for tier in project.reward_tiers}
            for tier in merged.reward_tiers:
                tier.current_backers = backers.get(tier.tier_id, 0)

        changes = {key: getattr(merged, key) for key in fields}
        if merged.title != project.title:
            slug = self._claim_unique_slug(merged.title, project_id, current_slug=project.slug)
            if slug != project.slug:
                changes["slug"] = slug
                self.data_access.release_slug(project.slug)

        updated = self.data_access.update_project(project_id, changes)
        if not updated:
            raise NotFoundError("Project not found")
        return updated

    def delete(self, actor: AuthenticatedUser, project_id: str) -> None:
        project = self._get_or_404(project_id)
        ensure_owner_or_admin(actor, project.creator_id, "You do not own this project")
        if project.backer_count > 0:
            raise ValidationFailedError("Cannot delete a project that already has backers")
        self.data_access.delete_project(project)
        logger.info(f"Project {project_id} deleted by {actor.user_id}")

    def add_update(self, actor: AuthenticatedUser, project_id: str, title: str, content: str,
                   images: list[str] | None = None) -> ProjectUpdate:
        project = self._get_or_404(project_id)
        ensure_owner_or_admin(actor, project.creator_id, "You do not own this project")
        try:
            update = ProjectUpdate(title=title, content=content, images=images or [])
        except ValidationError as e:
            raise ValidationFailedError("Invalid project update", [err["msg"] for err in e.errors()])
        self.data_access.append_project_update(project_id, update)
        return update

    def list_updates(self, project_id: str) -> list[ProjectUpdate]:
        project = self._get_or_404(project_id)
        return sorted(project.updates, key=lambda update: update.created_at, reverse=True)

    def stats(self, project_id: str, now: datetime | None = None) -> dict:
        now = now or utc_now()
        project = self._get_or_404(project_id)
        donations = [d for d in self.data_access.list_donations_by_project(project_id) if d.is_successful]
        balance = funding.project_balance(donations, [])

        window_start = now - timedelta(days=STATS_WINDOW_DAYS)
        daily = defaultdict(lambda: {"amount": 0, "count": 0})
        tiers = defaultdict(lambda: {"amount": 0, "count": 0})
        for donation in donations:
            if donation.created_at >= window_start:
                day = daily[donation.created_at.date().isoformat()]
                day["amount"] += donation.amount
                day["count"] += 1
            if donation.reward_tier_id:
                tier = tiers[donation.reward_tier_id]
                tier["amount"] += donation.amount
                tier["count"] += 1

        return {
            "project": {
                "project_id": project.project_id,
                "title": project.title,
                "target_amount": project.target_amount,
                "current_amount": project.current_amount,
                "backer_count": project.backer_count,
                "funding_progress": funding.funding_progress(project.current_amount, project.target_amount),
                "days_remaining": funding.days_remaining(project.end_date, now),
            },
            "donations": balance.to_dict(),
            "daily": [{"date": date, **totals} for date, totals in sorted(daily.items())],
            "reward_tiers": [
                {
                    "tier_id": tier.tier_id,
                    "title": tier.title,
                    "current_backers": tier.current_backers,
                    "max_backers": tier.max_backers,
                    "total_amount": tiers[tier.tier_id]["amount"],
                    "donation_count": tiers[tier.tier_id]["count"],
                }
                for tier in project.reward_tiers
            ],
        }

    def by_creator(self, creator_id: str) -> list[dict]:
        return [present_project(p) for p in self.data_access.list_projects_by_creator(creator_id)]

    def set_status(self, actor: AuthenticatedUser, project_id: str, status: str,
                   reason: str | None = None) -> dict:
        if not actor.is_admin:
            raise PermissionDeniedError("Only admins can change project status")
        if status not in PROJECT_STATUSES:
            raise ValidationFailedError("Invalid project status")

        project = self._get_or_404(project_id)
        old_status = project.status
        self.data_access.update_project(project_id, {"status": status})
        if reason:
            self.data_access.append_project_update(project_id, ProjectUpdate(
                title=f"Status Update: {old_status} -> {status}",
                content=f"Admin updated project status. Reason: {reason}",
            ))
        logger.info(f"Project {project_id} status changed {old_status} -> {status} by {actor.user_id}")
        return {"project_id": project_id, "old_status": old_status, "new_status": status, "updated_at": utc_now()}

    def refresh_status(self, project: Project, now: datetime | None = None) -> Project:
        new_status = funding.resolve_status(project, now or utc_now())
        if new_status == project.status:
            return project
        logger.info(f"Project {project.project_id} moved {project.status} -> {new_status}")
        return self.data_access.update_project(project.project_id, {"status": new_status}) or project

    def refresh_statuses(self, now: datetime | None = None) -> int:
        now = now or utc_now()
        changed = 0
        for project in self.data_access.list_projects():
            if project.status == "active" and funding.resolve_status(project, now) != "active":
                self.refresh_status(project, now)
                changed += 1
        return changed
