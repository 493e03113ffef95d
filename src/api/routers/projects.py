from fastapi import APIRouter, Body, Depends, Query
from typing import Optional

from api import responses
from api.auth import get_current_user, require_creator
from api.schemas import ProjectUpdateRequest
from core.dependencies import get_project_service
from models.user import AuthenticatedUser
from services.project_service import ProjectService, present_project

router = APIRouter(prefix="/projects", tags=["projects"])


@router.get("")
def list_projects(
    category: Optional[str] = None,
    status: Optional[str] = "active",
    division: Optional[str] = None,
    search: Optional[str] = None,
    sort: str = "created_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    project_service: ProjectService = Depends(get_project_service)
):
    projects, meta = project_service.list_projects(
        category=category,
        status=status,
        division=division,
        search=search,
        sort=sort,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return responses.success(projects, meta=meta)


@router.get("/trending")
def trending_projects(
    limit: int = Query(6, ge=1, le=50),
    project_service: ProjectService = Depends(get_project_service)
):
    return responses.success(project_service.trending(limit))


@router.get("/categories")
def projects_by_category(
    limit: int = Query(6, ge=1, le=50),
    project_service: ProjectService = Depends(get_project_service)
):
    return responses.success(project_service.by_category(limit))


@router.get("/creator/{creator_id}")
def projects_by_creator(
    creator_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    project_service: ProjectService = Depends(get_project_service)
):
    return responses.success(project_service.by_creator(creator_id))


@router.get("/{project_id}/updates")
def list_project_updates(
    project_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    project_service: ProjectService = Depends(get_project_service)
):
    return responses.success(project_service.list_updates(project_id))


@router.post("/{project_id}/updates")
def add_project_update(
    project_id: str,
    body: ProjectUpdateRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    project_service: ProjectService = Depends(get_project_service)
):
    update = project_service.add_update(user, project_id, body.title, body.content, body.images)
    return responses.created(update, "Project update added successfully")


@router.get("/{project_id}/stats")
def project_stats(
    project_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    project_service: ProjectService = Depends(get_project_service)
):
    return responses.success(project_service.stats(project_id))


@router.get("/{slug}")
def get_project(slug: str, project_service: ProjectService = Depends(get_project_service)):
    return responses.success(project_service.get_by_slug(slug))


@router.post("")
def create_project(
    body: dict = Body(...),
    user: AuthenticatedUser = Depends(require_creator),
    project_service: ProjectService = Depends(get_project_service)
):
    project = project_service.create(user, body)
    return responses.created(present_project(project), "Project created successfully")


@router.put("/{project_id}")
def update_project(
    project_id: str,
    body: dict = Body(...),
    user: AuthenticatedUser = Depends(get_current_user),
    project_service: ProjectService = Depends(get_project_service)
):
    project = project_service.update(user, project_id, body)
    return responses.success(present_project(project), "Project updated successfully")


@router.delete("/{project_id}")
def delete_project(
    project_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    project_service: ProjectService = Depends(get_project_service)
):
    project_service.delete(user, project_id)
    return responses.success(message="Project deleted successfully")
