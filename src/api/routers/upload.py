from fastapi import APIRouter, Depends

from api import responses
from api.auth import require_creator
from api.schemas import FileValidationRequest, PresignedUploadRequest
from core.dependencies import get_upload_service
from models.user import AuthenticatedUser
from services.upload_service import UploadService

router = APIRouter(prefix="/upload", tags=["upload"])


@router.post("/validate")
def validate_file(
    body: FileValidationRequest,
    user: AuthenticatedUser = Depends(require_creator),
    upload_service: UploadService = Depends(get_upload_service)
):
    return responses.success(upload_service.validate_file(body.file_name, body.content_type, body.size))


@router.post("/presigned-url")
def presigned_url(
    body: PresignedUploadRequest,
    user: AuthenticatedUser = Depends(require_creator),
    upload_service: UploadService = Depends(get_upload_service)
):
    upload = upload_service.presigned_upload(user, body.folder, body.file_name, body.content_type, body.size)
    return responses.success(upload, "Upload URL generated")


@router.delete("/{key:path}")
def delete_file(
    key: str,
    user: AuthenticatedUser = Depends(require_creator),
    upload_service: UploadService = Depends(get_upload_service)
):
    upload_service.delete(user, key)
    return responses.success(message="File deleted successfully")
