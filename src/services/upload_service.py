import logging
import mimetypes
import re
from pathlib import PurePosixPath

from botocore.exceptions import ClientError

from core.exceptions import PermissionDeniedError, ValidationFailedError
from models.base import new_id
from models.user import AuthenticatedUser

logger = logging.getLogger(__name__)

MB = 1024 * 1024
IMAGE_TYPES = frozenset({"image/jpeg", "image/png", "image/webp", "image/gif"})
VIDEO_TYPES = frozenset({"video/mp4", "video/webm", "video/quicktime"})
MAX_IMAGE_SIZE = 10 * MB
MAX_VIDEO_SIZE = 100 * MB
UPLOAD_FOLDERS = ("projects", "avatars", "updates")


def _safe_name(file_name: str) -> str:
    stem = PurePosixPath(file_name).stem.lower()
    stem = re.sub(r"[^a-z0-9]+", "-", stem).strip("-")
    return stem[:50] or "file"


class UploadService:
    def __init__(self, s3_client, bucket_name: str, public_base_url: str, expiry_seconds: int = 3600):
        self.s3_client = s3_client
        self.bucket_name = bucket_name
        self.public_base_url = public_base_url.rstrip("/")
        self.expiry_seconds = expiry_seconds

    def validate_file(self, file_name: str, content_type: str, size: int) -> dict:
        errors = []
        if content_type in IMAGE_TYPES:
            kind, max_size = "image", MAX_IMAGE_SIZE
        elif content_type in VIDEO_TYPES:
            kind, max_size = "video", MAX_VIDEO_SIZE
        else:
            kind, max_size = None, 0
            errors.append(f"Unsupported file type: {content_type}")

        if kind and size > max_size:
            errors.append(f"File too large. Maximum {kind} size is {max_size // MB} MB")
        if size <= 0:
            errors.append("File is empty")

        guessed, _ = mimetypes.guess_type(file_name)
        if kind and guessed and guessed != content_type:
            errors.append("File extension does not match its content type")

        return {"valid": not errors, "file_type": kind, "max_size": max_size, "errors": errors}

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def presigned_upload(self, actor: AuthenticatedUser, folder: str, file_name: str,
                         content_type: str, size: int) -> dict:
        if folder not in UPLOAD_FOLDERS:
            raise ValidationFailedError(f"Folder must be one of: {', '.join(UPLOAD_FOLDERS)}")
        validation = self.validate_file(file_name, content_type, size)
        if not validation["valid"]:
            raise ValidationFailedError("Invalid file", validation["errors"])

        extension = mimetypes.guess_extension(content_type) or ""
        key = f"{folder}/{actor.user_id}/{new_id()}-{_safe_name(file_name)}{extension}"
        try:
            upload_url = self.s3_client.generate_presigned_url(
                "put_object",
                Params={"Bucket": self.bucket_name, "Key": key, "ContentType": content_type},
                ExpiresIn=self.expiry_seconds,
            )
        except ClientError as e:
            logger.error(f"Error generating presigned URL for {key}: {e}")
            raise
        return {
            "upload_url": upload_url,
            "key": key,
            "file_url": self.public_url(key),
            "expires_in": self.expiry_seconds,
        }

    def delete(self, actor: AuthenticatedUser, key: str) -> None:
        parts = key.split("/")
        # Keys are {folder}/{owner_id}/{file}
        if len(parts) < 3 or parts[0] not in UPLOAD_FOLDERS:
            raise ValidationFailedError("Invalid file key")
        if parts[1] != actor.user_id and not actor.is_admin:
            raise PermissionDeniedError("You can only delete your own files")
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            logger.error(f"Error deleting {key}: {e}")
            raise
        logger.info(f"Deleted upload {key} for {actor.user_id}")
