import boto3
import logging
import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional

logger = logging.getLogger(__name__)

SSM_PREFIX = "/crowdfund"


class Settings(BaseSettings):

    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    CURRENCY: str = "bdt"

    AWS_PROFILE: Optional[str] = None
    AWS_REGION: str = "ap-southeast-1"
    DYNAMO_TABLE_NAME: str = "crowdfund"
    PAYMENT_QUEUE_URL: Optional[str] = None
    NOTIFICATION_QUEUE_URL: Optional[str] = None
    S3_BUCKET_NAME: str = "crowdfund-uploads"
    S3_PUBLIC_BASE_URL: Optional[str] = None
    SES_FROM_EMAIL: str = "no-reply@crowdfund.local"

    FRONTEND_URL: str = "http://localhost:3000"
    API_ROOT_PATH: str = ""
    CORS_ORIGINS: list[str] = ["*"]
    LOG_LEVEL: str = "INFO"

    PRESIGNED_URL_EXPIRY_SECONDS: int = 3600

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def s3_base_url(self) -> str:
        if self.S3_PUBLIC_BASE_URL:
            return self.S3_PUBLIC_BASE_URL.rstrip("/")
        return f"https://{self.S3_BUCKET_NAME}.s3.{self.AWS_REGION}.amazonaws.com"


def _get_ssm_parameter(parameter_name: str, region: str) -> Optional[str]:
    """Fetch parameter from SSM Parameter Store"""
    try:
        ssm_client = boto3.client('ssm', region_name=region)
        response = ssm_client.get_parameter(
            Name=parameter_name,
            WithDecryption=True
        )
        return response['Parameter']['Value']
    except Exception as e:
        logger.warning(f"Could not fetch SSM parameter {parameter_name}: {e}")
        return None


@lru_cache()
def get_settings() -> Settings:
    """Get settings, fetching Stripe secrets from SSM if not in environment variables"""
    settings = Settings()
    region = settings.AWS_REGION or os.getenv('AWS_REGION', 'ap-southeast-1')

    if not settings.STRIPE_SECRET_KEY:
        settings.STRIPE_SECRET_KEY = _get_ssm_parameter(f"{SSM_PREFIX}/STRIPE_SECRET_KEY", region)

    if not settings.STRIPE_WEBHOOK_SECRET:
        settings.STRIPE_WEBHOOK_SECRET = _get_ssm_parameter(f"{SSM_PREFIX}/STRIPE_WEBHOOK_SECRET", region)

    return settings
