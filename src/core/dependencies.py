import boto3
import stripe
from functools import lru_cache

from core.config import get_settings
from data_access.dynamodb import DynamoDataAccess
from services.admin_service import AdminService
from services.donation_service import DonationService
from services.notification_service import NotificationService
from services.payment_request_service import PaymentRequestService
from services.payment_service import PaymentService
from services.project_service import ProjectService
from services.qr_service import QRService
from services.upload_service import UploadService
from services.user_service import UserService


@lru_cache()
def get_boto_session() -> boto3.Session:
    settings = get_settings()
    return boto3.Session(
        region_name=settings.AWS_REGION,
        profile_name=settings.AWS_PROFILE
    )


@lru_cache()
def get_data_access() -> DynamoDataAccess:
    settings = get_settings()
    dynamo_resource = get_boto_session().resource('dynamodb')
    table = dynamo_resource.Table(settings.DYNAMO_TABLE_NAME)
    return DynamoDataAccess(table=table)


@lru_cache()
def get_sqs_client():
    return get_boto_session().client('sqs')


@lru_cache()
def get_s3_client():
    return get_boto_session().client('s3')


@lru_cache()
def get_notification_service() -> NotificationService:
    settings = get_settings()
    return NotificationService(
        client=get_boto_session().client('ses'),
        from_email=settings.SES_FROM_EMAIL,
        currency=settings.CURRENCY
    )


@lru_cache()
def get_qr_service() -> QRService:
    settings = get_settings()
    return QRService(
        s3_client=get_s3_client(),
        bucket_name=settings.S3_BUCKET_NAME,
        public_base_url=settings.s3_base_url,
        frontend_url=settings.FRONTEND_URL
    )


@lru_cache()
def get_project_service() -> ProjectService:
    return ProjectService(data_access=get_data_access())


@lru_cache()
def get_payment_service() -> PaymentService:
    settings = get_settings()
    stripe.api_key = settings.STRIPE_SECRET_KEY

    return PaymentService(
        data_access=get_data_access(),
        project_service=get_project_service(),
        qr_service=get_qr_service(),
        sqs_client=get_sqs_client(),
        payment_queue_url=settings.PAYMENT_QUEUE_URL,
        notification_queue_url=settings.NOTIFICATION_QUEUE_URL,
        stripe_webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        frontend_url=settings.FRONTEND_URL,
        currency=settings.CURRENCY
    )


@lru_cache()
def get_donation_service() -> DonationService:
    return DonationService(data_access=get_data_access(), qr_service=get_qr_service())


@lru_cache()
def get_payment_request_service() -> PaymentRequestService:
    return PaymentRequestService(
        data_access=get_data_access(),
        sqs_client=get_sqs_client(),
        notification_queue_url=get_settings().NOTIFICATION_QUEUE_URL
    )


@lru_cache()
def get_user_service() -> UserService:
    return UserService(data_access=get_data_access())


@lru_cache()
def get_admin_service() -> AdminService:
    return AdminService(data_access=get_data_access())


@lru_cache()
def get_upload_service() -> UploadService:
    settings = get_settings()
    return UploadService(
        s3_client=get_s3_client(),
        bucket_name=settings.S3_BUCKET_NAME,
        public_base_url=settings.s3_base_url,
        expiry_seconds=settings.PRESIGNED_URL_EXPIRY_SECONDS
    )
