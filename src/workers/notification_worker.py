import json
import logging
from core.config import get_settings
from core.dependencies import get_notification_service

# We need to configure logging here since workers are entry points
from core.logging_config import configure_logging
configure_logging(get_settings().LOG_LEVEL)

logger = logging.getLogger(__name__)


def lambda_handler(event, context):
    logger.info(f"Received {len(event['Records'])} notification jobs.")
    notification_service = get_notification_service()

    for record in event['Records']:
        try:
            job = json.loads(record['body'])
            job_type = job.get("type")

            if job_type == "RECEIPT":
                notification_service.send_donation_receipt(
                    email_to=job['email_to'],
                    amount=job['amount'],
                    donation_id=job['donation_id'],
                    project_title=job.get('project_title', ''),
                    transaction_id=job['transaction_id'],
                    qr_code_url=job.get('qr_code_url')
                )
            elif job_type == "WITHDRAWAL":
                notification_service.send_withdrawal_update(
                    email_to=job['email_to'],
                    status=job['status'],
                    requested_amount=job['requested_amount'],
                    project_title=job.get('project_title', ''),
                    notes=job.get('notes')
                )
            else:
                logger.warning(f"Skipping notification job of unknown type {job_type}")

        except Exception as e:
            logger.error(f"CRITICAL: Failed to process message {record['messageId']}. Error: {e}")
            raise

    return {'statusCode': 200}
