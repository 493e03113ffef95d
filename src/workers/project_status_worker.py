"""Scheduled job: closes active projects that reached their target or end date."""
import logging
from core.config import get_settings
from core.dependencies import get_project_service

from core.logging_config import configure_logging
configure_logging(get_settings().LOG_LEVEL)

logger = logging.getLogger(__name__)


def lambda_handler(event, context):
    changed = get_project_service().refresh_statuses()
    logger.info(f"Project status sweep updated {changed} projects.")
    return {'statusCode': 200, 'updated': changed}
