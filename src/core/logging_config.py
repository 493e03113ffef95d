import logging
import sys
import json

# Attributes every LogRecord carries; anything else came in through `extra=`
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

QUIET_LOGGERS = ("botocore", "boto3", "urllib3", "stripe", "PIL")


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line so CloudWatch Logs Insights can query fields directly.
    Context passed with `extra=` (donation_id, project_id, ...) is merged in.
    """
    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        for key, value in vars(record).items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_record[key] = value

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_record, default=str)


def configure_logging(level: str = "INFO") -> None:
    """Send everything to stdout as JSON; Lambda ships stdout to CloudWatch."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    # Lambda pre-installs its own handler
    root_logger.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
