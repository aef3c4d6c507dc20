"""
Logging setup shared by the API process and the Celery reconciliation worker.

Production writes one JSON object per line. Booking, payment and refund ids
passed through ``extra=`` become top-level keys, so one charge can be followed
from the request through the coordinator to the reconciliation sweep.
"""

import sys
import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from app.config import settings

# Record attributes lifted into the JSON object when present
CONTEXT_FIELDS = (
    "booking_id",
    "booking_number",
    "payment_id",
    "refund_id",
    "anomaly",
)

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "celery.app.trace")


class JSONFormatter(logging.Formatter):
    """One JSON line per record with the transaction ids it mentions."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "location": f"{record.module}:{record.lineno}",
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_obj[field] = value

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        # Decimal amounts and UUIDs
        return json.dumps(log_obj, default=str)


def configure_logging(json_output: Optional[bool] = None) -> None:
    """Install a single stdout handler on the root logger."""
    if json_output is None:
        json_output = settings.is_production

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else logging.Formatter(TEXT_FORMAT))

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(logging.INFO if settings.is_production else logging.DEBUG)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
