import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from polly.core.settings import get_settings

# Create logger
auth_logger = logging.getLogger("auth")
auth_logger.setLevel(logging.INFO)

# Prevent duplicate handlers
if not auth_logger.handlers:
    log_file = get_settings().auth_log_file
    if log_file:
        # Rotating file handler: max 5 MB per file, keep 3 backups
        handler: logging.Handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=3)
    else:
        handler = logging.StreamHandler()
    formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    handler.setFormatter(formatter)
    auth_logger.addHandler(handler)


def log_event(level: int, message: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Write one structured record to the auth log and return it."""
    record = {
        "level": logging.getLevelName(level),
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "context": context or {},
    }
    auth_logger.log(level, json.dumps(record, default=str), extra={"auth_record": record})
    return record
