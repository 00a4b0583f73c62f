import logging
import json
from datetime import datetime, timezone

from .config import settings


class JSONFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
        }

        for field in ("request_id", "story_id", "member_id"):
            if hasattr(record, field):
                log_record[field] = getattr(record, field)

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_record)


def setup_logging(level: str = None, json_output: bool = None) -> logging.Logger:
    level = level or settings.LOG_LEVEL
    json_output = settings.LOG_JSON if json_output is None else json_output

    logger = logging.getLogger("daily_stories")
    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))

    logger.handlers = [handler]
    logger.setLevel(level)
    logger.propagate = False
    return logger
