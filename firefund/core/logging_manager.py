"""
Logging setup for FireFund
Console logging plus optional JSON file logging, with secret masking
"""

import json
import logging
import logging.handlers
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class SecuritySafeFormatter(logging.Formatter):
    """Formatter that sanitizes sensitive information"""

    sensitive_fields = (
        'password', 'secret', 'token', 'api_key', 'authorization'
    )

    def format(self, record):
        record.msg = self._sanitize_message(record.getMessage())
        record.args = None
        return super().format(record)

    def _sanitize_message(self, message: str) -> str:
        for field in self.sensitive_fields:
            if field in message.lower():
                # field=value, field: value, "field": "value"
                pattern = rf'({field}["\']?\s*[:=]\s*["\']?)([^"\'\s,}}]+)'
                message = re.sub(pattern, r'\1***', message, flags=re.IGNORECASE)
        return message


class JSONFormatter(SecuritySafeFormatter):
    """JSON lines formatter for file logging"""

    def format(self, record):
        log_data: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'component': record.name,
            'message': self._sanitize_message(record.getMessage()),
        }

        if record.exc_info:
            log_data['stack_trace'] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False)


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure the root logger from the ``logging`` config section"""
    logging_config = config.get('logging', {})
    level = getattr(logging, str(logging_config.get('level', 'INFO')).upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(SecuritySafeFormatter(LOG_FORMAT))
    root_logger.addHandler(console_handler)

    log_file = logging_config.get('file')
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    logging.getLogger(__name__).info("Logging configured (level=%s)", logging.getLevelName(level))
