"""
Structured logging configuration.

LOG_FORMAT=json emits one JSON object per line; anything else uses a plain
text format. Module loggers live under the "quickprint" namespace and share
the handlers installed here with the Flask app logger.
"""

import json
import logging
from datetime import datetime, timezone


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for attr in ('request_id', 'user_id', 'endpoint', 'method', 'status_code', 'remote_addr'):
            if hasattr(record, attr):
                log_entry[attr] = getattr(record, attr)

        return json.dumps(log_entry)


def configure_logging(app):
    """Install handlers on the package logger and the Flask app logger."""
    log_level = str(app.config.get('LOG_LEVEL', 'INFO')).upper()
    log_format = app.config.get('LOG_FORMAT', 'text')

    logger = logging.getLogger('quickprint')
    logger.setLevel(getattr(logging, log_level, logging.INFO))
    logger.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG)
    if log_format == 'json':
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
    logger.addHandler(console_handler)
    logger.propagate = False

    app.logger.handlers = logger.handlers
    app.logger.setLevel(logger.level)
    return logger
