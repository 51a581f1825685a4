"""
Structured Logging Configuration
JSON logging so scaling decisions can be searched per resource in log aggregation
"""

import logging
import os
import sys
from typing import Optional

from pythonjsonlogger import jsonlogger

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
JSON_FIELDS = '%(levelname)s %(name)s %(message)s'

# Chatty client libraries and the minimum level they log at
QUIET_LOGGERS = {
    'kubernetes': logging.INFO,
    'urllib3': logging.WARNING,
}


class ContextAdapter(logging.LoggerAdapter):
    """Adds fixed context (e.g. the resource key) to every record"""

    def process(self, msg, kwargs):
        kwargs.setdefault('extra', {}).update(self.extra)
        return msg, kwargs


def _json_requested(json_format: Optional[bool]) -> bool:
    if json_format is not None:
        return json_format
    return os.getenv('LOG_FORMAT', 'json').lower() in ('json', 'structured')


def _build_formatter(use_json: bool, static_fields: dict) -> logging.Formatter:
    if use_json:
        return jsonlogger.JsonFormatter(JSON_FIELDS, timestamp=True, static_fields=static_fields)
    return logging.Formatter(TEXT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')


def setup_structured_logging(
    log_level: str = "INFO",
    json_format: bool = None,
    extra_fields: Optional[dict] = None
) -> logging.Logger:
    """
    Route all logging to stdout, as JSON unless text is asked for.

    Args:
        log_level: Level name for the root logger and its handler
        json_format: True/False to force a format, None to follow LOG_FORMAT
        extra_fields: Fields stamped on every JSON record (component, version)

    Returns:
        The root logger
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Called again once settings are loaded; replace rather than stack handlers
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(_build_formatter(_json_requested(json_format), extra_fields or {}))
    root_logger.addHandler(handler)

    for name, minimum in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(level, minimum))

    return root_logger


def get_logger(name: str, extra_context: Optional[dict] = None):
    """Module logger, wrapped in a ContextAdapter when context is given"""
    logger = logging.getLogger(name)
    if extra_context:
        return ContextAdapter(logger, extra_context)
    return logger
