"""
Logging setup for the plugin loader.

Library modules only create loggers; a function handler calls setup_logging()
once at cold start to route them to stdout, where the function runtime
collects them.
"""

import logging
import sys
from typing import Optional

from lambda_plugins.config import Settings, get_settings

# boto's loggers report every request at DEBUG/INFO
NOISY_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3")


def setup_logging(settings: Optional[Settings] = None, level: Optional[str] = None) -> None:
    """Send log records to stdout using the configured level and format."""
    settings = settings or get_settings()
    log_level = getattr(logging, (level or settings.log_level).upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # The function runtime may pre-install its own handler
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(settings.log_format))
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))
