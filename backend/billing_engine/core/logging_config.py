"""
Logging configuration.

WHAT: One-time setup of the standard library root logger.

WHY: Every module logs through ``logging.getLogger(__name__)``; this gives
those records a single format and level driven by settings. Structured
fields passed via ``extra=`` (subscription_id, user_id, event_id) are
appended when present so log aggregation can index them.
"""

import logging
from typing import Optional

from billing_engine.core.config import settings


LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Fields our services pass through ``extra=`` and that are worth surfacing
CONTEXT_FIELDS = (
    "user_id",
    "subscription_id",
    "event_id",
    "event_type",
    "stripe_subscription_id",
    "reason",
)


class ContextFormatter(logging.Formatter):
    """Formatter that appends known ``extra`` fields as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        pairs = [
            f"{field}={getattr(record, field)}"
            for field in CONTEXT_FIELDS
            if getattr(record, field, None) is not None
        ]
        if pairs:
            message = f"{message} | {' '.join(pairs)}"
        return message


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure the root logger once.

    Args:
        level: Log level name, defaults to settings.LOG_LEVEL
    """
    root = logging.getLogger()
    if getattr(root, "_billing_engine_configured", False):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(ContextFormatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel((level or settings.LOG_LEVEL).upper())

    # SQL echo is controlled by DEBUG on the engine, keep the logger quiet otherwise
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.INFO)

    root._billing_engine_configured = True
