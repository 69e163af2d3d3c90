"""Structured audit events."""

import json
import logging
import time
from typing import Any

logger = logging.getLogger("authnz")
audit_logger = logging.getLogger("authnz-audit")


def _audit(options, event: str, **kwargs: Any) -> None:
    """Emit a JSON audit log entry and notify the configured observer."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry, default=str))
    observer = getattr(options, "observer", None)
    if observer is None:
        return
    try:
        observer(event, kwargs)
    except Exception:
        logger.exception("audit observer failed for %s", event)
