from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Literal, Optional, cast

from ..models import AuditAction
from .request_id import get_request_id

AuditEvent = Literal[
    "appointment.created",
    "appointment.updated",
    "appointment.canceled",
    "appointment.completed",
    "appointment.no_show",
]


def _build_logger() -> logging.Logger:
    # One bare JSON object per line, kept out of the application log stream.
    logger = logging.getLogger("audit")
    logger.setLevel(logging.INFO)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    logger.propagate = False
    return logger


_audit_logger = _build_logger()


def audit_event(action: AuditAction) -> AuditEvent:
    return cast(AuditEvent, f"appointment.{AuditAction(action).value}")


def _plain(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def emit_audit_log(
    *,
    action: AuditEvent,
    actor_id: Optional[str],
    appointment_id: str,
    business_id: str,
    service_id: str,
    status_from: Optional[str],
    status_to: Optional[str],
    version: int,
    message: Optional[str] = None,
    extra: Optional[dict[str, Any]] = None,
) -> None:
    """Write one committed appointment mutation to the audit stream. Raises RuntimeError if logging fails."""
    record: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": "info",
        "action": action,
        "actor_id": actor_id,
        "request_id": get_request_id(),
        "appointment_id": appointment_id,
        "business_id": business_id,
        "service_id": service_id,
        "status_from": _plain(status_from),
        "status_to": _plain(status_to),
        "version": version,
        "message": message,
    }
    record.update(extra or {})
    try:
        line = json.dumps({k: v for k, v in record.items() if v is not None}, ensure_ascii=True, default=str)
        _audit_logger.info(line)
    except Exception as exc:
        raise RuntimeError("failed to emit audit log") from exc
