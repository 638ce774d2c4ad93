"""Audit events for upload validation: one {stage, decision, context} event per transition. Never logs file content."""
import logging
from typing import Any, Dict, Optional, Protocol

from models.schemas import RejectionKind
from utils.logger import get_logger

audit_logger = get_logger("upload_audit")

# Content-level and malware rejections are security events; size and
# availability problems are operational noise.
REJECTION_LEVELS: Dict[RejectionKind, int] = {
    RejectionKind.INFECTED: logging.CRITICAL,
    RejectionKind.EXTENSION_BLOCKED: logging.WARNING,
    RejectionKind.MIME_MISMATCH: logging.WARNING,
    RejectionKind.SIGNATURE_MISMATCH: logging.WARNING,
    RejectionKind.ACTIVE_CONTENT_DETECTED: logging.WARNING,
    RejectionKind.SIZE_EXCEEDED: logging.INFO,
    RejectionKind.INVALID_UPLOAD: logging.INFO,
    RejectionKind.SCAN_UNAVAILABLE: logging.INFO,
}


class AuditSink(Protocol):
    def emit(self, event: Dict[str, Any]) -> None:
        ...


def build_event(
    stage: str,
    decision: str,
    context: Optional[Dict[str, Any]] = None,
    kind: Optional[RejectionKind] = None,
) -> Dict[str, Any]:
    event: Dict[str, Any] = {"stage": stage, "decision": decision, "context": dict(context or {})}
    if kind is not None:
        event["kind"] = kind.value
    return event


def event_level(event: Dict[str, Any]) -> int:
    kind = event.get("kind")
    if kind is None:
        return logging.INFO
    return REJECTION_LEVELS.get(RejectionKind(kind), logging.WARNING)


class LoggingAuditSink:
    """Writes audit events through the ``upload_audit`` logger."""

    def __init__(self, logger: logging.Logger = audit_logger):
        self.logger = logger

    def emit(self, event: Dict[str, Any]) -> None:
        self.logger.log(
            event_level(event),
            "upload %s %s%s",
            event["stage"],
            event["decision"],
            f" ({event['kind']})" if "kind" in event else "",
            extra={"audit": event},
        )
