"""
Security audit log.
Created: 2026-10-19

Append-only JSONL record of token issuance, rotation, revocation and
refresh-token reuse. Reuse events are written with ALERT severity so that
alerting can subscribe through ``on_log`` callbacks.
"""

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class AuditSeverity(str, Enum):
    INFO = "info"  # Normal operation (token issued, rotated)
    WARNING = "warning"  # Client resolution failed, explicit revocation
    ALERT = "alert"  # Refresh token reuse / theft signal


@dataclass
class AuditEvent:
    """A single audit log entry."""

    id: str
    timestamp: str
    severity: AuditSeverity
    actor: str  # client_id, or "server"
    action: str  # e.g. "session_issued", "refresh_token_reuse"
    target: str  # e.g. "session:<id>", "grant:<id>"
    status: str  # "success", "revoked", "blocked"
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        severity: AuditSeverity,
        actor: str,
        action: str,
        target: str,
        status: str,
        **context: Any,
    ) -> "AuditEvent":
        return cls(
            id=str(uuid.uuid4()),
            timestamp=datetime.now(tz=UTC).isoformat(),
            severity=severity,
            actor=actor,
            action=action,
            target=target,
            status=status,
            context=context,
        )


class AuditLogger:
    """
    Append-only audit logger.
    Writes to ~/.tokensmith/audit.jsonl unless a path is given.
    """

    def __init__(self, log_path: Path | None = None):
        if log_path:
            self.log_path = log_path
        else:
            from tokensmith.config import get_config_dir

            self.log_path = get_config_dir() / "audit.jsonl"
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        self._callbacks: list[Callable[[dict], None]] = []

    def on_log(self, callback: Callable[[dict], None]) -> None:
        """Register a callback to be called after each audit log write."""
        self._callbacks.append(callback)

    def log(self, event: AuditEvent) -> None:
        """Write an event to the audit log."""
        event_dict = asdict(event)
        try:
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event_dict, default=str) + "\n")
        except OSError as e:
            # Fallback to system logger if audit fails (critical failure)
            logger.critical(f"FAILED TO WRITE AUDIT LOG: {e} | Event: {event}")
        for cb in self._callbacks:
            try:
                cb(event_dict)
            except Exception:
                logger.exception("Audit callback failed for event %s", event.action)

    def log_security_event(
        self,
        action: str,
        target: str,
        *,
        actor: str = "server",
        status: str = "success",
        severity: AuditSeverity = AuditSeverity.INFO,
        **context: Any,
    ) -> str:
        """Helper to log an authorization-server event."""
        event = AuditEvent.create(
            severity=severity,
            actor=actor or "unknown",
            action=action,
            target=target,
            status=status,
            **context,
        )
        self.log(event)
        return event.id


# Singleton
_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
