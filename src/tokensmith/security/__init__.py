"""Security audit logging for Tokensmith."""

from tokensmith.security.audit import AuditEvent, AuditLogger, AuditSeverity, get_audit_logger

__all__ = ["AuditEvent", "AuditLogger", "AuditSeverity", "get_audit_logger"]
