"""Delivery audit trail for notification channels."""
from bugnotify.audit.models import DeliveryStatus, EmailAudit
from bugnotify.audit.services import AuditWriter, EmailAuditEntry, EmailAuditService

__all__ = ["DeliveryStatus", "EmailAudit", "AuditWriter", "EmailAuditEntry", "EmailAuditService"]
