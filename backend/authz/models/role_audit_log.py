"""
Role change audit log model.

Canonical, append-only history of every role change with:
- who changed (target identity, name, email at the time of change)
- what changed (old/new role, old/new tenant)
- who performed it and through which path (admin, webhook, reconciliation)

CRITICAL SECURITY:
- This table is append-only. Rows are never updated or deleted.
- The ORM rejects UPDATE and DELETE of existing rows with
  AppendOnlyViolationError; the database role used by the API should also
  lack UPDATE/DELETE grants on this table.
"""

import logging
from enum import Enum

from sqlalchemy import Column, DateTime, Index, String, Text, event

from authz.db_base import Base
from authz.models.base import generate_uuid, utc_now
from authz.platform.errors import AppendOnlyViolationError

logger = logging.getLogger(__name__)

# Actor recorded for changes made by the system itself
SYSTEM_ACTOR_ID = "system"
SYSTEM_ACTOR_NAME = "System"

RECONCILIATION_REASON = "reconciliation"


class RoleChangeSource(str, Enum):
    """Path that produced a role change."""
    ADMIN_ACTION = "admin_action"
    CLERK_WEBHOOK = "clerk_webhook"
    RECONCILIATION = "reconciliation"


class RoleAuditLogEntry(Base):
    """Single immutable role change."""

    __tablename__ = "role_audit_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    target_identity_id = Column(String(255), nullable=False, index=True)
    target_name = Column(String(255), nullable=True)
    target_email = Column(String(320), nullable=True)
    old_role = Column(String(50), nullable=True)  # NULL for first-seen identities
    new_role = Column(String(50), nullable=False)
    old_tenant_id = Column(String(255), nullable=True)
    new_tenant_id = Column(String(255), nullable=True)
    performed_by_id = Column(String(255), nullable=False, index=True)
    performed_by_name = Column(String(255), nullable=True)
    source = Column(String(50), nullable=False)
    reason = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    __table_args__ = (
        Index("ix_role_audit_logs_target_timestamp", "target_identity_id", "timestamp"),
        Index("ix_role_audit_logs_performer_timestamp", "performed_by_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return (
            f"<RoleAuditLogEntry(id={self.id}, target={self.target_identity_id}, "
            f"{self.old_role} -> {self.new_role}, source={self.source})>"
        )


@event.listens_for(RoleAuditLogEntry, "before_update")
def _reject_update(mapper, connection, target):
    logger.error("role_audit_log.update_rejected", extra={"audit_id": target.id})
    raise AppendOnlyViolationError(
        "Role audit log entries cannot be modified",
        details={"audit_id": target.id},
    )


@event.listens_for(RoleAuditLogEntry, "before_delete")
def _reject_delete(mapper, connection, target):
    logger.error("role_audit_log.delete_rejected", extra={"audit_id": target.id})
    raise AppendOnlyViolationError(
        "Role audit log entries cannot be deleted",
        details={"audit_id": target.id},
    )
