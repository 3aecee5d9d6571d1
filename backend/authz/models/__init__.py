"""
Database models for the authorization engine.

Importing this package registers every table on the shared Base metadata.
"""

from authz.models.role_record import RoleRecord
from authz.models.role_audit_log import RoleAuditLogEntry, RoleChangeSource

__all__ = ["RoleRecord", "RoleAuditLogEntry", "RoleChangeSource"]
