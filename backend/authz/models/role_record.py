"""
RoleRecord model - local cache of each identity's role.

One row per Clerk identity. Clerk is the source of truth; this table is
authoritative for fast reads only.

Mutated only through RoleStore by:
- admin role-change action
- Clerk webhook sync
- reconciliation

SECURITY:
- `version` is the SQLAlchemy version_id_col; every UPDATE is issued as
  UPDATE ... WHERE version = :old, so concurrent writers fail with
  StaleDataError instead of silently overwriting each other.
- `source_updated_at` (Clerk updated_at, epoch ms) orders webhook deliveries;
  an older notification is never applied over a newer state.
- Impersonation never touches this table.
"""

from typing import Optional

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Index, Integer, String

from authz.constants.permissions import Role, try_parse_role
from authz.db_base import Base
from authz.models.base import TimestampMixin, utc_now


class RoleRecord(Base, TimestampMixin):
    """Cached role of a single identity."""

    __tablename__ = "role_records"

    identity_id = Column(
        String(255),
        primary_key=True,
        comment="Clerk user id",
    )

    email = Column(String(320), nullable=True, index=True)

    display_name = Column(String(255), nullable=True)

    role = Column(
        String(50),
        nullable=False,
        comment="Cached role value (authz.constants.permissions.Role)",
    )

    tenant_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="University id for university roles",
    )

    last_synced_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        comment="When this row last agreed with the identity provider",
    )

    source_updated_at = Column(
        BigInteger,
        nullable=True,
        comment="Identity provider updated_at (epoch ms) of the state last applied",
    )

    version = Column(Integer, nullable=False)

    remediation_pending = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Set when pushing this role to the identity provider failed",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_role_records_tenant_role", "tenant_id", "role"),
    )

    def __repr__(self) -> str:
        return (
            f"<RoleRecord(identity_id={self.identity_id}, role={self.role}, "
            f"tenant_id={self.tenant_id}, version={self.version})>"
        )

    @property
    def role_enum(self) -> Optional[Role]:
        """Parsed role, or None if the stored value is no longer recognized."""
        return try_parse_role(self.role)

    def is_newer_than(self, updated_at_ms: Optional[int]) -> bool:
        """
        Check whether this row already reflects a state newer than updated_at_ms.

        Rows without a source timestamp accept any notification.
        Notifications without a timestamp never override a timestamped row.
        """
        if self.source_updated_at is None:
            return False
        if updated_at_ms is None:
            return True
        return self.source_updated_at > updated_at_ms

    def mark_synced(self, updated_at_ms: Optional[int] = None) -> None:
        self.last_synced_at = utc_now()
        if updated_at_ms is not None:
            self.source_updated_at = updated_at_ms
