"""role_tables

Revision ID: 7d41c9e2a0b3
Revises: 
Create Date: 2026-10-19 10:42:17.381920

"""
from typing import Sequence, Union

from alembic import op

from authz.db_base import Base
import authz.models  # noqa: F401 - required to register all model metadata


# revision identifiers, used by Alembic.
revision: str = '7d41c9e2a0b3'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind)
