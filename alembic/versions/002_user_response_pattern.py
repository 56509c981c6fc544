"""Add learned response pattern to users.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19

"""

from typing import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Add users.response_pattern (e.g. {"best_hours": [9, 18]})."""
    op.add_column(
        "users",
        sa.Column("response_pattern", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    )


def downgrade() -> None:
    op.drop_column("users", "response_pattern")
