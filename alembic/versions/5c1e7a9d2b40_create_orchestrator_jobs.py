"""create orchestrator_jobs

Revision ID: 5c1e7a9d2b40
Revises:
Create Date: 2026-10-18 09:12:44.210533

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5c1e7a9d2b40"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "orchestrator_jobs",
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    # json (not jsonb) so entity key order survives a round trip
    sa.Column("record_json", sa.JSON(), nullable=False),
    sa.Column("next_tick_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("reported", sa.Boolean(), server_default=sa.text("false"), nullable=False),
    sa.Column("retain_until", sa.DateTime(timezone=True), nullable=False),
    sa.Column("lease_owner", sa.String(), nullable=True),
    sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("job_id"),
  )
  op.create_index("ix_orchestrator_jobs_status", "orchestrator_jobs", ["status"])
  op.create_index("ix_orchestrator_jobs_retain_until", "orchestrator_jobs", ["retain_until"])
  op.create_index("ix_orchestrator_jobs_next_tick_live", "orchestrator_jobs", ["next_tick_at"], postgresql_where=sa.text("status IN ('pending', 'running')"))


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_index("ix_orchestrator_jobs_next_tick_live", table_name="orchestrator_jobs")
  op.drop_index("ix_orchestrator_jobs_retain_until", table_name="orchestrator_jobs")
  op.drop_index("ix_orchestrator_jobs_status", table_name="orchestrator_jobs")
  op.drop_table("orchestrator_jobs")
