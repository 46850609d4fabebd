from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class OrchestratorJob(Base):
  __tablename__ = "orchestrator_jobs"
  __table_args__ = (
    # Sweep scans: overdue ticks for live jobs and retention for everything.
    Index("ix_orchestrator_jobs_next_tick_live", "next_tick_at", postgresql_where=text("status IN ('pending', 'running')")),
    Index("ix_orchestrator_jobs_retain_until", "retain_until"),
  )

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  status: Mapped[str] = mapped_column(String, nullable=False, index=True)
  # Plain json keeps entity key order; jsonb would reorder keys.
  record_json: Mapped[dict] = mapped_column(JSON, nullable=False)
  next_tick_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  reported: Mapped[bool] = mapped_column(nullable=False, default=False, server_default=text("false"))
  retain_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
  lease_owner: Mapped[str | None] = mapped_column(String, nullable=True)
  lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
