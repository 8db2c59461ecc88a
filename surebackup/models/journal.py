"""
Durable record of recovery sessions.
"""
from datetime import datetime
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from surebackup.models.base import Base


class SessionRecord(Base):
    """One row per recovery session, updated on every transition."""

    __tablename__ = "recovery_sessions"
    __table_args__ = (
        UniqueConstraint("run_id", "recovery_name", name="uq_recovery_sessions_run_name"),
    )

    run_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    recovery_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    restore_method: Mapped[str] = mapped_column(String(64), nullable=False)
    restore_point_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    tier: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    resource_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
