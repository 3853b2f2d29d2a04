"""SQLAlchemy models for persisted build job state."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Enum, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from api_service.db.models import Base


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Return enum values so SQLAlchemy persists lowercase labels, not names."""

    return [member.value for member in enum_cls]


class BuildJobStatus(str, enum.Enum):
    """Lifecycle states for one build job."""

    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({BuildJobStatus.COMPLETE, BuildJobStatus.FAILED})


class BuildJobStateRecord(Base):
    """Snapshot of the authoritative state of one build job.

    Rows are written only by the job's owner and are kept after the job
    reaches a terminal status.
    """

    __tablename__ = "build_job_states"
    __table_args__ = (
        Index("ix_build_job_states_status_updated_at", "status", "updated_at"),
    )

    job_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    status: Mapped[BuildJobStatus] = mapped_column(
        Enum(
            BuildJobStatus,
            name="buildjobstatus",
            native_enum=True,
            validate_strings=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=BuildJobStatus.QUEUED,
    )
    job: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    plan: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    completed_items: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    result_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    deploy_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_estimate: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    validation_warnings: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, default=list
    )
    drive_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    branch_created: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    risk_review: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
