"""
SQLAlchemy ORM Models for the Batch Screening Service

The relational store keeps a durable mirror of every batch job so history
and reporting keep working after the process that ran the job has exited.
While a job is in flight, the in-memory job registry is authoritative.

Tables:
1. batch_jobs - One row per submitted batch job (status, progress, summary)

Column types are portable (JSON rather than JSONB, string primary keys) so
the same schema runs on PostgreSQL in production and SQLite in tests.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    DateTime, Enum, Index, Integer, JSON, String, Text, CheckConstraint
)
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

from batch.types import JobStatus

# Base class for all models
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False
    )


# ============================================
# BATCH JOBS
# ============================================

class BatchJobRecord(Base, TimestampMixin):
    """
    Durable record of a batch screening job.

    ``result`` holds the completion summary:
    ``{"summary": {"totalEntities", "successfulEntities", "failedEntities",
    "duplicateEntities"}, "resultCount": n}``
    """
    __tablename__ = "batch_jobs"

    # Job id generated by the job manager (batch_<ms>_<suffix>)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Submitter and target project
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    project_id: Mapped[str] = mapped_column(String(100), nullable=False)

    job_type: Mapped[str] = mapped_column(String(30), nullable=False, default="screening")

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="batch_job_status",
            native_enum=False,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=JobStatus.PROCESSING,
        index=True
    )

    # Percentage 0-100
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    result: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_batch_jobs_user_created', 'user_id', 'created_at'),
        Index('idx_batch_jobs_project_created', 'project_id', 'created_at'),
        CheckConstraint('progress >= 0 AND progress <= 100', name='check_batch_progress_range'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "projectId": self.project_id,
            "jobType": self.job_type,
            "status": self.status.value if isinstance(self.status, JobStatus) else self.status,
            "progress": self.progress,
            "totalItems": self.total_items,
            "result": self.result,
            "error": self.error,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self) -> str:
        return f"<BatchJobRecord(id={self.id}, status={self.status}, progress={self.progress})>"
