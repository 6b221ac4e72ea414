"""
Repository Pattern for Batch Screening Database Operations

Provides clean data access layer with proper typing and error handling.
Repositories work inside a caller-provided session and only flush; the
session scope decides when to commit.
"""

import logging
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from sqlalchemy import select, and_
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from batch.types import JobStatus
from database.models import BatchJobRecord

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class EntityNotFoundError(RepositoryError):
    """Raised when a record is not found."""
    pass


class DuplicateEntityError(RepositoryError):
    """Raised when attempting to create a duplicate record."""
    pass


# ============================================
# BATCH JOB REPOSITORY
# ============================================

class BatchJobRepository:
    """Repository for durable batch job records."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        job_id: str,
        user_id: str,
        project_id: str,
        total_items: int,
        status: JobStatus = JobStatus.PROCESSING,
        job_type: str = "screening",
        created_at: Optional[datetime] = None
    ) -> BatchJobRecord:
        """
        Create a batch job record.

        Raises:
            DuplicateEntityError: If a record with the same id exists
        """
        record = BatchJobRecord(
            id=job_id,
            user_id=user_id,
            project_id=project_id,
            job_type=job_type,
            status=status,
            progress=0,
            total_items=total_items,
        )
        if created_at is not None:
            record.created_at = created_at
            record.updated_at = created_at

        try:
            self.session.add(record)
            self.session.flush()
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateEntityError(f"Batch job already exists: {job_id}") from e

        logger.debug("Created batch job record: %s", job_id)
        return record

    def get_by_id(self, job_id: str) -> Optional[BatchJobRecord]:
        query = select(BatchJobRecord).where(BatchJobRecord.id == job_id)
        return self.session.execute(query).scalar_one_or_none()

    def _require(self, job_id: str) -> BatchJobRecord:
        record = self.get_by_id(job_id)
        if record is None:
            raise EntityNotFoundError(f"Batch job not found: {job_id}")
        return record

    def update_progress(self, job_id: str, progress: int) -> BatchJobRecord:
        """
        Set the progress percentage (clamped to 0-100).

        Raises:
            EntityNotFoundError: If the job record does not exist
        """
        record = self._require(job_id)
        record.progress = max(0, min(100, int(progress)))
        self.session.flush()
        return record

    def mark_completed(self, job_id: str, summary: Dict[str, Any]) -> BatchJobRecord:
        record = self._require(job_id)
        record.status = JobStatus.COMPLETED
        record.progress = 100
        record.result = summary
        record.completed_at = datetime.now(timezone.utc)
        self.session.flush()
        return record

    def mark_failed(self, job_id: str, error: str) -> BatchJobRecord:
        record = self._require(job_id)
        record.status = JobStatus.FAILED
        record.error = error
        record.completed_at = datetime.now(timezone.utc)
        self.session.flush()
        return record

    def mark_cancelled(self, job_id: str) -> BatchJobRecord:
        record = self._require(job_id)
        record.status = JobStatus.CANCELLED
        record.completed_at = datetime.now(timezone.utc)
        self.session.flush()
        return record

    def list_recent(
        self,
        user_id: Optional[str] = None,
        project_id: Optional[str] = None,
        limit: int = 20
    ) -> List[BatchJobRecord]:
        """
        Most recent jobs first, optionally filtered by submitter and project.

        Args:
            user_id: Only jobs submitted by this user
            project_id: Only jobs for this project
            limit: Maximum number of records
        """
        conditions = []
        if user_id:
            conditions.append(BatchJobRecord.user_id == user_id)
        if project_id:
            conditions.append(BatchJobRecord.project_id == project_id)

        query = select(BatchJobRecord)
        if conditions:
            query = query.where(and_(*conditions))
        query = query.order_by(BatchJobRecord.created_at.desc()).limit(limit)

        return list(self.session.execute(query).scalars().all())
