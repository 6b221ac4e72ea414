"""
Durable batch job store

Synchronous facade over BatchJobRepository with one transaction per call.
The job manager runs these methods in a thread executor and treats every
exception as non-fatal.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from batch.types import JobStatus
from database.connection import DatabaseSessionProvider
from database.repositories import BatchJobRepository

logger = logging.getLogger(__name__)


class BatchJobStore:
    """Mirrors batch job progress into the relational store."""

    def __init__(self, provider: DatabaseSessionProvider):
        self.provider = provider

    def create(
        self,
        job_id: str,
        user_id: str,
        project_id: str,
        total_items: int,
        created_at: Optional[datetime] = None
    ) -> None:
        # Jobs are recorded as processing from the start so history shows them
        # as live even before the background task picks them up.
        with self.provider.session_scope() as session:
            BatchJobRepository(session).create(
                job_id=job_id,
                user_id=user_id,
                project_id=project_id,
                total_items=total_items,
                status=JobStatus.PROCESSING,
                created_at=created_at,
            )

    def update_progress(self, job_id: str, progress: int) -> None:
        with self.provider.session_scope() as session:
            BatchJobRepository(session).update_progress(job_id, progress)

    def complete(self, job_id: str, summary: Dict[str, Any]) -> None:
        with self.provider.session_scope() as session:
            BatchJobRepository(session).mark_completed(job_id, summary)

    def fail(self, job_id: str, error: str) -> None:
        with self.provider.session_scope() as session:
            BatchJobRepository(session).mark_failed(job_id, error)

    def cancel(self, job_id: str) -> None:
        with self.provider.session_scope() as session:
            BatchJobRepository(session).mark_cancelled(job_id)

    def query_history(
        self,
        user_id: Optional[str] = None,
        project_id: Optional[str] = None,
        limit: int = 20
    ) -> List[Dict[str, Any]]:
        """Recent job records as plain dicts, newest first."""
        with self.provider.session_scope() as session:
            records = BatchJobRepository(session).list_recent(
                user_id=user_id, project_id=project_id, limit=limit
            )
            return [record.to_dict() for record in records]
