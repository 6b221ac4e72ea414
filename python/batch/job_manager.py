"""
Batch Job Manager

Owns the lifecycle of batch screening jobs:

    pending -> processing -> completed | failed | cancelled
    pending -> failed | cancelled          (job died before it started)

``submit()`` registers the job and spawns one supervised asyncio task per job;
it never waits on an entity. The task is the only writer of its job. Readers
(status polling, possibly from worker threads) get immutable snapshots from the
JobRegistry, where a job and its results are swapped together under a lock so
``processed_entities == len(results)`` holds for every read.

Progress is mirrored into a durable store for history. Store failures are
logged and never affect the in-memory job.
"""

import asyncio
import functools
import logging
import threading
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from batch.entity_processor import EntityProcessor
from batch.errors import InvalidJobTransition, JobCancelledError, JobNotFoundError
from batch.types import (
    BatchJob,
    BatchOptions,
    EntityRecord,
    EntityResult,
    JobStatus,
    SubmitResult,
    generate_job_id,
    utc_now,
)
from config_manager import BatchConfig
from log_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

HISTORY_MAX_LIMIT = 100

ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class CancellationToken:
    """Cooperative cancellation signal for one job."""

    def __init__(self):
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Signal cancellation. Returns False if it was already signalled."""
        if self._event.is_set():
            return False
        self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError()


class JobRegistry:
    """In-memory job state: one snapshot and one results tuple per job."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[BatchJob, Tuple[EntityResult, ...]]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._entries

    def add(self, job: BatchJob) -> None:
        with self._lock:
            if job.id in self._entries:
                raise ValueError(f"Job already registered: {job.id}")
            self._entries[job.id] = (job, ())

    def get_job(self, job_id: str) -> Optional[BatchJob]:
        with self._lock:
            entry = self._entries.get(job_id)
        return entry[0] if entry else None

    def get_results(self, job_id: str) -> Optional[List[EntityResult]]:
        with self._lock:
            entry = self._entries.get(job_id)
        return list(entry[1]) if entry else None

    def snapshot(self, job_id: str) -> Optional[Tuple[BatchJob, List[EntityResult]]]:
        """Job and results read together."""
        with self._lock:
            entry = self._entries.get(job_id)
        return (entry[0], list(entry[1])) if entry else None

    def job_ids(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def record_result(self, job_id: str, result: EntityResult) -> BatchJob:
        """Append a result and bump the counters in one step."""
        with self._lock:
            job, results = self._require(job_id)
            if job.status is not JobStatus.PROCESSING:
                raise InvalidJobTransition(
                    f"Cannot record results for job {job_id} in status {job.status.value}"
                )
            updated = job.with_result(result)
            self._entries[job_id] = (updated, results + (result,))
            return updated

    def transition(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> BatchJob:
        """Move a job to ``status``.

        Raises:
            JobNotFoundError: Unknown job
            InvalidJobTransition: The current status does not allow the move
        """
        with self._lock:
            job, results = self._require(job_id)
            if status not in ALLOWED_TRANSITIONS[job.status]:
                raise InvalidJobTransition(
                    f"Job {job_id} cannot move from {job.status.value} to {status.value}"
                )

            changes: Dict[str, Any] = {"status": status}
            now = utc_now()
            if status is JobStatus.PROCESSING:
                changes["started_at"] = now
            else:
                changes["completed_at"] = now
            changes["error"] = error if status is JobStatus.FAILED else None

            updated = replace(job, **changes)
            self._entries[job_id] = (updated, results)
            return updated

    def remove(self, job_id: str) -> bool:
        with self._lock:
            return self._entries.pop(job_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _require(self, job_id: str) -> Tuple[BatchJob, Tuple[EntityResult, ...]]:
        entry = self._entries.get(job_id)
        if entry is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return entry


def chunked(records: Sequence[EntityRecord], size: int) -> List[Sequence[EntityRecord]]:
    return [records[i:i + size] for i in range(0, len(records), size)]


class BatchJobManager:
    """Runs batch jobs in the background and answers status queries.

    Args:
        processor: Screens one record at a time
        store: Durable mirror (BatchJobStore or anything with the same methods);
            None disables persistence and history
        config: batch section of the configuration
        sleep: Coroutine function for the inter-entity delay (injectable for tests)
    """

    def __init__(
        self,
        processor: EntityProcessor,
        store=None,
        config: Optional[BatchConfig] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None
    ):
        self.processor = processor
        self.store = store
        self.config = config or BatchConfig()
        self._sleep = sleep or asyncio.sleep
        self.registry = JobRegistry()
        self._tokens: Dict[str, CancellationToken] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def active_jobs(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def submit(
        self,
        records: Sequence[EntityRecord],
        options: BatchOptions,
        submitter_id: str
    ) -> SubmitResult:
        """Register a job and start processing it in the background.

        Returns as soon as the job exists; no entity has necessarily been
        processed yet.
        """
        chunk_size = max(1, min(options.chunk_size, self.config.max_chunk_size))
        if chunk_size != options.chunk_size:
            options = replace(options, chunk_size=chunk_size)

        self._evict_finished()
        records = tuple(records)
        job = BatchJob(
            id=generate_job_id(),
            total_entities=len(records),
            project_id=options.project_id,
            submitter_id=submitter_id,
        )
        self.registry.add(job)
        token = CancellationToken()
        self._tokens[job.id] = token

        await self._persist(
            "create", job.id, submitter_id, options.project_id, len(records), job.created_at
        )

        task = asyncio.get_running_loop().create_task(self._run(job.id, records, options, token))
        self._tasks[job.id] = task
        task.add_done_callback(functools.partial(self._on_task_done, job.id))

        logger.info(
            "Submitted batch job %s: project=%s entities=%d chunk_size=%d submitter=%s",
            job.id, options.project_id, len(records), chunk_size, sanitize_for_logging(submitter_id),
        )
        return SubmitResult(job_id=job.id, status=job.status)

    def get_status(self, job_id: str) -> Optional[BatchJob]:
        return self.registry.get_job(job_id)

    def get_results(self, job_id: str) -> Optional[List[EntityResult]]:
        return self.registry.get_results(job_id)

    def cancel(self, job_id: str) -> bool:
        """Signal a live job to stop.

        Returns:
            True if a live job was found and this call signalled it
        """
        job = self.registry.get_job(job_id)
        token = self._tokens.get(job_id)
        if job is None or token is None or job.status.is_terminal:
            return False
        signalled = token.cancel()
        if signalled:
            logger.info("Cancellation requested for batch job %s", job_id)
        return signalled

    async def get_history(
        self,
        submitter_id: Optional[str] = None,
        project_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Recent jobs from the durable store only; [] if it is unavailable."""
        if self.store is None:
            return []
        if limit is None:
            limit = self.config.history_limit
        limit = max(1, min(int(limit), HISTORY_MAX_LIMIT))

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None,
                functools.partial(
                    self.store.query_history,
                    user_id=submitter_id, project_id=project_id, limit=limit,
                ),
            )
        except Exception as e:
            logger.warning("Failed to load batch job history: %s", sanitize_for_logging(str(e)))
            return []

    async def join(self, job_id: str, timeout: Optional[float] = None) -> Optional[BatchJob]:
        """Wait for a job's background task to finish and return the final snapshot."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return self.registry.get_job(job_id)

    def forget(self, job_id: str) -> bool:
        """Drop a finished job from memory. Live jobs are kept."""
        job = self.registry.get_job(job_id)
        if job is None or not job.status.is_terminal:
            return False
        self._tokens.pop(job_id, None)
        self._tasks.pop(job_id, None)
        return self.registry.remove(job_id)

    def _evict_finished(self) -> int:
        """Forget the oldest finished jobs beyond ``config.retained_jobs``."""
        finished = []
        for job_id in self.registry.job_ids():
            job = self.registry.get_job(job_id)
            if job is not None and job.status.is_terminal:
                finished.append(job_id)
        excess = finished[:max(0, len(finished) - self.config.retained_jobs)]
        for job_id in excess:
            self.forget(job_id)
        if excess:
            logger.debug("Evicted %d finished batch jobs from memory", len(excess))
        return len(excess)

    async def shutdown(self) -> None:
        """Cancel every live job, wait for the tasks and clear all state."""
        for token in self._tokens.values():
            token.cancel()
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # Tasks cancelled before their first step never reach _run's handlers
        for job_id in self.registry.job_ids():
            job = self.registry.get_job(job_id)
            if job is not None and not job.status.is_terminal:
                self._finish(job_id, JobStatus.CANCELLED)
                await self._persist("cancel", job_id)
        self._tasks.clear()
        self._tokens.clear()
        self.registry.clear()
        logger.info("Batch job manager shut down (%d live jobs cancelled)", len(tasks))

    async def _run(
        self,
        job_id: str,
        records: Tuple[EntityRecord, ...],
        options: BatchOptions,
        token: CancellationToken
    ) -> None:
        try:
            token.raise_if_cancelled()
            self.registry.transition(job_id, JobStatus.PROCESSING)
            total = len(records)
            delay = self.config.inter_entity_delay_ms / 1000.0

            index = 0
            for chunk in chunked(records, options.chunk_size):
                for record in chunk:
                    token.raise_if_cancelled()
                    result = await self.processor.process_one(record, index, options, token)
                    job = self.registry.record_result(job_id, result)
                    logger.info(
                        "Batch job %s: entity %d/%d %s",
                        job_id, job.processed_entities, total, result.status.value,
                    )
                    await self._persist("update_progress", job_id, job.progress_percent)
                    index += 1
                    if delay > 0 and index < total:
                        await self._sleep(delay)

            job = self.registry.transition(job_id, JobStatus.COMPLETED)
            await self._persist(
                "complete", job_id, {"summary": job.summary(), "resultCount": job.processed_entities}
            )
            logger.info(
                "Batch job %s completed: success=%d duplicate=%d failed=%d",
                job_id, job.successful_entities, job.duplicate_entities, job.failed_entities,
            )

        except JobCancelledError:
            self._finish(job_id, JobStatus.CANCELLED)
            await self._persist("cancel", job_id)
            logger.info("Batch job %s cancelled", job_id)

        except asyncio.CancelledError:
            self._finish(job_id, JobStatus.CANCELLED)
            logger.info("Batch job %s task cancelled", job_id)
            # The durable row must not stay "processing" after shutdown
            await asyncio.shield(self._persist("cancel", job_id))
            raise

        except Exception as e:
            message = str(e) or type(e).__name__
            self._finish(job_id, JobStatus.FAILED, message)
            logger.error("Batch job %s failed: %s", job_id, sanitize_for_logging(message))
            await self._persist("fail", job_id, message)

    def _finish(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> None:
        try:
            self.registry.transition(job_id, status, error)
        except (InvalidJobTransition, JobNotFoundError) as e:
            logger.warning("Could not mark batch job %s as %s: %s", job_id, status.value, e)

    async def _persist(self, method: str, *args) -> None:
        """Call a store method in the executor; failures are logged only."""
        if self.store is None:
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, functools.partial(getattr(self.store, method), *args))
        except Exception as e:
            logger.warning(
                "Durable store %s failed for batch job %s: %s",
                method, args[0] if args else "?", sanitize_for_logging(str(e)),
            )

    def _on_task_done(self, job_id: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Batch job %s task ended with an unhandled error: %s",
                job_id, exc, exc_info=exc,
            )
            self._finish(job_id, JobStatus.FAILED, str(exc) or type(exc).__name__)
