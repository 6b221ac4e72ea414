"""
Domain types for batch screening jobs.

BatchJob and EntityResult are immutable values: the job manager publishes a new
snapshot for every change instead of mutating the one a reader may be holding.
"""

import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class JobStatus(str, Enum):
    """Lifecycle state of a batch job"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class EntityResultStatus(str, Enum):
    """Outcome of screening one entity record"""
    SUCCESS = "success"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class EntityType(str, Enum):
    """Kind of entity described by an input record"""
    COMPANY = "company"
    PERSON = "person"


class MatchingProfile(str, Enum):
    """Matching profile passed through to the screening API"""
    CORPORATE = "corporate"
    SUPPLIERS = "suppliers"
    SEARCH = "search"
    SCREEN = "screen"


@dataclass(frozen=True)
class EntityRecord:
    """One validated input row"""
    name: str
    address: Optional[str] = None
    country: Optional[str] = None
    type: Optional[EntityType] = None
    identifier: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name}
        if self.address:
            data["address"] = self.address
        if self.country:
            data["country"] = self.country
        if self.type:
            data["type"] = self.type.value
        if self.identifier:
            data["identifier"] = self.identifier
        return data


@dataclass(frozen=True)
class BatchOptions:
    """Options shared by every record of one batch job"""
    project_id: str
    risk_profile: Optional[str] = None
    matching_profile: MatchingProfile = MatchingProfile.CORPORATE
    chunk_size: int = 10


@dataclass(frozen=True)
class EntityResult:
    """Classified outcome for one input record"""
    index: int
    input: EntityRecord
    status: EntityResultStatus
    project_entity: Optional[Dict[str, Any]] = None
    existing_entity_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, index: int, record: EntityRecord, project_entity: Dict[str, Any]) -> 'EntityResult':
        return cls(index=index, input=record, status=EntityResultStatus.SUCCESS,
                   project_entity=project_entity)

    @classmethod
    def duplicate(cls, index: int, record: EntityRecord, existing_entity_id: str) -> 'EntityResult':
        return cls(index=index, input=record, status=EntityResultStatus.DUPLICATE,
                   existing_entity_id=existing_entity_id)

    @classmethod
    def failed(cls, index: int, record: EntityRecord, error: str) -> 'EntityResult':
        return cls(index=index, input=record, status=EntityResultStatus.FAILED, error=error)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "index": self.index,
            "input": self.input.to_dict(),
            "status": self.status.value,
        }
        if self.status is EntityResultStatus.SUCCESS:
            data["projectEntity"] = self.project_entity
        elif self.status is EntityResultStatus.DUPLICATE:
            data["existingEntityId"] = self.existing_entity_id
        else:
            data["error"] = self.error
        return data


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_job_id() -> str:
    """Opaque job identifier: creation time plus random suffix."""
    return f"batch_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class BatchJob:
    """Snapshot of a batch job's progress"""
    id: str
    total_entities: int
    status: JobStatus = JobStatus.PENDING
    project_id: Optional[str] = None
    submitter_id: Optional[str] = None
    processed_entities: int = 0
    successful_entities: int = 0
    failed_entities: int = 0
    duplicate_entities: int = 0
    created_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def progress_percent(self) -> int:
        if self.total_entities <= 0:
            return 100 if self.status is JobStatus.COMPLETED else 0
        return round(self.processed_entities / self.total_entities * 100)

    def with_result(self, result: EntityResult) -> 'BatchJob':
        """Counters after one more record reached a terminal outcome."""
        return replace(
            self,
            processed_entities=self.processed_entities + 1,
            successful_entities=self.successful_entities + (result.status is EntityResultStatus.SUCCESS),
            duplicate_entities=self.duplicate_entities + (result.status is EntityResultStatus.DUPLICATE),
            failed_entities=self.failed_entities + (result.status is EntityResultStatus.FAILED),
        )

    def summary(self) -> Dict[str, int]:
        return {
            "totalEntities": self.total_entities,
            "successfulEntities": self.successful_entities,
            "failedEntities": self.failed_entities,
            "duplicateEntities": self.duplicate_entities,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "projectId": self.project_id,
            "totalEntities": self.total_entities,
            "processedEntities": self.processed_entities,
            "successfulEntities": self.successful_entities,
            "failedEntities": self.failed_entities,
            "duplicateEntities": self.duplicate_entities,
            "progress": self.progress_percent,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


@dataclass(frozen=True)
class SubmitResult:
    """Returned by submit() before any entity has necessarily been processed"""
    job_id: str
    status: JobStatus
