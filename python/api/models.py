"""
Pydantic request/response schemas for the Batch Screening API

Response models mirror the wire shape of BatchJob.to_dict() and
EntityResult.to_dict() (camelCase keys).
"""

from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator

from config_manager import MATCHING_PROFILES


class BatchSubmitRequest(BaseModel):
    """Request schema for submitting a batch screening job."""
    csv_content: str = Field(
        ...,
        min_length=1,
        description="CSV text with a header row: name (required), address, country, type, identifier"
    )
    risk_profile: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Risk profile id used to filter risk factors"
    )
    chunk_size: int = Field(
        default=10,
        ge=1,
        description="Records per processing chunk (capped by configuration)"
    )
    matching_profile: Optional[str] = Field(
        default=None,
        description="Matching profile: corporate, suppliers, search or screen"
    )

    @field_validator('matching_profile')
    @classmethod
    def validate_matching_profile(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip().lower()
        if v not in MATCHING_PROFILES:
            raise ValueError(f"matching_profile must be one of: {', '.join(MATCHING_PROFILES)}")
        return v


class BatchSubmitResponse(BaseModel):
    """Returned immediately after a job has been created."""
    job_id: str = Field(..., alias="jobId", description="Batch job identifier")
    status: str = Field(..., description="Initial job status")
    total_entities: int = Field(..., ge=0, alias="totalEntities")
    message: str = Field(default="Batch processing started")

    model_config = {"populate_by_name": True}


class BatchJobResponse(BaseModel):
    """Job snapshot, see BatchJob.to_dict()."""
    id: str
    status: str
    project_id: Optional[str] = Field(default=None, alias="projectId")
    total_entities: int = Field(..., alias="totalEntities")
    processed_entities: int = Field(..., alias="processedEntities")
    successful_entities: int = Field(..., alias="successfulEntities")
    failed_entities: int = Field(..., alias="failedEntities")
    duplicate_entities: int = Field(..., alias="duplicateEntities")
    progress: int = Field(..., ge=0, le=100)
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    error: Optional[str] = None

    model_config = {"populate_by_name": True}


class EntityResultResponse(BaseModel):
    """Outcome for one input record, see EntityResult.to_dict()."""
    index: int = Field(..., ge=0)
    input: Dict[str, Any]
    status: str
    project_entity: Optional[Dict[str, Any]] = Field(default=None, alias="projectEntity")
    existing_entity_id: Optional[str] = Field(default=None, alias="existingEntityId")
    error: Optional[str] = None

    model_config = {"populate_by_name": True}


class BatchStatusResponse(BaseModel):
    """Job status plus every result recorded so far."""
    job: BatchJobResponse
    results: List[EntityResultResponse] = Field(default_factory=list)


class CancelResponse(BaseModel):
    cancelled: bool = Field(..., description="Whether a live job was signalled")


class BatchHistoryResponse(BaseModel):
    """Durable job records, newest first."""
    jobs: List[Dict[str, Any]] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    active_jobs: int = Field(default=0, ge=0, description="Jobs currently running")
    queued_requests: int = Field(default=0, ge=0, description="Requests waiting in the rate limiter")
    database: Optional[bool] = Field(default=None, description="Durable store reachable")
    uptime_seconds: Optional[int] = Field(default=None, description="Server uptime in seconds")
    error_message: Optional[str] = Field(default=None)


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    errors: Optional[List[Dict[str, Any]]] = Field(default=None, description="Per-row problems")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
