"""
Batch screening engine

- RateLimiter: paces outbound screening API calls and absorbs 429s
- EntityProcessor: duplicate check, screen and risk-profile filter for one record
- BatchJobManager: job lifecycle, progress, cancellation and history
- parse_entities: CSV upload to validated entity records
"""

from batch.errors import (
    BatchError,
    BatchValidationError,
    InvalidJobTransition,
    JobCancelledError,
    JobNotFoundError,
    RateLimiterQueueCleared,
)
from batch.types import (
    BatchJob,
    BatchOptions,
    EntityRecord,
    EntityResult,
    EntityResultStatus,
    EntityType,
    JobStatus,
    MatchingProfile,
    SubmitResult,
)
from batch.rate_limiter import RateLimiter
from batch.entity_processor import EntityProcessor
from batch.job_manager import BatchJobManager, CancellationToken, JobRegistry
from batch.parser import ParseError, ParseResult, parse_entities, generate_template

__all__ = [
    'BatchError',
    'BatchValidationError',
    'InvalidJobTransition',
    'JobCancelledError',
    'JobNotFoundError',
    'RateLimiterQueueCleared',
    'BatchJob',
    'BatchOptions',
    'EntityRecord',
    'EntityResult',
    'EntityResultStatus',
    'EntityType',
    'JobStatus',
    'MatchingProfile',
    'SubmitResult',
    'RateLimiter',
    'EntityProcessor',
    'BatchJobManager',
    'CancellationToken',
    'JobRegistry',
    'ParseError',
    'ParseResult',
    'parse_entities',
    'generate_template',
]
