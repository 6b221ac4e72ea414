"""
Database Package for the Batch Screening Service

This package provides:
- SQLAlchemy ORM model for durable batch job records
- Session provider with retry logic and transaction scopes
- Repository pattern for data access
- BatchJobStore, the facade the job manager mirrors progress into
"""

from database.models import Base, BatchJobRecord
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    create_test_provider,
)
from database.repositories import (
    BatchJobRepository,
    RepositoryError,
    EntityNotFoundError,
    DuplicateEntityError,
)
from database.job_store import BatchJobStore

__all__ = [
    'Base',
    'BatchJobRecord',
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'create_test_provider',
    'BatchJobRepository',
    'RepositoryError',
    'EntityNotFoundError',
    'DuplicateEntityError',
    'BatchJobStore',
]
