"""
Entity Processor

Runs one input record through the screening workflow:
    duplicate check -> screen -> risk-profile filter

Every outbound call goes through the shared RateLimiter. Per-record failures
are returned as failed EntityResults; only cancellation escapes.
"""

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional

from batch.errors import JobCancelledError
from batch.rate_limiter import RateLimiter
from batch.types import BatchOptions, EntityRecord, EntityResult, EntityType
from log_utils import sanitize_for_logging
from risk_scoring import (
    RiskProfile,
    RiskProfileLoader,
    calculate_risk_score,
    filter_by_profile,
)
from screening_client import ScreeningAPIClient

logger = logging.getLogger(__name__)


def to_api_attributes(record: EntityRecord) -> Dict[str, Any]:
    """Map a record to the screening API attribute schema.

    Optional fields that are absent are left out entirely; the API treats a
    missing attribute differently from an empty one.
    """
    attributes: Dict[str, Any] = {
        "name": [record.name],
        "type": (record.type or EntityType.COMPANY).value,
    }
    if record.address:
        attributes["addresses"] = [record.address]
    if record.country:
        attributes["country"] = [record.country]
    if record.identifier:
        attributes["identifier"] = [record.identifier]
    return attributes


class EntityProcessor:
    """Screens single entity records on behalf of batch jobs."""

    def __init__(
        self,
        client: ScreeningAPIClient,
        rate_limiter: RateLimiter,
        profile_loader: Optional[RiskProfileLoader] = None
    ):
        self.client = client
        self.rate_limiter = rate_limiter
        self.profile_loader = profile_loader

    async def process_one(
        self,
        record: EntityRecord,
        index: int,
        options: BatchOptions,
        cancel_token
    ) -> EntityResult:
        """Screen one record and classify the outcome.

        Args:
            record: Validated input record
            index: Position of the record in the submitted batch
            options: Job-wide options (project, profiles)
            cancel_token: The job's CancellationToken

        Returns:
            success, duplicate or failed EntityResult for this index

        Raises:
            JobCancelledError: If the job was cancelled before work started
        """
        cancel_token.raise_if_cancelled()

        try:
            attributes = to_api_attributes(record)

            check = await self.rate_limiter.execute(
                lambda: self.client.exists_check(options.project_id, attributes)
            )
            if check.exists and check.existing_id:
                logger.info(
                    "Entity %d already exists in project %s: %s",
                    index, options.project_id, check.existing_id,
                )
                return EntityResult.duplicate(index, record, check.existing_id)

            project_entity = await self.rate_limiter.execute(
                lambda: self.client.screen(
                    options.project_id, attributes, options.matching_profile.value
                )
            )

            if options.risk_profile:
                project_entity = await self._apply_risk_profile(project_entity, options.risk_profile)

            return EntityResult.success(index, record, project_entity)

        except JobCancelledError:
            raise
        except Exception as e:
            message = str(e) or "Unknown error"
            logger.warning(
                "Entity %d (%s) failed: %s",
                index, sanitize_for_logging(record.name), sanitize_for_logging(message),
            )
            return EntityResult.failed(index, record, message)

    async def _apply_risk_profile(self, project_entity: Dict[str, Any], profile_id: str) -> Dict[str, Any]:
        """Filter risk factors by profile, falling back to the unfiltered payload.

        A missing or broken profile never fails the entity.
        """
        if self.profile_loader is None:
            logger.warning("Risk profile %s requested but no profile loader is configured", profile_id)
            return project_entity

        try:
            profile = await asyncio.to_thread(self.profile_loader.load_by_id, profile_id)
        except Exception as e:
            logger.warning(
                "Failed to load risk profile %s, returning unfiltered results: %s",
                sanitize_for_logging(profile_id), sanitize_for_logging(str(e)),
            )
            return project_entity

        if profile is None:
            logger.warning(
                "Risk profile %s not found, returning unfiltered results",
                sanitize_for_logging(profile_id),
            )
            return project_entity

        try:
            return filter_entity_risk_factors(project_entity, profile)
        except Exception as e:
            logger.warning(
                "Failed to apply risk profile %s, returning unfiltered results: %s",
                profile.id, sanitize_for_logging(str(e)),
            )
            return project_entity


def filter_entity_risk_factors(project_entity: Dict[str, Any], profile: RiskProfile) -> Dict[str, Any]:
    """Return a copy of the payload with only the profile's enabled risk factors.

    The entity-level list becomes the enabled subset of the union of the
    entity's own factors and those on every match; each match keeps its own
    enabled subset. When the profile has scoring enabled, a ``risk_score``
    summary is attached.
    """
    entity = copy.deepcopy(project_entity)
    matches: List[Dict[str, Any]] = entity.get("matches") or []

    combined: Dict[str, Dict[str, Any]] = {}
    for factor in (entity.get("risk_factors") or []):
        combined.setdefault(factor["id"], factor)
    for match in matches:
        for factor in (match.get("risk_factors") or []):
            combined.setdefault(factor["id"], factor)

    filtered = filter_by_profile(list(combined.values()), profile)
    entity["risk_factors"] = filtered
    for match in matches:
        if match.get("risk_factors") is not None:
            match["risk_factors"] = filter_by_profile(match["risk_factors"], profile)

    if profile.risk_scoring_enabled:
        score = calculate_risk_score((rf["id"] for rf in filtered), profile)
        entity["risk_score"] = {
            "total": score.total_score,
            "threshold": score.threshold,
            "meets_threshold": score.meets_threshold,
            "triggered": score.triggered,
        }

    logger.debug(
        "Applied risk profile %s: %d -> %d risk factors",
        profile.id, len(combined), len(filtered),
    )
    return entity
