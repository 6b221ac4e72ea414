"""
Unit tests for the entity processor.

The screening client is an AsyncMock; calls still go through a real
RateLimiter running on the fake clock from conftest.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from batch.entity_processor import EntityProcessor, filter_entity_risk_factors, to_api_attributes
from batch.errors import JobCancelledError
from batch.job_manager import CancellationToken
from batch.types import (
    BatchOptions,
    EntityRecord,
    EntityResultStatus,
    EntityType,
    MatchingProfile,
)
from risk_scoring import RiskProfile, RiskProfileError, RiskProfileLoader
from screening_client import ExistenceCheck, ScreeningAPIError


def screened_entity():
    return {
        "project_entity_id": "pe-1",
        "risk_factors": [{"id": "sanctioned"}, {"id": "pep"}],
        "matches": [
            {"id": "m-1", "risk_factors": [{"id": "export_controls"}, {"id": "adverse_media"}]},
            {"id": "m-2", "risk_factors": [{"id": "sanctioned"}]},
            {"id": "m-3"},
        ],
    }


@pytest.fixture
def client():
    client = MagicMock()
    client.exists_check = AsyncMock(return_value=ExistenceCheck(exists=False))
    client.screen = AsyncMock(return_value=screened_entity())
    return client


@pytest.fixture
def profile():
    return RiskProfile(
        id="default",
        name="Default",
        enabled_factors=frozenset({"sanctioned", "export_controls"}),
        risk_scoring_enabled=True,
        risk_threshold=5,
        risk_scores={"sanctioned": 5, "export_controls": 2},
    )


@pytest.fixture
def loader(profile):
    loader = MagicMock(spec=RiskProfileLoader)
    loader.load_by_id.return_value = profile
    return loader


@pytest.fixture
def processor(client, limiter, loader):
    return EntityProcessor(client, limiter, loader)


@pytest.fixture
def options():
    return BatchOptions(project_id="proj-1", matching_profile=MatchingProfile.SUPPLIERS)


@pytest.fixture
def token():
    return CancellationToken()


class TestAttributeMapping:
    """Tests for record to API attribute mapping."""

    def test_full_record(self):
        record = EntityRecord(
            name="Acme", address="1 Main St", country="USA",
            type=EntityType.PERSON, identifier="ID-1",
        )
        assert to_api_attributes(record) == {
            "name": ["Acme"],
            "type": "person",
            "addresses": ["1 Main St"],
            "country": ["USA"],
            "identifier": ["ID-1"],
        }

    def test_absent_fields_are_omitted(self):
        attributes = to_api_attributes(EntityRecord(name="Acme"))
        assert attributes == {"name": ["Acme"], "type": "company"}
        assert "addresses" not in attributes
        assert "country" not in attributes


class TestProcessOne:
    """Tests for the duplicate check / screen workflow."""

    @pytest.mark.asyncio
    async def test_success_without_risk_profile(self, processor, client, options, token):
        record = EntityRecord(name="Acme", country="USA")

        result = await processor.process_one(record, 4, options, token)

        assert result.status is EntityResultStatus.SUCCESS
        assert result.index == 4
        assert result.input == record
        assert result.project_entity == screened_entity()
        client.exists_check.assert_awaited_once_with(
            "proj-1", {"name": ["Acme"], "type": "company", "country": ["USA"]}
        )
        client.screen.assert_awaited_once_with(
            "proj-1", {"name": ["Acme"], "type": "company", "country": ["USA"]}, "suppliers"
        )

    @pytest.mark.asyncio
    async def test_duplicate_short_circuits_screening(self, processor, client, options, token):
        client.exists_check.return_value = ExistenceCheck(exists=True, existing_id="X")

        result = await processor.process_one(EntityRecord(name="Acme"), 0, options, token)

        assert result.status is EntityResultStatus.DUPLICATE
        assert result.existing_entity_id == "X"
        assert result.project_entity is None
        client.screen.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_screen_error_becomes_failed_result(self, processor, client, options, token):
        client.screen.side_effect = ScreeningAPIError(400, "BAD_REQUEST", "Invalid attributes")

        result = await processor.process_one(EntityRecord(name="Acme"), 2, options, token)

        assert result.status is EntityResultStatus.FAILED
        assert result.error == "Invalid attributes"
        assert result.index == 2

    @pytest.mark.asyncio
    async def test_exists_error_becomes_failed_result(self, processor, client, options, token):
        client.exists_check.side_effect = ScreeningAPIError(500, "HTTP_500", "Upstream unavailable")

        result = await processor.process_one(EntityRecord(name="Acme"), 0, options, token)

        assert result.status is EntityResultStatus.FAILED
        assert result.error == "Upstream unavailable"
        client.screen.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_error_message(self, processor, client, options, token):
        client.screen.side_effect = RuntimeError()

        result = await processor.process_one(EntityRecord(name="Acme"), 0, options, token)

        assert result.error == "Unknown error"

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, processor, client, options, token):
        token.cancel()

        with pytest.raises(JobCancelledError):
            await processor.process_one(EntityRecord(name="Acme"), 0, options, token)

        client.exists_check.assert_not_awaited()
        client.screen.assert_not_awaited()


class TestRiskProfileFiltering:
    """Tests for the risk profile branch and its degradation paths."""

    @pytest.fixture
    def profiled_options(self):
        return BatchOptions(project_id="proj-1", risk_profile="default")

    @pytest.mark.asyncio
    async def test_filters_entity_and_matches(self, processor, loader, profiled_options, token):
        result = await processor.process_one(EntityRecord(name="Acme"), 0, profiled_options, token)

        entity = result.project_entity
        assert {rf["id"] for rf in entity["risk_factors"]} == {"sanctioned", "export_controls"}
        assert entity["matches"][0]["risk_factors"] == [{"id": "export_controls"}]
        assert entity["matches"][1]["risk_factors"] == [{"id": "sanctioned"}]
        assert "risk_factors" not in entity["matches"][2]
        loader.load_by_id.assert_called_once_with("default")

    @pytest.mark.asyncio
    async def test_attaches_risk_score(self, processor, profiled_options, token):
        result = await processor.process_one(EntityRecord(name="Acme"), 0, profiled_options, token)

        score = result.project_entity["risk_score"]
        assert score["total"] == 7
        assert score["meets_threshold"] is True
        assert score["triggered"] == {"sanctioned": 5, "export_controls": 2}

    @pytest.mark.asyncio
    async def test_missing_profile_keeps_unfiltered(self, processor, loader, profiled_options, token):
        loader.load_by_id.return_value = None

        result = await processor.process_one(EntityRecord(name="Acme"), 0, profiled_options, token)

        assert result.status is EntityResultStatus.SUCCESS
        assert result.project_entity == screened_entity()

    @pytest.mark.asyncio
    async def test_load_failure_keeps_unfiltered(self, processor, loader, profiled_options, token):
        loader.load_by_id.side_effect = RiskProfileError("Invalid YAML")

        result = await processor.process_one(EntityRecord(name="Acme"), 0, profiled_options, token)

        assert result.status is EntityResultStatus.SUCCESS
        assert result.project_entity == screened_entity()

    @pytest.mark.asyncio
    async def test_filter_failure_keeps_unfiltered(self, processor, client, profiled_options, token):
        malformed = {"project_entity_id": "pe-1", "risk_factors": [{"name": "no id"}]}
        client.screen.return_value = malformed

        result = await processor.process_one(EntityRecord(name="Acme"), 0, profiled_options, token)

        assert result.status is EntityResultStatus.SUCCESS
        assert result.project_entity == malformed

    @pytest.mark.asyncio
    async def test_no_loader_keeps_unfiltered(self, client, limiter, profiled_options, token):
        processor = EntityProcessor(client, limiter)

        result = await processor.process_one(EntityRecord(name="Acme"), 0, profiled_options, token)

        assert result.project_entity == screened_entity()

    def test_filter_does_not_mutate_input(self, profile):
        original = screened_entity()

        filtered = filter_entity_risk_factors(original, profile)

        assert original == screened_entity()
        assert filtered is not original

    def test_no_score_when_scoring_disabled(self):
        profile = RiskProfile(id="p", name="p", enabled_factors=frozenset({"sanctioned"}))

        filtered = filter_entity_risk_factors(screened_entity(), profile)

        assert "risk_score" not in filtered
        assert filtered["risk_factors"] == [{"id": "sanctioned"}]
