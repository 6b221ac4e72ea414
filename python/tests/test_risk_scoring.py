"""
Tests for risk profile loading, filtering and scoring.
"""

from pathlib import Path

import pytest

from risk_scoring import (
    RiskProfile,
    RiskProfileError,
    RiskProfileLoader,
    calculate_risk_score,
    filter_by_profile,
)

PROFILES_DIR = Path(__file__).parent.parent / "risk_profiles"


@pytest.fixture
def profile_dir(tmp_path):
    (tmp_path / "suppliers.yaml").write_text(
        "name: Suppliers\n"
        "enabled_factors:\n"
        "  - sanctioned\n"
        "  - pep\n"
        "risk_scoring_enabled: true\n"
        "risk_threshold: 4\n"
        "risk_points:\n"
        "  sanctioned: 5\n"
        "  pep: 1\n",
        encoding="utf-8",
    )
    (tmp_path / "broken.yaml").write_text("enabled_factors: [unclosed\n", encoding="utf-8")
    (tmp_path / "scalar.yaml").write_text("just a string\n", encoding="utf-8")
    (tmp_path / "badlist.yaml").write_text("enabled_factors: sanctioned\n", encoding="utf-8")
    return tmp_path


class TestRiskProfileLoader:
    """Tests for reading profiles from YAML files."""

    def test_bundled_default_profile(self):
        profile = RiskProfileLoader(str(PROFILES_DIR)).load_by_id("default")

        assert profile.is_default
        assert profile.is_enabled("sanctioned")
        assert profile.risk_scoring_enabled

    def test_load_with_legacy_points_key(self, profile_dir):
        profile = RiskProfileLoader(str(profile_dir)).load_by_id("suppliers")

        assert profile.name == "Suppliers"
        assert profile.enabled_factors == frozenset({"sanctioned", "pep"})
        assert profile.risk_scores == {"sanctioned": 5, "pep": 1}
        assert profile.risk_threshold == 4

    def test_explicit_zero_threshold_kept(self, tmp_path):
        (tmp_path / "strict.yaml").write_text(
            "enabled_factors: [pep]\nrisk_scoring_enabled: true\nrisk_threshold: 0\n",
            encoding="utf-8",
        )
        (tmp_path / "plain.yaml").write_text("enabled_factors: [pep]\n", encoding="utf-8")
        loader = RiskProfileLoader(str(tmp_path))

        assert loader.load_by_id("strict").risk_threshold == 0
        assert loader.load_by_id("plain").risk_threshold == 5

    def test_non_numeric_threshold(self, tmp_path):
        (tmp_path / "odd.yaml").write_text("risk_threshold: high\n", encoding="utf-8")

        with pytest.raises(RiskProfileError):
            RiskProfileLoader(str(tmp_path)).load_by_id("odd")

    def test_missing_profile(self, profile_dir):
        assert RiskProfileLoader(str(profile_dir)).load_by_id("nope") is None

    @pytest.mark.parametrize("profile_id", ["broken", "scalar", "badlist"])
    def test_invalid_profiles(self, profile_dir, profile_id):
        with pytest.raises(RiskProfileError):
            RiskProfileLoader(str(profile_dir)).load_by_id(profile_id)

    @pytest.mark.parametrize("profile_id", ["", "../secrets", "a b"])
    def test_invalid_ids(self, profile_dir, profile_id):
        with pytest.raises(RiskProfileError):
            RiskProfileLoader(str(profile_dir)).load_by_id(profile_id)

    def test_cache_and_invalidate(self, profile_dir):
        loader = RiskProfileLoader(str(profile_dir))
        first = loader.load_by_id("suppliers")

        (profile_dir / "suppliers.yaml").write_text(
            "name: Changed\nenabled_factors: [pep]\n", encoding="utf-8"
        )
        assert loader.load_by_id("suppliers") is first

        loader.invalidate("suppliers")
        assert loader.load_by_id("suppliers").name == "Changed"


class TestFiltering:

    @pytest.fixture
    def profile(self):
        return RiskProfile(id="p", name="p", enabled_factors=frozenset({"sanctioned"}))

    def test_keeps_enabled_factors(self, profile):
        factors = [{"id": "sanctioned"}, {"id": "pep"}, {"id": "sanctioned", "source": "UN"}]

        assert filter_by_profile(factors, profile) == [
            {"id": "sanctioned"}, {"id": "sanctioned", "source": "UN"},
        ]

    def test_passthrough(self, profile):
        assert filter_by_profile(None, profile) is None
        assert filter_by_profile([{"id": "pep"}], None) == [{"id": "pep"}]


class TestScoring:
    """Tests for threshold scoring."""

    @pytest.fixture
    def profile(self):
        return RiskProfile(
            id="p", name="p",
            enabled_factors=frozenset({"sanctioned", "pep", "adverse_media"}),
            risk_scoring_enabled=True,
            risk_threshold=5,
            risk_scores={"sanctioned": 5, "pep": 1, "adverse_media": 0},
        )

    def test_sums_triggered_points(self, profile):
        score = calculate_risk_score(["sanctioned", "pep", "adverse_media", "unknown"], profile)

        assert score.total_score == 6
        assert score.triggered == {"sanctioned": 5, "pep": 1}
        assert score.meets_threshold
        assert score.threshold == 5

    def test_below_threshold(self, profile):
        score = calculate_risk_score(["pep"], profile)

        assert score.total_score == 1
        assert not score.meets_threshold

    def test_scoring_disabled(self):
        profile = RiskProfile(id="p", name="p", enabled_factors=frozenset({"pep"}),
                              risk_scores={"pep": 3})

        score = calculate_risk_score(["pep"], profile)

        assert score.total_score == 0
        assert not score.meets_threshold
