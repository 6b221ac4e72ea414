"""
Risk profile loading and risk-factor filtering

Risk profiles are YAML documents stored one per file in the configured
directory (``<directory>/<profile_id>.yaml``). A profile enumerates the risk
factor ids that are enabled for reporting and, optionally, per-factor points
and a threshold for scoring.
"""

import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

logger = logging.getLogger(__name__)

_PROFILE_ID = re.compile(r"^[A-Za-z0-9_-]{1,100}$")


class RiskProfileError(Exception):
    """Raised when a risk profile file exists but cannot be used."""
    pass


@dataclass(frozen=True)
class RiskProfile:
    """A named set of enabled risk factors"""
    id: str
    name: str
    enabled_factors: frozenset
    description: str = ""
    is_default: bool = False
    risk_scoring_enabled: bool = False
    risk_threshold: int = 5
    risk_scores: Dict[str, int] = field(default_factory=dict)

    def is_enabled(self, factor_id: str) -> bool:
        return factor_id in self.enabled_factors


@dataclass(frozen=True)
class RiskScore:
    """Points accumulated from triggered risk factors"""
    total_score: int
    triggered: Dict[str, int]
    meets_threshold: bool
    threshold: int


def filter_by_profile(
    risk_factors: Optional[Iterable[Dict[str, Any]]],
    profile: Optional[RiskProfile]
) -> Optional[List[Dict[str, Any]]]:
    """Keep only the risk factors the profile enables.

    Args:
        risk_factors: Risk factor dicts, each with an ``id`` key (None passes through)
        profile: Loaded profile; None means no filtering

    Returns:
        Filtered list, or the input unchanged when there is nothing to filter
    """
    if risk_factors is None:
        return None
    if profile is None:
        return list(risk_factors)
    return [rf for rf in risk_factors if profile.is_enabled(rf.get("id"))]


def calculate_risk_score(triggered_factor_ids: Iterable[str], profile: RiskProfile) -> RiskScore:
    """Sum the profile's points for the triggered factors."""
    if not profile.risk_scoring_enabled:
        return RiskScore(total_score=0, triggered={}, meets_threshold=False, threshold=0)

    triggered = {}
    for factor_id in triggered_factor_ids:
        points = profile.risk_scores.get(factor_id, 0)
        if points > 0:
            triggered[factor_id] = points

    total = sum(triggered.values())
    return RiskScore(
        total_score=total,
        triggered=triggered,
        meets_threshold=total >= profile.risk_threshold,
        threshold=profile.risk_threshold,
    )


class RiskProfileLoader:
    """Loads risk profiles by id from a directory of YAML files.

    Parsed profiles are cached per id; call ``invalidate()`` after editing
    profile files.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self._cache: Dict[str, RiskProfile] = {}
        self._lock = threading.Lock()

    def load_by_id(self, profile_id: str) -> Optional[RiskProfile]:
        """Load a profile.

        Returns:
            The profile, or None if no file exists for the id

        Raises:
            RiskProfileError: If the id is malformed or the file is invalid
        """
        if not profile_id or not _PROFILE_ID.match(profile_id):
            raise RiskProfileError(f"Invalid risk profile id: {profile_id!r}")

        with self._lock:
            cached = self._cache.get(profile_id)
        if cached is not None:
            return cached

        path = self.directory / f"{profile_id}.yaml"
        if not path.exists():
            logger.warning("Risk profile not found: %s", profile_id)
            return None

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RiskProfileError(f"Invalid YAML in risk profile {profile_id}: {e}")

        profile = self._build_profile(profile_id, data)
        with self._lock:
            self._cache[profile_id] = profile
        return profile

    def invalidate(self, profile_id: Optional[str] = None) -> None:
        with self._lock:
            if profile_id is None:
                self._cache.clear()
            else:
                self._cache.pop(profile_id, None)

    @staticmethod
    def _build_profile(profile_id: str, data: Any) -> RiskProfile:
        if not isinstance(data, dict):
            raise RiskProfileError(f"Risk profile {profile_id} must be a mapping")

        enabled = data.get("enabled_factors") or []
        if not isinstance(enabled, list):
            raise RiskProfileError(f"Risk profile {profile_id}: enabled_factors must be a list")

        # Older profiles call the points table risk_points
        scores = data.get("risk_scores") or data.get("risk_points") or {}
        threshold = data.get("risk_threshold")
        try:
            return RiskProfile(
                id=profile_id,
                name=str(data.get("name") or profile_id),
                description=str(data.get("description") or ""),
                enabled_factors=frozenset(str(f) for f in enabled),
                is_default=bool(data.get("is_default", False)),
                risk_scoring_enabled=bool(data.get("risk_scoring_enabled", False)),
                risk_threshold=5 if threshold is None else int(threshold),
                risk_scores={str(k): int(v) for k, v in scores.items()},
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise RiskProfileError(f"Risk profile {profile_id}: invalid numeric value ({e})")
