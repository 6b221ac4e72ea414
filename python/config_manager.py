"""
Configuration for the batch screening service

config.yaml is parsed into one dataclass per section (rate_limit, batch,
screening_api, risk_profiles, logging, database). Missing keys fall back to
the dataclass defaults; secrets can be supplied through the environment.
"""

import os
import yaml
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)

MATCHING_PROFILES = ("corporate", "suppliers", "search", "screen")


@dataclass
class DatabaseConfig:
    """Database configuration"""
    host: str = "localhost"
    port: int = 5432
    user: str = "screening_user"
    password: str = "screening_password"
    name: str = "screening_database"


@dataclass
class RateLimitConfig:
    """Outbound request pacing for the screening API"""
    max_requests: int = 5
    window_ms: int = 1000
    inter_request_delay_ms: int = 200
    default_retry_after_ms: int = 5000
    backoff_margin_ms: int = 1000
    max_backoff_ms: int = 30000
    max_rate_limit_retries: int = 3


@dataclass
class BatchConfig:
    """Batch job configuration"""
    default_chunk_size: int = 10
    max_chunk_size: int = 20
    max_entities: int = 1000
    inter_entity_delay_ms: int = 500
    default_matching_profile: str = "corporate"
    history_limit: int = 20
    retained_jobs: int = 100


@dataclass
class ScreeningApiConfig:
    """Screening API connection settings"""
    base_url: str = "https://api.develop.sayari.com"
    client_id: str = ""
    client_secret: str = ""
    audience: str = "sayari.com"
    timeout_seconds: float = 30.0
    token_refresh_buffer_seconds: int = 300


@dataclass
class RiskProfilesConfig:
    """Risk profile storage"""
    directory: str = "risk_profiles"


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: str = ""
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class ConfigurationError(Exception):
    """Raised when config.yaml is unreadable or holds invalid values"""
    pass


CONFIG_FILENAME = "config.yaml"


class ConfigManager:
    """Typed view over config.yaml plus environment overrides"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """
        Args:
            config_path: Explicit config file; searched for when omitted
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.rate_limit = RateLimitConfig()
        self.batch = BatchConfig()
        self.screening_api = ScreeningApiConfig()
        self.risk_profiles = RiskProfilesConfig()
        self.logging = LoggingConfig()
        self.database = DatabaseConfig()

        if self.config_path.exists():
            self.load()
            return

        logger.warning("No config file at %s, running on defaults", self.config_path)
        self._apply_env_overrides()
        self._validate()

    @staticmethod
    def _find_config() -> Path:
        """First existing config.yaml: next to this module, then the working directory"""
        candidates = (
            Path(__file__).resolve().parent,
            Path.cwd(),
            Path.cwd() / "python",
        )
        for directory in candidates:
            path = directory / CONFIG_FILENAME
            if path.is_file():
                return path
        return candidates[0] / CONFIG_FILENAME

    def load(self) -> None:
        """(Re)read the file, then apply env overrides and validate"""
        try:
            raw = yaml.safe_load(self.config_path.read_text(encoding='utf-8'))
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file {self.config_path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {self.config_path}: {e}")

        raw = raw or {}
        if not isinstance(raw, dict):
            raise ConfigurationError("Config file must contain a mapping at the top level")
        self._raw_config = raw

        for parse in (
            self._parse_rate_limit,
            self._parse_batch,
            self._parse_screening_api,
            self._parse_risk_profiles,
            self._parse_logging,
            self._parse_database,
        ):
            parse()
        self._apply_env_overrides()
        self._validate()

    def _section(self, name: str) -> Dict[str, Any]:
        section = self._raw_config.get(name) or {}
        if not isinstance(section, dict):
            raise ConfigurationError(f"Config section '{name}' must be a mapping")
        return section

    def _parse_database(self) -> None:
        cfg = self._section('database')
        defaults = DatabaseConfig()
        self.database = DatabaseConfig(
            host=cfg.get('host', defaults.host),
            port=cfg.get('port', defaults.port),
            user=cfg.get('user', defaults.user),
            password=cfg.get('password', defaults.password),
            name=cfg.get('name', defaults.name)
        )

    def _parse_rate_limit(self) -> None:
        """Parse rate limiter configuration"""
        cfg = self._section('rate_limit')
        defaults = RateLimitConfig()
        self.rate_limit = RateLimitConfig(
            max_requests=cfg.get('max_requests', defaults.max_requests),
            window_ms=cfg.get('window_ms', defaults.window_ms),
            inter_request_delay_ms=cfg.get('inter_request_delay_ms', defaults.inter_request_delay_ms),
            default_retry_after_ms=cfg.get('default_retry_after_ms', defaults.default_retry_after_ms),
            backoff_margin_ms=cfg.get('backoff_margin_ms', defaults.backoff_margin_ms),
            max_backoff_ms=cfg.get('max_backoff_ms', defaults.max_backoff_ms),
            max_rate_limit_retries=cfg.get('max_rate_limit_retries', defaults.max_rate_limit_retries)
        )

    def _parse_batch(self) -> None:
        """Parse batch job configuration"""
        cfg = self._section('batch')
        defaults = BatchConfig()
        self.batch = BatchConfig(
            default_chunk_size=cfg.get('default_chunk_size', defaults.default_chunk_size),
            max_chunk_size=cfg.get('max_chunk_size', defaults.max_chunk_size),
            max_entities=cfg.get('max_entities', defaults.max_entities),
            inter_entity_delay_ms=cfg.get('inter_entity_delay_ms', defaults.inter_entity_delay_ms),
            default_matching_profile=cfg.get('default_matching_profile', defaults.default_matching_profile),
            history_limit=cfg.get('history_limit', defaults.history_limit),
            retained_jobs=cfg.get('retained_jobs', defaults.retained_jobs)
        )

    def _parse_screening_api(self) -> None:
        """Parse screening API configuration"""
        cfg = self._section('screening_api')
        defaults = ScreeningApiConfig()
        self.screening_api = ScreeningApiConfig(
            base_url=cfg.get('base_url', defaults.base_url),
            client_id=cfg.get('client_id', defaults.client_id),
            client_secret=cfg.get('client_secret', defaults.client_secret),
            audience=cfg.get('audience', defaults.audience),
            timeout_seconds=cfg.get('timeout_seconds', defaults.timeout_seconds),
            token_refresh_buffer_seconds=cfg.get(
                'token_refresh_buffer_seconds', defaults.token_refresh_buffer_seconds
            )
        )

    def _parse_risk_profiles(self) -> None:
        """Parse risk profile configuration"""
        cfg = self._section('risk_profiles')
        self.risk_profiles = RiskProfilesConfig(
            directory=cfg.get('directory', self.risk_profiles.directory)
        )

    def _parse_logging(self) -> None:
        cfg = self._section('logging')
        defaults = LoggingConfig()
        self.logging = LoggingConfig(
            level=str(cfg.get('level', defaults.level)),
            file=cfg.get('file') or defaults.file,
            console=bool(cfg.get('console', defaults.console)),
            format=cfg.get('format', defaults.format)
        )

    def _apply_env_overrides(self) -> None:
        """Secrets and endpoints may come from the environment instead of the file"""
        api = self.screening_api
        api.base_url = os.getenv("SCREENING_API_BASE_URL", api.base_url)
        api.client_id = os.getenv("SCREENING_API_CLIENT_ID", api.client_id)
        api.client_secret = os.getenv("SCREENING_API_CLIENT_SECRET", api.client_secret)

        self.risk_profiles.directory = os.getenv("RISK_PROFILES_DIR", self.risk_profiles.directory)
        self.logging.level = os.getenv("LOG_LEVEL", self.logging.level)

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary (secrets omitted)"""
        return {
            'rate_limit': {
                'max_requests': self.rate_limit.max_requests,
                'window_ms': self.rate_limit.window_ms,
                'inter_request_delay_ms': self.rate_limit.inter_request_delay_ms,
                'default_retry_after_ms': self.rate_limit.default_retry_after_ms,
                'backoff_margin_ms': self.rate_limit.backoff_margin_ms,
                'max_backoff_ms': self.rate_limit.max_backoff_ms,
                'max_rate_limit_retries': self.rate_limit.max_rate_limit_retries
            },
            'batch': {
                'default_chunk_size': self.batch.default_chunk_size,
                'max_chunk_size': self.batch.max_chunk_size,
                'max_entities': self.batch.max_entities,
                'inter_entity_delay_ms': self.batch.inter_entity_delay_ms,
                'default_matching_profile': self.batch.default_matching_profile,
                'history_limit': self.batch.history_limit,
                'retained_jobs': self.batch.retained_jobs
            },
            'screening_api': {
                'base_url': self.screening_api.base_url,
                'audience': self.screening_api.audience,
                'timeout_seconds': self.screening_api.timeout_seconds
            },
            'risk_profiles': {
                'directory': self.risk_profiles.directory
            },
            'database': {
                'host': self.database.host,
                'port': self.database.port,
                'user': self.database.user,
                'name': self.database.name
            }
        }

    def _validate(self) -> None:
        """Validate configuration values"""
        errors: List[str] = []

        positive_fields = {
            'rate_limit.max_requests': self.rate_limit.max_requests,
            'rate_limit.window_ms': self.rate_limit.window_ms,
            'rate_limit.max_backoff_ms': self.rate_limit.max_backoff_ms,
            'batch.default_chunk_size': self.batch.default_chunk_size,
            'batch.max_chunk_size': self.batch.max_chunk_size,
            'batch.max_entities': self.batch.max_entities,
            'batch.history_limit': self.batch.history_limit,
            'batch.retained_jobs': self.batch.retained_jobs,
        }
        for name, value in positive_fields.items():
            if not isinstance(value, int) or value <= 0:
                errors.append(f"{name} must be a positive integer (got {value!r})")

        non_negative_fields = {
            'rate_limit.inter_request_delay_ms': self.rate_limit.inter_request_delay_ms,
            'rate_limit.default_retry_after_ms': self.rate_limit.default_retry_after_ms,
            'rate_limit.backoff_margin_ms': self.rate_limit.backoff_margin_ms,
            'rate_limit.max_rate_limit_retries': self.rate_limit.max_rate_limit_retries,
            'batch.inter_entity_delay_ms': self.batch.inter_entity_delay_ms,
        }
        for name, value in non_negative_fields.items():
            if not isinstance(value, int) or value < 0:
                errors.append(f"{name} must be a non-negative integer (got {value!r})")

        if self.batch.default_matching_profile not in MATCHING_PROFILES:
            errors.append(
                f"batch.default_matching_profile must be one of {', '.join(MATCHING_PROFILES)}"
            )

        if not errors and self.batch.default_chunk_size > self.batch.max_chunk_size:
            errors.append("batch.default_chunk_size cannot exceed batch.max_chunk_size")

        if errors:
            raise ConfigurationError("; ".join(errors))


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
