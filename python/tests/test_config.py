"""
Tests for configuration loading and logging setup.
"""

import logging
from pathlib import Path

import pytest

from config_manager import ConfigManager, ConfigurationError, LoggingConfig, get_config
from log_utils import sanitize_for_logging, setup_logging

BUNDLED_CONFIG = Path(__file__).parent.parent / "config.yaml"


def write_config(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


class TestConfigManager:
    """Tests for YAML parsing, defaults and validation."""

    def test_bundled_config(self):
        config = ConfigManager(str(BUNDLED_CONFIG))

        assert config.rate_limit.max_requests == 5
        assert config.rate_limit.window_ms == 1000
        assert config.rate_limit.inter_request_delay_ms == 200
        assert config.batch.max_chunk_size == 20
        assert config.batch.default_matching_profile == "corporate"
        assert config.risk_profiles.directory == "risk_profiles"

    def test_missing_sections_use_defaults(self, tmp_path):
        config = ConfigManager(write_config(tmp_path, "batch:\n  max_entities: 50\n"))

        assert config.batch.max_entities == 50
        assert config.batch.history_limit == 20
        assert config.rate_limit.max_rate_limit_retries == 3
        assert config.database.port == 5432

    def test_missing_file_uses_defaults(self, tmp_path):
        config = ConfigManager(str(tmp_path / "absent.yaml"))

        assert config.batch.max_entities == 1000

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SCREENING_API_CLIENT_ID", "client-from-env")
        monkeypatch.setenv("SCREENING_API_CLIENT_SECRET", "secret-from-env")
        monkeypatch.setenv("RISK_PROFILES_DIR", "/etc/profiles")

        config = ConfigManager(write_config(tmp_path, "screening_api:\n  client_id: from-file\n"))

        assert config.screening_api.client_id == "client-from-env"
        assert config.screening_api.client_secret == "secret-from-env"
        assert config.risk_profiles.directory == "/etc/profiles"

    def test_secrets_not_exported(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SCREENING_API_CLIENT_SECRET", "secret-from-env")
        config = ConfigManager(write_config(tmp_path, ""))

        exported = config.to_dict()

        assert "client_secret" not in exported["screening_api"]
        assert "password" not in exported["database"]

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigManager(write_config(tmp_path, "batch: [unclosed\n"))

    def test_non_mapping(self, tmp_path):
        with pytest.raises(ConfigurationError):
            ConfigManager(write_config(tmp_path, "- a\n- b\n"))

    @pytest.mark.parametrize("text", [
        "rate_limit:\n  max_requests: 0\n",
        "rate_limit:\n  window_ms: -5\n",
        "rate_limit:\n  max_rate_limit_retries: -1\n",
        "batch:\n  default_matching_profile: everything\n",
        "batch:\n  retained_jobs: 0\n",
        "batch:\n  default_chunk_size: 50\n  max_chunk_size: 20\n",
    ])
    def test_invalid_values(self, tmp_path, text):
        with pytest.raises(ConfigurationError):
            ConfigManager(write_config(tmp_path, text))

    def test_singleton(self, tmp_path):
        path = write_config(tmp_path, "")

        assert get_config(path) is get_config()
        ConfigManager.reset_instance()
        assert get_config(path) is not None


class TestLogging:
    """Tests for handler setup and log sanitizing."""

    @pytest.fixture
    def restore_root_logger(self):
        root = logging.getLogger()
        level, handlers = root.level, list(root.handlers)
        yield root
        for handler in list(root.handlers):
            if handler not in handlers:
                root.removeHandler(handler)
                handler.close()
        root.setLevel(level)

    def test_setup_is_idempotent(self, tmp_path, restore_root_logger):
        log_file = tmp_path / "logs" / "batch.log"
        config = LoggingConfig(level="DEBUG", file=str(log_file))

        setup_logging(config)
        setup_logging(config)

        installed = [h for h in restore_root_logger.handlers if getattr(h, "_batch_screening", False)]
        assert len(installed) == 2
        assert restore_root_logger.level == logging.DEBUG
        assert log_file.parent.exists()

    def test_unknown_level_falls_back_to_info(self, restore_root_logger):
        setup_logging(LoggingConfig(level="LOUD", console=False))

        assert restore_root_logger.level == logging.INFO

    def test_sanitize_strips_control_characters(self):
        assert sanitize_for_logging("Acme\nFAKE ENTRY\r\x00") == "Acme FAKE ENTRY"
        assert sanitize_for_logging("") == ""
        assert len(sanitize_for_logging("x" * 600)) == 500
