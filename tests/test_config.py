"""Tests for configuration loading, validation and hot reload."""

import os
import time
from pathlib import Path
from typing import Any

import pytest
from pydantic import ValidationError

from mailsync.config import (
    get_config,
    load_config,
    reload_config_if_changed,
    validate_config_file,
)
from mailsync.config_schema import AppConfig
from mailsync.core.errors import ConfigLoadError, ConfigValidationError


class TestAppConfigSchema:
    """Tests for the Pydantic schema."""

    def test_defaults(self) -> None:
        """Test that an empty mapping yields a fully defaulted config."""
        config = AppConfig()
        assert config.account == "default"
        assert config.prefetch.enabled is True
        assert config.prefetch.concurrency == 3
        assert config.poller.folder == "INBOX"
        assert config.cache.debounce_ms == 500

    def test_sample_config(self, sample_config: AppConfig) -> None:
        """Test that the sample fixture overrides defaults."""
        assert sample_config.account == "alice@example.com"
        assert sample_config.prefetch.limit == 20
        assert sample_config.api.timeout_seconds == 10

    def test_base_url_trailing_slash_stripped(self) -> None:
        """Test that base_url is normalized."""
        config = AppConfig(api={"base_url": "https://mail.example.com/api/"})
        assert config.api.base_url == "https://mail.example.com/api"

    def test_base_url_requires_scheme(self) -> None:
        """Test that a bare host is rejected."""
        with pytest.raises(ValidationError):
            AppConfig(api={"base_url": "mail.example.com"})

    @pytest.mark.parametrize("account", ["", "   ", "alice:work"])
    def test_invalid_account(self, account: str) -> None:
        """Test that empty accounts and colons are rejected."""
        with pytest.raises(ValidationError):
            AppConfig(account=account)

    def test_db_path_traversal_rejected(self) -> None:
        """Test that '..' in the database path is refused."""
        with pytest.raises(ValidationError):
            AppConfig(storage={"db_path": "../outside.db"})

    @pytest.mark.parametrize(
        "override",
        [
            {"prefetch": {"concurrency": 0}},
            {"prefetch": {"quota_threshold": 1.5}},
            {"mutation_queue": {"max_retries": 0}},
            {"poller": {"interval_minutes": 0}},
        ],
    )
    def test_out_of_range_values(self, override: dict[str, Any]) -> None:
        """Test that numeric bounds are enforced."""
        with pytest.raises(ValidationError):
            AppConfig(**override)

    def test_logging_json_alias(self) -> None:
        """Test that the YAML key 'json' maps to json_output."""
        config = AppConfig(logging={"level": "DEBUG", "json": True})
        assert config.logging.json_output is True


class TestLoadConfig:
    """Tests for loading from disk."""

    def test_load_config_file(self, config_file: Path) -> None:
        """Test that a valid file loads."""
        config = load_config(config_file)
        assert config.account == "alice@example.com"
        assert config.api.base_url == "https://mail.example.com/api"

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing file raises ConfigLoadError with guidance."""
        with pytest.raises(ConfigLoadError) as exc_info:
            load_config(tmp_path / "missing.yaml")
        assert "config.yaml.example" in str(exc_info.value)

    def test_invalid_yaml(self, temp_config_dir: Path) -> None:
        """Test that malformed YAML raises ConfigLoadError."""
        path = temp_config_dir / "config.yaml"
        path.write_text("account: [unclosed")
        with pytest.raises(ConfigLoadError):
            load_config(path)

    def test_non_mapping_yaml(self, temp_config_dir: Path) -> None:
        """Test that a YAML list is refused."""
        path = temp_config_dir / "config.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigLoadError):
            load_config(path)

    def test_empty_file_uses_defaults(self, temp_config_dir: Path) -> None:
        """Test that an empty file is a default config."""
        path = temp_config_dir / "config.yaml"
        path.write_text("")
        assert load_config(path).account == "default"

    def test_validation_errors_name_the_field(self, temp_config_dir: Path) -> None:
        """Test that validation messages point at the failing field."""
        path = temp_config_dir / "config.yaml"
        path.write_text("prefetch:\n  concurrency: 0\n")
        with pytest.raises(ConfigValidationError) as exc_info:
            load_config(path)
        assert "prefetch.concurrency" in str(exc_info.value)

    def test_newer_schema_version_rejected(self, temp_config_dir: Path) -> None:
        """Test that a config from a newer release is refused."""
        path = temp_config_dir / "config.yaml"
        path.write_text("schema_version: 99\n")
        with pytest.raises(ConfigValidationError):
            load_config(path)


class TestConfigSingleton:
    """Tests for get_config and hot reload."""

    def test_get_config_uses_env_path(self, set_config_env: None) -> None:
        """Test that MAILSYNC_CONFIG_PATH is honored and cached."""
        first = get_config()
        assert first.account == "alice@example.com"
        assert get_config() is first

    def test_reload_without_load_is_noop(self) -> None:
        """Test that reload before any load does nothing."""
        assert reload_config_if_changed() is False

    def test_reload_picks_up_changes(self, set_config_env: None, config_file: Path) -> None:
        """Test that a newer mtime triggers a reload."""
        get_config()
        config_file.write_text(config_file.read_text().replace("alice", "carol"))
        future = time.time() + 10
        os.utime(config_file, (future, future))

        assert reload_config_if_changed() is True
        assert get_config().account == "carol@example.com"

    def test_reload_keeps_previous_on_invalid_edit(
        self, set_config_env: None, config_file: Path
    ) -> None:
        """Test that a broken edit keeps the last good config."""
        get_config()
        config_file.write_text("prefetch:\n  limit: -1\n")
        future = time.time() + 10
        os.utime(config_file, (future, future))

        assert reload_config_if_changed() is False
        assert get_config().account == "alice@example.com"


class TestValidateConfigFile:
    """Tests for the validate-config helper."""

    def test_valid_file(self, config_file: Path) -> None:
        """Test the summary for a valid file."""
        ok, message = validate_config_file(config_file)
        assert ok is True
        assert "alice@example.com" in message

    def test_invalid_file(self, temp_config_dir: Path) -> None:
        """Test the message for an invalid file."""
        path = temp_config_dir / "config.yaml"
        path.write_text("account: ''\n")
        ok, message = validate_config_file(path)
        assert ok is False
        assert message.startswith("Validation error")
