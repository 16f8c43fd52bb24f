"""Unit tests for configuration module."""

import logging
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from agent_workflow_engine.config import EngineSettings, configure_logging, load_settings


class TestEngineSettings:
    """Test EngineSettings defaults and environment overrides."""

    def test_defaults(self):
        settings = EngineSettings()

        assert settings.worker.command == ["claude"]
        assert settings.worker.inactivity_timeout == 120.0
        assert settings.engine.parse_retries == 2
        assert settings.engine.timeout_retries == 1
        assert settings.recovery.max_request_age == 900
        assert "Bash" in settings.worker.disallowed_tools

    def test_env_overrides(self):
        settings = EngineSettings().apply_env(
            {"R2_UPLOAD_URL": "https://blob.example.com/upload", "MCP_ROUTER_PATH": "/opt/router/index.js"}
        )

        assert settings.blob.upload_url == "https://blob.example.com/upload"
        assert settings.worker.tool_router_command == ["node", "/opt/router/index.js"]

    def test_env_ignored_when_unset(self):
        settings = EngineSettings().apply_env({})

        assert settings.blob.upload_url == "http://localhost:8080/assets/upload"

    def test_invalid_timeout_rejected(self):
        with pytest.raises(ValidationError):
            EngineSettings.model_validate({"worker": {"inactivity_timeout": 0}})


class TestLoadSettings:
    """Test load_settings function."""

    def test_load_valid_settings(self, tmp_path: Path):
        path = tmp_path / "settings.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "worker": {"command": ["worker-cli"], "inactivity_timeout": 30},
                    "engine": {"parse_retries": 1},
                }
            )
        )

        settings = load_settings(path, environ={})

        assert settings.worker.command == ["worker-cli"]
        assert settings.worker.inactivity_timeout == 30
        assert settings.engine.parse_retries == 1
        assert settings.engine.timeout_retries == 1

    def test_load_empty_file(self, tmp_path: Path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        settings = load_settings(path, environ={})

        assert settings == EngineSettings()

    def test_load_nonexistent_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError, match="Settings file not found"):
            load_settings(tmp_path / "missing.yaml")

    def test_load_invalid_structure(self, tmp_path: Path):
        path = tmp_path / "bad.yaml"
        path.write_text("engine:\n  parse_retries: lots\n")

        with pytest.raises(ValidationError):
            load_settings(path, environ={})

    def test_environment_applied_after_file(self, tmp_path: Path):
        path = tmp_path / "settings.yaml"
        path.write_text("blob:\n  upload_url: http://file.example.com\n")

        settings = load_settings(path, environ={"R2_UPLOAD_URL": "http://env.example.com"})

        assert settings.blob.upload_url == "http://env.example.com"


class TestLogging:
    def test_http_loggers_quieted(self):
        configure_logging("debug")

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("httpcore").level == logging.WARNING
