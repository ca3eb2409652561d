"""Tests for environment overrides and logging configuration."""

from __future__ import annotations

from collections.abc import Iterator
import logging
from pathlib import Path

from assessment_pipeline.models import GatewaySettings
from assessment_pipeline.orchestrator import apply_env_overrides, configure_logging
import pytest

from tests.conftest import make_config

_ENV_VARS = (
    "ASSESSMENT_LOG_LEVEL",
    "ASSESSMENT_GATEWAY_URL",
    "ASSESSMENT_MAX_RETRY_ATTEMPTS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def pkg_logger() -> Iterator[logging.Logger]:
    """Yield the package logger and restore its handlers and level afterwards."""
    pkg = logging.getLogger("assessment_pipeline")
    saved_handlers = list(pkg.handlers)
    saved_level = pkg.level
    yield pkg
    for handler in pkg.handlers:
        if handler not in saved_handlers:
            handler.close()
    pkg.handlers = saved_handlers
    pkg.setLevel(saved_level)


@pytest.mark.unit
class TestApplyEnvOverrides:
    """ASSESSMENT_* variables override default values only."""

    def test_no_env_returns_same_config(self) -> None:
        config = make_config()
        assert apply_env_overrides(config) is config

    def test_overrides_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ASSESSMENT_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("ASSESSMENT_GATEWAY_URL", "https://eval.example.com")
        monkeypatch.setenv("ASSESSMENT_MAX_RETRY_ATTEMPTS", "2")

        config = apply_env_overrides(make_config())

        assert config.log_level == "DEBUG"
        assert config.gateway.base_url == "https://eval.example.com"
        assert config.max_retry_attempts == 2

    def test_gateway_override_keeps_timeout_and_headers(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("ASSESSMENT_GATEWAY_URL", "http://10.0.0.5:8000")
        base = make_config(
            gateway=GatewaySettings(timeout_seconds=5.0, headers={"X-Tenant": "acme"})
        )

        config = apply_env_overrides(base)

        assert config.gateway.base_url == "http://10.0.0.5:8000"
        assert config.gateway.timeout_seconds == 5.0
        assert config.gateway.headers == {"X-Tenant": "acme"}

    def test_explicit_values_win(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ASSESSMENT_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("ASSESSMENT_MAX_RETRY_ATTEMPTS", "5")
        base = make_config(log_level="WARNING", max_retry_attempts=3)

        config = apply_env_overrides(base)

        assert config.log_level == "WARNING"
        assert config.max_retry_attempts == 3

    @pytest.mark.parametrize(
        ("name", "value"),
        [
            ("ASSESSMENT_GATEWAY_URL", "ftp://eval.example.com"),
            ("ASSESSMENT_MAX_RETRY_ATTEMPTS", "many"),
            ("ASSESSMENT_MAX_RETRY_ATTEMPTS", "-1"),
            ("ASSESSMENT_LOG_LEVEL", "   "),
        ],
    )
    def test_invalid_values_ignored(
        self, monkeypatch: pytest.MonkeyPatch, name: str, value: str
    ) -> None:
        monkeypatch.setenv(name, value)
        config = make_config()
        assert apply_env_overrides(config) is config


@pytest.mark.unit
class TestConfigureLogging:
    """configure_logging installs handlers once."""

    def test_sets_level_and_console_handler(self, pkg_logger: logging.Logger) -> None:
        configure_logging(make_config(log_level="debug"))
        configure_logging(make_config(log_level="debug"))

        consoles = [h for h in pkg_logger.handlers if type(h) is logging.StreamHandler]
        assert len(consoles) == 1
        assert pkg_logger.level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self, pkg_logger: logging.Logger) -> None:
        configure_logging(make_config(log_level="chatty"))
        assert pkg_logger.level == logging.INFO

    def test_file_handler_added_once(self, pkg_logger: logging.Logger, tmp_path: Path) -> None:
        log_file = tmp_path / "assessment.log"
        config = make_config(log_file=str(log_file))

        configure_logging(config)
        configure_logging(config)
        logging.getLogger("assessment_pipeline.orchestrator").warning("hello file")
        for handler in pkg_logger.handlers:
            handler.flush()

        files = [h for h in pkg_logger.handlers if isinstance(h, logging.FileHandler)]
        assert len(files) == 1
        assert "hello file" in log_file.read_text(encoding="utf-8")
