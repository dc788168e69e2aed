from __future__ import annotations

import logging
from pathlib import Path
from unittest.mock import Mock

import pytest

from k8s_hostpath_backup.config import LOG_FORMAT, AppConfig, configure_logging, ensure_directories
from k8s_hostpath_backup.naming import DEFAULT_NAME_TEMPLATE


def test_app_config_with_no_environment_uses_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "HPB_OUTPUT_DIR",
        "HPB_NAME_TEMPLATE",
        "HPB_RELEASE_LABEL",
        "HPB_SCALE_POLL_INTERVAL_SECONDS",
        "HPB_SCALE_TIMEOUT_SECONDS",
        "HPB_DISCOVERY_TIMEOUT_SECONDS",
        "HPB_REMOTE_CREDENTIALS",
        "HPB_KEEP_LAST",
    ):
        monkeypatch.delenv(name, raising=False)

    config = AppConfig()

    assert config.output_dir == Path(".")
    assert config.name_template == DEFAULT_NAME_TEMPLATE
    assert config.release_label == "app.kubernetes.io/instance"
    assert config.scale_poll_interval_seconds == 2.0
    assert config.scale_timeout_seconds == 300.0
    assert config.discovery_timeout_seconds == 20
    assert config.remote_credentials_path is None
    assert config.keep_last == 0


def test_app_config_with_environment_overrides_reads_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HPB_OUTPUT_DIR", "/backups")
    monkeypatch.setenv("HPB_RELEASE_LABEL", "release")
    monkeypatch.setenv("HPB_SCALE_TIMEOUT_SECONDS", "45.5")
    monkeypatch.setenv("HPB_REMOTE_CREDENTIALS", "/etc/hpb/r2.json")
    monkeypatch.setenv("HPB_KEEP_LAST", "7")
    monkeypatch.setenv("HPB_NAME_TEMPLATE", "   ")

    config = AppConfig()

    assert config.output_dir == Path("/backups")
    assert config.release_label == "release"
    assert config.scale_timeout_seconds == 45.5
    assert config.remote_credentials_path == "/etc/hpb/r2.json"
    assert config.keep_last == 7
    assert config.name_template == DEFAULT_NAME_TEMPLATE


def test_ensure_directories_with_nested_output_dir_creates_it(tmp_path: Path) -> None:
    config = AppConfig(output_dir=tmp_path / "a" / "b")

    ensure_directories(config)

    assert (tmp_path / "a" / "b").is_dir()


def test_configure_logging_with_verbose_enables_debug_and_quiets_clients(monkeypatch: pytest.MonkeyPatch) -> None:
    basic_config = Mock()
    monkeypatch.setattr("k8s_hostpath_backup.config.logging.basicConfig", basic_config)

    logger = configure_logging(verbose=True)

    assert logger.name == "k8s_hostpath_backup"
    basic_config.assert_called_once_with(level=logging.DEBUG, format=LOG_FORMAT, force=True)
    assert logging.getLogger("botocore").level == logging.WARNING
    assert logging.getLogger("kubernetes").level == logging.WARNING
