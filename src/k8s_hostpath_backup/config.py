from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import logging
import os

from .k8s import DEFAULT_DISCOVERY_TIMEOUT_SECONDS, DEFAULT_RELEASE_LABEL
from .naming import DEFAULT_NAME_TEMPLATE
from .scaler import DEFAULT_POLL_INTERVAL_SECONDS, DEFAULT_WAIT_TIMEOUT_SECONDS

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _env(name: str, default: str) -> str:
    return os.getenv(name, "").strip() or default


def _env_number(name: str, default: float, cast: type[float] | type[int]) -> float | int:
    raw = _env(name, str(default))
    try:
        return cast(raw)
    except ValueError as error:
        raise ValueError(f"environment variable {name} must be a number, got '{raw}'") from error


@dataclass(frozen=True)
class AppConfig:
    output_dir: Path = field(default_factory=lambda: Path(_env("HPB_OUTPUT_DIR", ".")))
    name_template: str = field(default_factory=lambda: _env("HPB_NAME_TEMPLATE", DEFAULT_NAME_TEMPLATE))
    release_label: str = field(default_factory=lambda: _env("HPB_RELEASE_LABEL", DEFAULT_RELEASE_LABEL))
    scale_poll_interval_seconds: float = field(
        default_factory=lambda: _env_number("HPB_SCALE_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS, float)
    )
    scale_timeout_seconds: float = field(
        default_factory=lambda: _env_number("HPB_SCALE_TIMEOUT_SECONDS", DEFAULT_WAIT_TIMEOUT_SECONDS, float)
    )
    discovery_timeout_seconds: int = field(
        default_factory=lambda: _env_number("HPB_DISCOVERY_TIMEOUT_SECONDS", DEFAULT_DISCOVERY_TIMEOUT_SECONDS, int)
    )
    remote_credentials_path: str | None = field(default_factory=lambda: os.getenv("HPB_REMOTE_CREDENTIALS") or None)
    keep_last: int = field(default_factory=lambda: _env_number("HPB_KEEP_LAST", 0, int))


def ensure_directories(config: AppConfig) -> None:
    config.output_dir.mkdir(parents=True, exist_ok=True)


def configure_logging(verbose: bool = False) -> logging.Logger:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT, force=True)
    # The Kubernetes and AWS clients log request bodies at DEBUG.
    for noisy in ("kubernetes", "urllib3", "botocore", "boto3", "s3transfer"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return logging.getLogger("k8s_hostpath_backup")
