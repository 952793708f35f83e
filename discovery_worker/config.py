from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path

from discovery_worker.errors import ConfigurationError

ENV_PREFIX = "DISCOVERY_"
DEFAULT_CONFIG_PATH = "data/discovery_worker.json"

ENV_FIELDS = {
    "tika_endpoint": "TIKA_ENDPOINT",
    "tika_timeout_seconds": "TIKA_TIMEOUT_SECONDS",
    "tika_max_concurrency": "TIKA_MAX_CONCURRENCY",
    "artifact_root": "ARTIFACT_ROOT",
    "queue_target": "QUEUE_PATH",
    "job_records_dir": "JOB_RECORDS_DIR",
    "max_depth": "MAX_DEPTH",
    "max_nodes": "MAX_NODES",
    "node_parallelism": "NODE_PARALLELISM",
    "retry_attempts": "RETRY_ATTEMPTS",
    "backoff_base_seconds": "BACKOFF_BASE_SECONDS",
    "backoff_multiplier": "BACKOFF_MULTIPLIER",
    "backoff_max_seconds": "BACKOFF_MAX_SECONDS",
    "visibility_timeout_seconds": "VISIBILITY_TIMEOUT_SECONDS",
    "log_level": "LOG_LEVEL",
}

POSITIVE_INT_FIELDS = {"tika_max_concurrency", "max_nodes", "node_parallelism", "retry_attempts"}
NON_NEGATIVE_INT_FIELDS = {"max_depth"}
NON_NEGATIVE_FLOAT_FIELDS = {"backoff_base_seconds", "backoff_max_seconds"}
POSITIVE_FLOAT_FIELDS = {"tika_timeout_seconds", "backoff_multiplier", "visibility_timeout_seconds"}


@dataclass(frozen=True)
class WorkerConfig:
    tika_endpoint: str = "http://localhost:9998"
    tika_timeout_seconds: float = 30.0
    tika_max_concurrency: int = 4
    artifact_root: str = "data/artifacts"
    queue_target: str = "data/queue/jobs.json"
    job_records_dir: str = "data/jobs"
    max_depth: int = 8
    max_nodes: int = 10000
    node_parallelism: int = 4
    retry_attempts: int = 4
    backoff_base_seconds: float = 0.5
    backoff_multiplier: float = 2.0
    backoff_max_seconds: float = 30.0
    visibility_timeout_seconds: float = 300.0
    log_level: str = "INFO"

    def to_dict(self) -> dict:
        return asdict(self)


def _coerce(name: str, value: object) -> object:
    try:
        if name in POSITIVE_INT_FIELDS or name in NON_NEGATIVE_INT_FIELDS:
            coerced: object = int(value)  # type: ignore[arg-type]
        elif name in POSITIVE_FLOAT_FIELDS or name in NON_NEGATIVE_FLOAT_FIELDS:
            coerced = float(value)  # type: ignore[arg-type]
        else:
            coerced = str(value).strip()
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid value for '{name}': {value!r}") from exc

    if name in POSITIVE_INT_FIELDS | POSITIVE_FLOAT_FIELDS and coerced <= 0:  # type: ignore[operator]
        raise ConfigurationError(f"'{name}' must be greater than zero.", {"value": coerced})
    if name in NON_NEGATIVE_INT_FIELDS | NON_NEGATIVE_FLOAT_FIELDS and coerced < 0:  # type: ignore[operator]
        raise ConfigurationError(f"'{name}' must not be negative.", {"value": coerced})
    if name == "tika_endpoint":
        coerced = str(coerced).rstrip("/")
        if not coerced:
            raise ConfigurationError("'tika_endpoint' must not be empty.")
    return coerced


def _env_overrides() -> dict[str, object]:
    overrides: dict[str, object] = {}
    for field_name, env_suffix in ENV_FIELDS.items():
        raw = os.getenv(f"{ENV_PREFIX}{env_suffix}")
        if raw is not None and raw.strip():
            overrides[field_name] = raw.strip()
    return overrides


def _file_overrides(file_path: Path) -> dict[str, object]:
    if not file_path.exists():
        return {}
    try:
        raw = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Config file '{file_path}' is not valid JSON.") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file '{file_path}' must contain a JSON object.")

    known = {item.name for item in fields(WorkerConfig)}
    return {key: value for key, value in raw.items() if key in known}


def load_worker_config(path: str | None = None) -> WorkerConfig:
    """Build the worker configuration from defaults, environment and an optional JSON file.

    Precedence, lowest first: dataclass defaults, ``DISCOVERY_*`` environment variables, the JSON file.
    """

    configured_path = path or os.getenv(f"{ENV_PREFIX}CONFIG_PATH", DEFAULT_CONFIG_PATH)
    overrides = {**_env_overrides(), **_file_overrides(Path(configured_path))}
    coerced = {name: _coerce(name, value) for name, value in overrides.items()}
    return replace(WorkerConfig(), **coerced)


def configure_logging(level: str = "INFO") -> None:
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ConfigurationError(f"Unknown log level '{level}'.")
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
