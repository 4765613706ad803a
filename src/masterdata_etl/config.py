"""masterdata_etl.config

YAML configuration for the staging engine.

Example (config/staging.yml):

    staging_table: master_data_staging
    header_table: master_data_header
    batch_size: 25
    preview_limit: 50
    polling_interval_seconds: 30
    timezone: Asia/Singapore
    data_type: master_data
    dispatch_url: http://workflow.internal/api/inbound
    retry:
      base_delay: 1.0
      max_delay: 8.0
      max_attempts: null      # null → retry until the store accepts every item

Every key is optional.  The resulting StagingConfig is passed explicitly to
each component; nothing here is process-wide state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from masterdata_etl.shared import DEFAULT_TIMEZONE, ConfigValidationError

MAX_BATCH_SIZE = 25

_KNOWN_KEYS = frozenset({
    "staging_table", "header_table", "batch_size", "preview_limit",
    "polling_interval_seconds", "timezone", "data_type", "dispatch_url", "retry",
})
_KNOWN_RETRY_KEYS = frozenset({"base_delay", "max_delay", "max_attempts"})


@dataclass(frozen=True)
class RetrySettings:
    base_delay: float = 1.0
    max_delay: float = 8.0
    max_attempts: int | None = None


@dataclass(frozen=True)
class StagingConfig:
    staging_table: str = "master_data_staging"
    header_table: str = "master_data_header"
    batch_size: int = MAX_BATCH_SIZE
    preview_limit: int = 50
    polling_interval_seconds: float = 30.0
    timezone: str = DEFAULT_TIMEZONE
    data_type: str = "master_data"
    dispatch_url: str | None = None
    retry: RetrySettings = field(default_factory=RetrySettings)


def load_config(yaml_path: Path | None) -> StagingConfig:
    """Load and validate a StagingConfig from a YAML file.

    Args:
        yaml_path: Path to the YAML file, or None for all defaults.

    Raises:
        ConfigValidationError: If a key is unknown or a value is out of range.
        FileNotFoundError: If the YAML file does not exist.
    """
    if yaml_path is None:
        return StagingConfig()
    raw = yaml_path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw) or {}
    validate_config(data)
    retry_data = data.get("retry") or {}
    return StagingConfig(
        staging_table=str(data.get("staging_table", StagingConfig.staging_table)),
        header_table=str(data.get("header_table", StagingConfig.header_table)),
        batch_size=int(data.get("batch_size", MAX_BATCH_SIZE)),
        preview_limit=int(data.get("preview_limit", StagingConfig.preview_limit)),
        polling_interval_seconds=float(
            data.get("polling_interval_seconds", StagingConfig.polling_interval_seconds)
        ),
        timezone=str(data.get("timezone", DEFAULT_TIMEZONE)),
        data_type=str(data.get("data_type", StagingConfig.data_type)),
        dispatch_url=data.get("dispatch_url"),
        retry=RetrySettings(
            base_delay=float(retry_data.get("base_delay", RetrySettings.base_delay)),
            max_delay=float(retry_data.get("max_delay", RetrySettings.max_delay)),
            max_attempts=(
                int(retry_data["max_attempts"])
                if retry_data.get("max_attempts") is not None else None
            ),
        ),
    )


def validate_config(data: dict[str, Any]) -> None:
    """Raise ConfigValidationError if data does not match the config schema."""
    if not isinstance(data, dict):
        raise ConfigValidationError("YAML root must be a mapping.")

    unknown = set(data.keys()) - _KNOWN_KEYS
    if unknown:
        raise ConfigValidationError(f"Unknown config keys: {sorted(unknown)}")

    for key in ("staging_table", "header_table"):
        if key in data and not str(data[key] or "").strip():
            raise ConfigValidationError(f"'{key}' must not be blank.")

    batch_size = _as_number(data, "batch_size", int)
    if batch_size is not None and not (1 <= batch_size <= MAX_BATCH_SIZE):
        raise ConfigValidationError(
            f"'batch_size' {batch_size} must be in [1, {MAX_BATCH_SIZE}]."
        )
    preview_limit = _as_number(data, "preview_limit", int)
    if preview_limit is not None and preview_limit < 0:
        raise ConfigValidationError("'preview_limit' must be >= 0.")
    interval = _as_number(data, "polling_interval_seconds", float)
    if interval is not None and interval <= 0:
        raise ConfigValidationError("'polling_interval_seconds' must be > 0.")

    if "timezone" in data:
        try:
            ZoneInfo(str(data["timezone"]))
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigValidationError(f"Unknown timezone '{data['timezone']}'.")

    retry = data.get("retry")
    if retry is None:
        return
    if not isinstance(retry, dict):
        raise ConfigValidationError("'retry' must be a mapping.")
    unknown = set(retry.keys()) - _KNOWN_RETRY_KEYS
    if unknown:
        raise ConfigValidationError(f"Unknown retry keys: {sorted(unknown)}")
    base = _as_number(retry, "base_delay", float)
    cap = _as_number(retry, "max_delay", float)
    if base is not None and base <= 0:
        raise ConfigValidationError("'retry.base_delay' must be > 0.")
    if base is not None and cap is not None and cap < base:
        raise ConfigValidationError(
            f"'retry.max_delay' ({cap}) must be >= 'retry.base_delay' ({base})."
        )
    attempts = retry.get("max_attempts")
    if attempts is not None:
        attempts = _as_number(retry, "max_attempts", int)
        if attempts < 1:
            raise ConfigValidationError("'retry.max_attempts' must be >= 1 or null.")


def _as_number(data: dict[str, Any], key: str, kind: type) -> Any:
    if key not in data:
        return None
    val = data[key]
    try:
        return kind(val)
    except (TypeError, ValueError):
        raise ConfigValidationError(f"'{key}' value '{val}' is not numeric.")
