"""meter_etl.config

YAML-backed settings for meter imports.

Responsibilities:
  - Load and validate an optional YAML settings file
    (sample: config/meter_import.yml)
  - Apply CLI overrides on top (flag > YAML > built-in default)

The database DSN is deliberately not a setting: it comes from --db-dsn or
the METER_ETL_DB_DSN environment variable.

Usage:
    from pathlib import Path
    from meter_etl.config import load_settings

    settings = load_settings(Path("config/meter_import.yml"))
    settings = settings.with_overrides(batch_size=1000)
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from meter_etl.models import ImportMode

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_BATCH_SIZE = 500
DEFAULT_MAX_UPLOAD_BYTES = 100_000_000

VALID_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SettingsValidationError(ValueError):
    """Raised when a settings file or override fails validation."""


# ---------------------------------------------------------------------------
# ImportSettings dataclass
# ---------------------------------------------------------------------------

@dataclass
class ImportSettings:
    batch_size: int = DEFAULT_BATCH_SIZE
    mode: ImportMode = ImportMode.UPDATE_AND_ADD
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    allowed_extensions: list[str] = field(default_factory=lambda: [".csv"])
    rejects_path: Path = Path("./artifacts/rejects/meter_import_rejects.csv")
    reports_dir: Path = Path("./artifacts/reports")
    progress_url: str | None = None
    progress_timeout_seconds: float = 5.0
    log_level: str = "INFO"

    @property
    def log_level_number(self) -> int:
        return logging.getLevelName(self.log_level)

    def with_overrides(self, **overrides: Any) -> ImportSettings:
        """Return a copy with every non-None override applied and validated."""
        data = {k: v for k, v in overrides.items() if v is not None}
        return _build(dataclasses.asdict(self) | data)


_KNOWN_KEYS = frozenset(f.name for f in dataclasses.fields(ImportSettings))


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_settings(path: Path | None = None) -> ImportSettings:
    """Load settings from ``path``, or return the defaults when it is None.

    Raises:
        SettingsValidationError: If a key is unknown or a value is invalid.
        FileNotFoundError: If ``path`` does not exist.
    """
    if path is None:
        return ImportSettings()
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return ImportSettings()
    return _build(data)


def validate_settings(data: Any) -> None:
    """Raise SettingsValidationError if data does not match the schema."""
    if not isinstance(data, dict):
        raise SettingsValidationError("YAML root must be a mapping.")

    unknown = set(data.keys()) - _KNOWN_KEYS
    if unknown:
        raise SettingsValidationError(f"Unknown settings keys: {sorted(unknown)}")

    if "batch_size" in data:
        batch_size = data["batch_size"]
        if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size < 1:
            raise SettingsValidationError(
                f"'batch_size' must be a positive integer, got {batch_size!r}."
            )

    if "max_upload_bytes" in data:
        limit = data["max_upload_bytes"]
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise SettingsValidationError(
                f"'max_upload_bytes' must be a positive integer, got {limit!r}."
            )

    if "mode" in data and not isinstance(data["mode"], ImportMode):
        try:
            ImportMode.parse(str(data["mode"]))
        except ValueError:
            raise SettingsValidationError(
                f"Invalid mode '{data['mode']}'. Must be one of "
                f"{[m.value for m in ImportMode]}."
            )

    if "log_level" in data and str(data["log_level"]).upper() not in VALID_LOG_LEVELS:
        raise SettingsValidationError(
            f"Invalid log_level '{data['log_level']}'. Must be one of {sorted(VALID_LOG_LEVELS)}."
        )

    extensions = data.get("allowed_extensions")
    if extensions is not None:
        if not isinstance(extensions, list) or not extensions:
            raise SettingsValidationError("'allowed_extensions' must be a non-empty list.")
        for ext in extensions:
            if not isinstance(ext, str) or not ext.startswith("."):
                raise SettingsValidationError(
                    f"allowed extension {ext!r} must be a string starting with '.'."
                )

    if "progress_timeout_seconds" in data:
        try:
            timeout = float(data["progress_timeout_seconds"])
        except (TypeError, ValueError):
            raise SettingsValidationError(
                f"'progress_timeout_seconds' value {data['progress_timeout_seconds']!r} is not numeric."
            )
        if timeout <= 0:
            raise SettingsValidationError("'progress_timeout_seconds' must be > 0.")


def _build(data: dict[str, Any]) -> ImportSettings:
    validate_settings(data)
    defaults = ImportSettings()
    mode = data.get("mode", defaults.mode)
    return ImportSettings(
        batch_size=int(data.get("batch_size", defaults.batch_size)),
        mode=mode if isinstance(mode, ImportMode) else ImportMode.parse(str(mode)),
        max_upload_bytes=int(data.get("max_upload_bytes", defaults.max_upload_bytes)),
        allowed_extensions=[
            e.lower() for e in data.get("allowed_extensions") or defaults.allowed_extensions
        ],
        rejects_path=Path(data.get("rejects_path", defaults.rejects_path)),
        reports_dir=Path(data.get("reports_dir", defaults.reports_dir)),
        progress_url=data.get("progress_url", defaults.progress_url),
        progress_timeout_seconds=float(
            data.get("progress_timeout_seconds", defaults.progress_timeout_seconds)
        ),
        log_level=str(data.get("log_level", defaults.log_level)).upper(),
    )
