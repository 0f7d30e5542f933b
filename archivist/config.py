"""Settings for the archivist CLI, read via pydantic-settings.

Sources, highest priority first: explicit overrides (CLI flags),
``ARCHIVIST_*`` environment variables, ``.env``, the YAML options file,
then the defaults below. Nothing here is a process-wide global: callers
build a :class:`Settings` with :func:`load_settings` and hand the derived
:class:`RecorderConfig` to the session.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from archivist.schemas.recorder_config import FetchErrorPolicy, RecorderConfig

DEFAULT_OPTIONS_FILE = Path("archivist.yaml")
VATSIM_DATA_URL = "https://data.vatsim.net/v3/vatsim-data.json"


class Settings(BaseSettings):
    """All configuration for the archivist, sourced from env and options file."""

    model_config = SettingsConfigDict(
        env_prefix="ARCHIVIST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        yaml_file=DEFAULT_OPTIONS_FILE,
    )

    # ── Recording ──
    SOURCE_URL: str = VATSIM_DATA_URL
    STORAGE_DIR: Path = Path("snapshots")
    MAX_SNAPSHOTS: int = 100
    INTERVAL_MS: int = 15_000  # VATSIM refreshes its feed every ~15 s
    FETCH_ERROR_POLICY: FetchErrorPolicy = FetchErrorPolicy.RECOVERABLE
    STOP_AT_CEILING: bool = True
    MAX_CONSECUTIVE_FETCH_ERRORS: Optional[int] = None

    # ── HTTP ──
    FETCH_TIMEOUT_S: float = Field(default=30.0, gt=0)
    FETCH_MAX_BYTES: int = Field(default=50_000_000, ge=1024)
    USER_AGENT: str = "VATPlaybackArchivist/0.1 (+snapshot recorder)"

    # ── App ──
    APP_LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"
    METRICS_TEXTFILE: Optional[Path] = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )

    def recorder_config(self, storage_dir: Path | None = None) -> RecorderConfig:
        """Validated recorder configuration; raises ConfigurationError."""
        return RecorderConfig.build(
            source_url=self.SOURCE_URL,
            storage_dir=storage_dir or self.STORAGE_DIR,
            ceiling=self.MAX_SNAPSHOTS,
            interval_ms=self.INTERVAL_MS,
            fetch_error_policy=self.FETCH_ERROR_POLICY,
            stop_at_ceiling=self.STOP_AT_CEILING,
            max_consecutive_fetch_errors=self.MAX_CONSECUTIVE_FETCH_ERRORS,
        )


def load_settings(options_file: str | Path | None = None, **overrides: Any) -> Settings:
    """Resolve settings, reading ``options_file`` instead of ``archivist.yaml``.

    ``None`` overrides are dropped so unset CLI flags fall through to the
    lower-priority sources.
    """
    values = {k: v for k, v in overrides.items() if v is not None}
    if options_file is None:
        return Settings(**values)

    class _FileSettings(Settings):
        model_config = SettingsConfigDict(yaml_file=Path(options_file))

    return _FileSettings(**values)


def save_options(settings: Settings, path: str | Path) -> Path:
    """Write ``settings`` as a YAML options file (temp file + rename)."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    data = settings.model_dump(mode="json")
    temp_path = target.with_name(f".{target.name}.tmp")
    with open(temp_path, "w", encoding="utf-8") as fh:
        yaml.safe_dump(data, fh, sort_keys=False)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(temp_path, target)
    return target
