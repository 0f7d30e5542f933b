from __future__ import annotations

import enum
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from archivist.errors import ConfigurationError


class FetchErrorPolicy(str, enum.Enum):
    RECOVERABLE = "recoverable"
    FATAL = "fatal"


class RecorderConfig(BaseModel):
    """Resolved recorder configuration, immutable for a session's lifetime."""

    model_config = ConfigDict(frozen=True)

    source_url: str
    storage_dir: Path
    ceiling: int = Field(ge=1)
    interval_ms: int = Field(ge=1)
    fetch_error_policy: FetchErrorPolicy = FetchErrorPolicy.RECOVERABLE
    stop_at_ceiling: bool = True
    max_consecutive_fetch_errors: Optional[int] = Field(default=None, ge=1)

    @field_validator("source_url")
    @classmethod
    def validate_source_url(cls, v: str) -> str:
        url = str(v).strip()
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("source_url must be a valid http(s) URL")
        return url

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000.0

    @classmethod
    def build(cls, **values: Any) -> "RecorderConfig":
        """Validate ``values`` and raise :class:`ConfigurationError` on failure."""
        try:
            return cls(**values)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
                for err in exc.errors()
            )
            raise ConfigurationError(f"Invalid recorder configuration: {problems}") from exc
