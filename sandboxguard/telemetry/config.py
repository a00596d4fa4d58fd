"""Collector settings layered from defaults, an optional file and the environment."""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

_ENV_PREFIX = "telemetry_"
_FILE_STEM = "telemetry"


def _load_toml(path: Path) -> Any:
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _load_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


_FILE_READERS: tuple[tuple[str, Callable[[Path], Any]], ...] = (
    (".toml", _load_toml),
    (".json", _load_json),
)


def _read_file(directory: Path) -> dict[str, Any]:
    for suffix, reader in _FILE_READERS:
        path = directory / f"{_FILE_STEM}{suffix}"
        if path.is_file():
            data = reader(path)
            if not isinstance(data, dict):
                raise ValueError(f"{path}: expected a table of settings")
            return {str(key).lower(): value for key, value in data.items()}
    return {}


def _read_environment(environ: Mapping[str, str]) -> dict[str, str]:
    settings = {}
    for name, value in environ.items():
        lowered = name.lower()
        if lowered.startswith(_ENV_PREFIX) and len(lowered) > len(_ENV_PREFIX):
            settings[lowered[len(_ENV_PREFIX):]] = value
    return settings


class Config(BaseModel):
    """Settings of the telemetry collector."""

    model_config = ConfigDict(frozen=True)

    port: int = Field(default=8082, ge=0, le=65535)
    database_url: str
    max_training_data_age_days: int = 30
    metrics_retention_days: int = 90

    @classmethod
    def load(
        cls,
        environ: Mapping[str, str] | None = None,
        config_dir: str | os.PathLike[str] | None = None,
    ) -> Config:
        """Build settings from defaults, then ``<config_dir>/telemetry.{toml,json}``,
        then ``TELEMETRY_*`` variables; raises ValueError for missing or bad values."""
        environ = os.environ if environ is None else environ
        directory = Path("config") if config_dir is None else Path(config_dir)
        settings: dict[str, Any] = {}
        settings.update(_read_file(directory))
        settings.update(_read_environment(environ))
        return cls.model_validate(settings)