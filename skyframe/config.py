"""Configuration models and helpers for Skyframe."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .logging import DEFAULT_QUIET_LOGGERS

DEFAULT_ACCESS_KEY_PLACEHOLDER = "SET_ME"
ACCESS_KEY_ENV = "UNSPLASH_ACCESS_KEY"


@dataclass(frozen=True)
class BootstrapReport:
    """Summary of files/directories created during initialisation."""

    base_created: bool
    state_dir_created: bool
    global_config_created: bool
    global_config_overwritten: bool


class ConfigError(RuntimeError):
    """Raised when configuration files cannot be parsed or are invalid."""


@dataclass(frozen=True)
class ConfigPaths:
    """Resolved filesystem locations used by the application."""

    base_dir: Path
    global_config: Path

    @classmethod
    def default(cls) -> "ConfigPaths":
        """Return default locations under the user's home directory."""

        base = Path.home() / ".skyframe"
        return cls.from_base_dir(base)

    @classmethod
    def from_base_dir(cls, base_dir: Path) -> "ConfigPaths":
        """Construct paths using ``base_dir`` as root."""

        base_dir = base_dir.expanduser()
        return cls(
            base_dir=base_dir,
            global_config=base_dir / "config.yml",
        )

    @property
    def state_dir(self) -> Path:
        """Default directory for the photo cache and display output."""

        return self.base_dir / "state"


class UnsplashSettings(BaseModel):
    """Photo provider credentials and request behaviour."""

    access_key: str = Field(default=DEFAULT_ACCESS_KEY_PLACEHOLDER)
    timeout_seconds: float = Field(default=10.0, gt=0.0)
    variety: bool = Field(default=False)

    model_config = ConfigDict(extra="forbid")

    @property
    def resolved_access_key(self) -> Optional[str]:
        """Configured key, falling back to the environment for placeholders."""

        if self.access_key and self.access_key != DEFAULT_ACCESS_KEY_PLACEHOLDER:
            return self.access_key
        return os.environ.get(ACCESS_KEY_ENV) or None


class DisplaySettings(BaseModel):
    """Target surface the background photo is sized for."""

    width: int = Field(default=1920, gt=0)
    height: int = Field(default=1080, gt=0)
    sink: Literal["console", "json"] = Field(default="console")
    output_file: Optional[Path] = None

    model_config = ConfigDict(extra="forbid")


class LocationSettings(BaseModel):
    """Optional fixed location; IP geolocation is used when omitted."""

    latitude: Optional[float] = Field(default=None, ge=-90.0, le=90.0)
    longitude: Optional[float] = Field(default=None, ge=-180.0, le=180.0)
    city: Optional[str] = None

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def check_pair(self) -> "LocationSettings":
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("Location must define both 'latitude' and 'longitude'.")
        return self

    @property
    def is_fixed(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class RuntimeSettings(BaseModel):
    """Runtime-level defaults."""

    timezone: str = Field(default="UTC")
    storage_dir: Path = Field(default_factory=lambda: ConfigPaths.default().state_dir)
    log_level: str = Field(default="INFO")
    cache_file: str = Field(default="photo_cache.json")
    quiet_loggers: List[str] = Field(default_factory=lambda: list(DEFAULT_QUIET_LOGGERS))

    model_config = ConfigDict(extra="forbid")


class GlobalConfig(BaseModel):
    """Top-level configuration file model."""

    unsplash: UnsplashSettings = Field(default_factory=UnsplashSettings)
    display: DisplaySettings = Field(default_factory=DisplaySettings)
    location: LocationSettings = Field(default_factory=LocationSettings)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)

    model_config = ConfigDict(extra="forbid")


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse YAML file: {path}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Expected mapping at top level of {path}")
    return data


def load_global_config(path: Path) -> GlobalConfig:
    """Load and validate the global configuration file."""

    payload = _read_yaml(path)
    try:
        return GlobalConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc


def _default_global_config(paths: ConfigPaths) -> Dict[str, Any]:
    """Dictionary representing the starter global configuration."""

    return {
        "unsplash": {
            "access_key": DEFAULT_ACCESS_KEY_PLACEHOLDER,
            "timeout_seconds": 10,
            "variety": False,
        },
        "display": {
            "width": 1920,
            "height": 1080,
            "sink": "console",
        },
        "runtime": {
            "timezone": "UTC",
            "storage_dir": str(paths.state_dir),
            "log_level": "INFO",
            "cache_file": "photo_cache.json",
            "quiet_loggers": list(DEFAULT_QUIET_LOGGERS),
        },
    }


def _write_yaml(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False)


def bootstrap(paths: ConfigPaths, overwrite: bool = False) -> BootstrapReport:
    """Ensure configuration directories/files exist.

    Parameters
    ----------
    paths:
        Target filesystem layout.
    overwrite:
        When ``True`` the global config file is re-written even if it already exists.
    """

    base_created = False
    state_dir_created = False
    global_config_created = False
    global_config_overwritten = False

    if not paths.base_dir.exists():
        paths.base_dir.mkdir(parents=True, exist_ok=True)
        base_created = True

    if not paths.state_dir.exists():
        paths.state_dir.mkdir(parents=True, exist_ok=True)
        state_dir_created = True

    existing_global = paths.global_config.exists()
    if not existing_global or overwrite:
        _write_yaml(paths.global_config, _default_global_config(paths))
        global_config_created = True
        global_config_overwritten = existing_global and overwrite

    return BootstrapReport(
        base_created=base_created,
        state_dir_created=state_dir_created,
        global_config_created=global_config_created,
        global_config_overwritten=global_config_overwritten,
    )
