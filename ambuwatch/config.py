"""Configuration helpers for the AmbuWatch dashboard core."""
from __future__ import annotations

import logging
import logging.config
import os
import platform
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_NAME = "config.yaml"
PACKAGE_DEFAULT_PATH = "defaults/config.yaml"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class BackendSettings(BaseModel):
    base_url: str = "http://127.0.0.1:5000/api/v1"
    token: Optional[str] = None
    timeout: float = Field(default=15.0, gt=0)

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("backend.base_url must not be empty")
        return value.strip().rstrip("/")


class StreamSettings(BaseModel):
    vendor_timeout: float = Field(default=10.0, gt=0)
    player_language: str = "en"
    max_channels: int = Field(default=4, ge=1)


class UploadSettings(BaseModel):
    max_bytes: int = Field(default=10 * 1024 * 1024, gt=0)


class SessionSettings(BaseModel):
    actor: Optional[str] = None


class LoggingSettings(BaseModel):
    level: str = "INFO"
    config_file: Optional[str] = "config/logging.yaml"


class AppSettings(BaseModel):
    backend: BackendSettings = Field(default_factory=BackendSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    uploads: UploadSettings = Field(default_factory=UploadSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


@dataclass(slots=True)
class Config:
    """Raw layered configuration content."""

    data: Dict[str, Any]

    @classmethod
    def load(cls, path: Path | None = None, *, layered: bool = True) -> "Config":
        """Load configuration from a specific path or using the layered strategy."""
        if path is not None:
            return cls(data=_deep_merge(_load_package_defaults(), _load_yaml(Path(path))))
        if layered:
            data, _ = load_layered_config()
            return cls(data=data)
        return cls(data=_load_yaml(Path(DEFAULT_CONFIG_NAME)))

    def settings(self) -> AppSettings:
        """Validate the raw mapping into typed settings."""
        return AppSettings.model_validate(self.data)


def load_package_config() -> Config:
    """Load only the defaults bundled with the package."""
    return Config(data=_load_package_defaults())


def load_layered_config() -> Tuple[Dict[str, Any], List[str]]:
    """Return the effective layered configuration and the sources applied."""
    sources: List[str] = []
    data: Dict[str, Any] = {}

    package_defaults = _load_package_defaults()
    if package_defaults:
        data = package_defaults
        sources.append("package:" + PACKAGE_DEFAULT_PATH)

    for path in _default_overlay_paths():
        overlay = _load_yaml(path)
        if overlay:
            data = _deep_merge(data, overlay)
            sources.append(str(path))

    env_path = os.environ.get("AMBUWATCH_CONFIG")
    if env_path:
        overlay = _load_yaml(Path(env_path))
        if overlay:
            data = _deep_merge(data, overlay)
            sources.append(env_path)

    env_overlay = _environment_overrides()
    if env_overlay:
        data = _deep_merge(data, env_overlay)
        sources.append("env:AMBUWATCH_*")

    return data, sources


def setup_logging(settings: LoggingSettings | None = None) -> None:
    """Apply a logging.yaml dictConfig when present, else a basicConfig at the configured level."""
    settings = settings or LoggingSettings()
    if settings.config_file:
        log_cfg = Path(settings.config_file)
        if log_cfg.exists():
            loaded = _load_yaml(log_cfg)
            if loaded:
                logging.config.dictConfig(loaded)
                return
    level = getattr(logging, settings.level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # httpx request lines include the vendor login query string
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _load_package_defaults() -> Dict[str, Any]:
    try:
        resource = resources.files("ambuwatch").joinpath(PACKAGE_DEFAULT_PATH)
    except (FileNotFoundError, ModuleNotFoundError):  # pragma: no cover - packaging guard
        return {}
    if not resource.is_file():  # pragma: no cover - packaging guard
        return {}
    with resource.open("r", encoding="utf-8") as handle:
        loaded = yaml.safe_load(handle) or {}
    return loaded if isinstance(loaded, dict) else {}


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
    except FileNotFoundError:
        return {}
    except OSError:
        return {}
    return loaded if isinstance(loaded, dict) else {}


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _default_overlay_paths() -> List[Path]:
    paths: List[Path] = []
    system_path = _system_config_path()
    if system_path is not None:
        paths.append(system_path)
    user_path = _user_config_path()
    if user_path is not None:
        paths.append(user_path)
    paths.append(Path.cwd() / DEFAULT_CONFIG_NAME)
    return paths


def _system_config_path() -> Path | None:
    if platform.system().lower().startswith("win"):
        base = Path(os.environ.get("PROGRAMDATA", r"C:\\ProgramData"))
        return base / "ambuwatch" / DEFAULT_CONFIG_NAME
    return Path("/etc/ambuwatch") / DEFAULT_CONFIG_NAME


def _user_config_path() -> Path | None:
    if platform.system().lower().startswith("win"):
        appdata = os.environ.get("APPDATA")
        base = Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
        return base / "ambuwatch" / DEFAULT_CONFIG_NAME
    return Path.home() / ".config" / "ambuwatch" / DEFAULT_CONFIG_NAME


def _environment_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    env_specs = {
        "AMBUWATCH_BACKEND_URL": (("backend", "base_url"), str),
        "AMBUWATCH_BACKEND_TOKEN": (("backend", "token"), str),
        "AMBUWATCH_BACKEND_TIMEOUT": (("backend", "timeout"), float),
        "AMBUWATCH_VENDOR_TIMEOUT": (("stream", "vendor_timeout"), float),
        "AMBUWATCH_ACTOR": (("session", "actor"), str),
        "AMBUWATCH_LOG_LEVEL": (("logging", "level"), _parse_level),
    }

    for env_var, (path, caster) in env_specs.items():
        if env_var not in os.environ:
            continue
        raw_value = os.environ[env_var]
        try:
            value = caster(raw_value)
        except (TypeError, ValueError):
            continue
        _set_nested(overrides, path, value)
    return overrides


def _set_nested(target: Dict[str, Any], path: Iterable[str], value: Any) -> None:
    current = target
    keys = list(path)
    for key in keys[:-1]:
        if key not in current or not isinstance(current[key], dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value


def _parse_level(raw: str) -> str:
    level = raw.strip().upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ValueError(f"unknown log level: {raw}")
    return level
