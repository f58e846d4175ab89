"""
Service configuration.

Defaults live in ``config/defaults.yaml`` next to this module. At startup the
defaults are merged with environment overrides (``.env`` is loaded first) and
with any explicit overrides passed by the caller, in that order, and the
result is validated into ``ServiceSettings``.
"""

from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf
from omegaconf.errors import OmegaConfBaseException
from pydantic import BaseModel, Field, field_validator

CONFIG_PATH = Path(__file__).resolve().parent / "config" / "defaults.yaml"

# Environment variable -> dotted config key
ENV_OVERRIDES: Dict[str, str] = {
    "DOCSEAL_ENV": "environment",
    "LOG_LEVEL": "log_level",
    "CORS_ORIGINS": "cors_origins",
    "SANDBOX_DIR": "storage.sandbox_dir",
    "MAX_UPLOAD_BYTES": "uploads.max_bytes",
    "MAX_CONCURRENT_UPLOADS": "uploads.max_concurrent",
    "DEFAULT_AUTHOR": "uploads.default_author",
    "UPLOAD_RATE_LIMIT": "rate_limits.upload_max",
    "UPLOAD_RATE_WINDOW_SECONDS": "rate_limits.upload_window_seconds",
    "RATE_LIMIT_MAX_REQUESTS": "rate_limits.general_max",
    "RATE_LIMIT_WINDOW_SECONDS": "rate_limits.general_window_seconds",
    "MAX_FILE_AGE_SECONDS": "cleanup.max_age_seconds",
    "CLEANUP_INTERVAL_SECONDS": "cleanup.interval_seconds",
    "TOOL_TIMEOUT_SECONDS": "tools.timeout_seconds",
    "SANITIZER_BINARY": "tools.sanitizer",
    "METADATA_WRITER_BINARY": "tools.metadata_writer",
    "ENCRYPTOR_BINARY": "tools.encryptor",
}


class StorageSettings(BaseModel):
    sandbox_dir: Path


class UploadSettings(BaseModel):
    max_bytes: int = Field(gt=0)
    max_concurrent: int = Field(ge=1)
    default_author: str


class RateLimitSettings(BaseModel):
    upload_max: int = Field(ge=1)
    upload_window_seconds: float = Field(gt=0)
    general_max: int = Field(ge=1)
    general_window_seconds: float = Field(gt=0)


class CleanupSettings(BaseModel):
    interval_seconds: float = Field(gt=0)
    max_age_seconds: float = Field(ge=0)


class ToolSettings(BaseModel):
    sanitizer: str
    metadata_writer: str
    encryptor: str
    timeout_seconds: float = Field(gt=0)


class ServiceSettings(BaseModel):
    environment: str
    log_level: str
    cors_origins: List[str]
    storage: StorageSettings
    uploads: UploadSettings
    rate_limits: RateLimitSettings
    cleanup: CleanupSettings
    tools: ToolSettings

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def get_default_config_container() -> Dict[str, Any]:
    return OmegaConf.to_container(_load_default_config(), resolve=True)  # type: ignore[return-value]


def environment_overrides(environ: Mapping[str, str]) -> DictConfig:
    """Collect the known environment variables into a nested config."""
    config = OmegaConf.create()
    for variable, key in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value is not None and value != "":
            OmegaConf.update(config, key, value)
    return config


def make_runtime_config(*overrides: Any) -> DictConfig:
    """
    Merge override layers over the defaults.

    Raises:
        ValueError: If an override names a key the defaults do not define
    """
    base = OmegaConf.create(OmegaConf.to_container(_load_default_config(), resolve=False))
    OmegaConf.set_struct(base, True)
    try:
        layers = [OmegaConf.create(layer) if not isinstance(layer, DictConfig) else layer for layer in overrides]
        return DictConfig(OmegaConf.merge(base, *layers))
    except OmegaConfBaseException as exc:
        raise ValueError(f"Invalid configuration override: {exc}") from exc


def load_settings(
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ServiceSettings:
    """
    Build validated settings from defaults, environment and explicit overrides.

    Args:
        overrides: Nested mapping applied last (mostly for tests)
        environ: Environment to read; defaults to ``os.environ`` after loading ``.env``
    """
    if environ is None:
        load_dotenv()
        environ = os.environ
    merged = make_runtime_config(environment_overrides(environ), overrides or {})
    container = OmegaConf.to_container(merged, resolve=True)
    return ServiceSettings.model_validate(container)
