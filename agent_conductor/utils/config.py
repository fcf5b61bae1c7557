"""
Configuration management for Agent Conductor.
"""

import json
import os
import shlex
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator
from pathlib import Path

from .logging import get_logger

logger = get_logger(__name__)


class LauncherConfig(BaseModel):
    """How child agent processes are started."""
    executable: List[str] = Field(default_factory=lambda: ["pi"])
    model: Optional[str] = None
    fallback_model: str = Field(default="claude-sonnet-4-5")
    session_dir: Path = Field(default=Path(".conductor/sessions"))
    dispatch_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    kill_grace_seconds: float = Field(default=3.0, ge=0.0, le=60.0)
    pipe_drain_seconds: float = Field(default=2.0, gt=0.0, le=60.0)
    read_chunk_bytes: int = Field(default=4096, ge=64, le=1_048_576)
    stderr_tail_chars: int = Field(default=2000, ge=0, le=100_000)
    suppress_extensions: bool = True

    @field_validator('executable', mode='before')
    @classmethod
    def split_command_string(cls, v):
        if isinstance(v, str):
            v = shlex.split(v)
        if not v:
            raise ValueError("executable must name at least one program")
        return v


class TrackingConfig(BaseModel):
    """Status tracking and projection settings."""
    tick_interval_seconds: float = Field(default=1.0, gt=0.0, le=60.0)
    preview_chars: int = Field(default=60, ge=8, le=1000)


class DispatcherConfig(BaseModel):
    """Dispatcher strategy settings."""
    persist_role_sessions: bool = True


class ConductorConfig(BaseModel):
    """Main system configuration."""
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    json_logging: bool = Field(default=False)

    # Component configurations
    launcher: LauncherConfig = Field(default_factory=LauncherConfig)
    tracking: TrackingConfig = Field(default_factory=TrackingConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_config_from_env() -> ConductorConfig:
    """
    Load configuration from environment variables.

    Returns:
        ConductorConfig: Configuration object with values from environment
    """
    config_data = {}

    # System settings
    debug = _env_bool("CONDUCTOR_DEBUG")
    if debug is not None:
        config_data["debug"] = debug

    if os.getenv("CONDUCTOR_LOG_LEVEL"):
        config_data["log_level"] = os.getenv("CONDUCTOR_LOG_LEVEL")

    json_logging = _env_bool("CONDUCTOR_JSON_LOGGING")
    if json_logging is not None:
        config_data["json_logging"] = json_logging

    # Launcher settings
    launcher_config = {}
    if os.getenv("CONDUCTOR_AGENT_COMMAND"):
        launcher_config["executable"] = os.getenv("CONDUCTOR_AGENT_COMMAND")

    if os.getenv("CONDUCTOR_MODEL"):
        launcher_config["model"] = os.getenv("CONDUCTOR_MODEL")

    if os.getenv("CONDUCTOR_FALLBACK_MODEL"):
        launcher_config["fallback_model"] = os.getenv("CONDUCTOR_FALLBACK_MODEL")

    if os.getenv("CONDUCTOR_SESSION_DIR"):
        launcher_config["session_dir"] = os.getenv("CONDUCTOR_SESSION_DIR")

    if os.getenv("CONDUCTOR_DISPATCH_TIMEOUT"):
        launcher_config["dispatch_timeout_seconds"] = float(os.getenv("CONDUCTOR_DISPATCH_TIMEOUT"))

    if os.getenv("CONDUCTOR_KILL_GRACE"):
        launcher_config["kill_grace_seconds"] = float(os.getenv("CONDUCTOR_KILL_GRACE"))

    if launcher_config:
        config_data["launcher"] = launcher_config

    # Tracking settings
    tracking_config = {}
    if os.getenv("CONDUCTOR_TICK_INTERVAL"):
        tracking_config["tick_interval_seconds"] = float(os.getenv("CONDUCTOR_TICK_INTERVAL"))

    if os.getenv("CONDUCTOR_PREVIEW_CHARS"):
        tracking_config["preview_chars"] = int(os.getenv("CONDUCTOR_PREVIEW_CHARS"))

    if tracking_config:
        config_data["tracking"] = tracking_config

    persist = _env_bool("CONDUCTOR_PERSIST_ROLE_SESSIONS")
    if persist is not None:
        config_data["dispatcher"] = {"persist_role_sessions": persist}

    return ConductorConfig(**config_data)


def load_config_from_file(config_path: Optional[Path] = None) -> ConductorConfig:
    """
    Load configuration from a JSON file.

    Args:
        config_path: Path to configuration file

    Returns:
        ConductorConfig: Configuration object
    """
    if config_path is None:
        config_path = Path("conductor.json")

    if not config_path.exists():
        return ConductorConfig()

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config_data = json.load(f)
        return ConductorConfig(**config_data)
    except (OSError, ValueError) as e:
        logger.warning("Could not load config file, using defaults", path=str(config_path), error=str(e))
        return ConductorConfig()


def _deep_merge(base: dict, overrides: dict) -> dict:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# Global configuration instance
_config: Optional[ConductorConfig] = None


def get_config() -> ConductorConfig:
    """
    Get the global configuration instance.

    Returns:
        ConductorConfig: Global configuration
    """
    global _config
    if _config is None:
        # Try to load from file first, then environment
        _config = load_config_from_file()
        env_config = load_config_from_env()

        # Merge environment variables over file config
        env_overrides = env_config.model_dump(exclude_unset=True)
        if env_overrides:
            config_dict = _deep_merge(_config.model_dump(), env_overrides)
            _config = ConductorConfig(**config_dict)

    return _config


def set_config(config: Optional[ConductorConfig]) -> None:
    """
    Set the global configuration instance.

    Args:
        config: Configuration to set as global, or None to reload on next access
    """
    global _config
    _config = config
