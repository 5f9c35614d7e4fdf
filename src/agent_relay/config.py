"""Configuration management for Agent Relay."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import shlex

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .agents import AgentKind


class RelaySettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    claude_path: str = Field(default="claude", validation_alias="CLAUDE_PATH")
    gemini_path: str = Field(default="gemini", validation_alias="GEMINI_PATH")
    use_daemon: bool = Field(default=False, validation_alias="RELAY_USE_DAEMON")
    task_timeout_ms: int = Field(default=5 * 60 * 1000, validation_alias="RELAY_TASK_TIMEOUT_MS")
    working_directory: Path | None = Field(default=None, validation_alias="RELAY_WORKDIR")
    daemon_mode: str = Field(default="interactive", validation_alias="RELAY_DAEMON_MODE")
    daemon_command_prefix: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), validation_alias="RELAY_DAEMON_PREFIX"
    )
    daemon_warmup_seconds: float = Field(default=3.0, validation_alias="RELAY_DAEMON_WARMUP_SECONDS")
    daemon_poll_interval: float = Field(default=0.5, validation_alias="RELAY_DAEMON_POLL_INTERVAL")
    decision_timeout_seconds: float = Field(default=60.0, validation_alias="RELAY_DECISION_TIMEOUT")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    task_log_dir: Path | None = Field(default=None, validation_alias="RELAY_TASK_LOG_DIR")
    log_level: str = Field(default="INFO", validation_alias="RELAY_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "RELAY_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("daemon_mode")
    @classmethod
    def _normalize_daemon_mode(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"auto", "interactive"}:
            raise ValueError("RELAY_DAEMON_MODE must be 'auto' or 'interactive'")
        return normalized

    @field_validator("daemon_command_prefix", mode="before")
    @classmethod
    def _parse_command_prefix(cls, value):
        if value is None or value == "":
            return ()
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            return tuple(shlex.split(value))
        raise TypeError("RELAY_DAEMON_PREFIX must be a list of arguments or a shell-style string")

    @field_validator(
        "task_timeout_ms",
        "daemon_poll_interval",
        "decision_timeout_seconds",
    )
    @classmethod
    def _require_positive(cls, value):
        if value <= 0:
            raise ValueError("Timeouts and poll intervals must be > 0")
        return value

    @field_validator("daemon_warmup_seconds")
    @classmethod
    def _require_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("RELAY_DAEMON_WARMUP_SECONDS must be >= 0")
        return value

    def executable_for(self, agent: AgentKind) -> str:
        """Return the configured executable for ``agent``."""

        if agent is AgentKind.CLAUDE:
            return self.claude_path
        return self.gemini_path


@lru_cache(maxsize=1)
def get_settings() -> RelaySettings:
    """Return cached settings instance."""

    settings = RelaySettings()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    if settings.working_directory is not None:
        settings.working_directory = settings.working_directory.expanduser().resolve()
    if settings.task_log_dir is not None:
        settings.task_log_dir = settings.task_log_dir.expanduser().resolve()
    return settings


__all__ = ["RelaySettings", "get_settings"]
