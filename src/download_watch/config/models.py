from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import timedelta
from logging import getLevelNamesMapping
from typing import Any, Dict, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_FETCH_TIMEOUT = timedelta(seconds=30)
DEFAULT_COMMAND_SHELL = ("/bin/bash", "-c")

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_SHA256_HEX = re.compile(r"[0-9a-f]{64}")


def parse_duration(value: Any) -> Any:
    """
    Convert Go-style duration strings ("1h30m", "500ms", "5m") into timedelta.

    Anything that is not such a string is returned unchanged so Pydantic can apply its
    own timedelta parsing (numbers are seconds, ISO-8601 strings are accepted).
    """
    if value is None:
        return timedelta(0)
    if not isinstance(value, str):
        return value

    raw = value.strip()
    if not raw or raw == "0":
        return timedelta(0)

    sign = 1.0
    if raw[0] in "+-":
        sign = -1.0 if raw[0] == "-" else 1.0
        raw = raw[1:]

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(raw):
        if match.start() != pos:
            return value
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(raw):
        return value
    return timedelta(seconds=sign * total)


class SourceSettings(BaseModel):
    """Declarative policy of one watched file, keyed by its target path in WatchConfig.files."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str
    fetch_interval: timedelta
    timeout: timedelta = timedelta(0)
    basic_auth: str = ""
    success_command: str = ""
    ignore_etag: bool = False
    sha256: str = ""

    @field_validator("fetch_interval", "timeout", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> Any:
        return parse_duration(value)

    @field_validator("basic_auth", "success_command", "sha256", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("url")
    @classmethod
    def _require_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("url must not be empty")
        return value

    @field_validator("fetch_interval")
    @classmethod
    def _positive_interval(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("fetch_interval must be greater than zero")
        return value

    @field_validator("timeout")
    @classmethod
    def _non_negative_timeout(cls, value: timedelta) -> timedelta:
        if value < timedelta(0):
            raise ValueError("timeout must not be negative")
        return value

    @field_validator("sha256")
    @classmethod
    def _hex_digest(cls, value: str) -> str:
        value = value.strip().lower()
        if value and not _SHA256_HEX.fullmatch(value):
            raise ValueError("sha256 must be 64 hexadecimal characters")
        return value

    @property
    def effective_timeout(self) -> timedelta:
        return self.timeout or DEFAULT_FETCH_TIMEOUT

    @property
    def timeout_seconds(self) -> float:
        return self.effective_timeout.total_seconds()

    @property
    def interval_seconds(self) -> float:
        return self.fetch_interval.total_seconds()


class FileRotationSettings(BaseModel):
    """
    Date-based rotation settings (daily).

    This maps cleanly to Python's standard library TimedRotatingFileHandler behavior.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    backup_count: int = 7


class FileLoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    path: str
    rotation: FileRotationSettings = FileRotationSettings()


class LoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    level: str = "INFO"
    file: Optional[FileLoggingSettings] = None

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.upper() not in getLevelNamesMapping():
            raise ValueError(f"Unknown logging level: {value}")
        return value


class WatchConfig(BaseModel):
    """
    Effective runtime configuration after applying all precedence rules.

    `files` maps each target path to the policy used to keep it up to date.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    files: Dict[str, SourceSettings] = Field(default_factory=dict)
    command_shell: Sequence[str] = DEFAULT_COMMAND_SHELL
    logging: LoggingSettings = LoggingSettings()
    shutdown_grace_seconds: float = Field(default=10.0, ge=0)

    @field_validator("files", mode="before")
    @classmethod
    def _none_as_no_files(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("files")
    @classmethod
    def _non_empty_paths(cls, value: Dict[str, SourceSettings]) -> Dict[str, SourceSettings]:
        for path in value:
            if not path.strip():
                raise ValueError("file target paths must not be empty")
        return value

    @field_validator("command_shell")
    @classmethod
    def _non_empty_shell(cls, value: Sequence[str]) -> Sequence[str]:
        if not value:
            raise ValueError("command_shell needs at least the shell executable")
        return tuple(value)


@dataclass(frozen=True, slots=True)
class ConfigLoadRequest:
    """
    Optional inputs for a configuration loader.

    Implementations may use these to control where configuration is read from.
    """

    yaml_path: str = "files.yaml"
    env_prefix: str = "DOWNLOAD_WATCH__"
    dotenv_path: Optional[str] = ".env"
