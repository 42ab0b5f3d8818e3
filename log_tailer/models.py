"""Data model for the tail -> classify -> deliver pipeline."""

import os
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional

STDIN_MARKER = "-"


class Channel(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


class ConfigError(ValueError):
    """Startup configuration is missing or malformed."""


@dataclass(frozen=True)
class PathSpec:
    path: str                      # absolute path, glob pattern, or "-"
    format: Optional[str] = None   # None => plain, "json" => container envelope

    @property
    def is_stdin(self) -> bool:
        return self.path == STDIN_MARKER

    @classmethod
    def parse(cls, arg: str, known_formats=("json",)) -> "PathSpec":
        """Parse a `[format:]path` argument, or the stdin marker."""
        if not arg or not arg.strip():
            raise ConfigError("Empty path argument")
        if arg == STDIN_MARKER:
            return cls(path=STDIN_MARKER)

        fmt = None
        path = arg
        if ":" in arg:
            prefix, rest = arg.split(":", 1)
            if prefix in known_formats:
                fmt, path = prefix, rest
            elif prefix.isalpha() and len(prefix) > 1:
                raise ConfigError(f"Unknown format '{prefix}' in {arg!r}")

        if not path:
            raise ConfigError(f"No path given in {arg!r}")
        if path == STDIN_MARKER:
            raise ConfigError("Format selection is not supported for stdin")

        path = os.path.abspath(os.path.expanduser(path))
        return cls(path=path, format=fmt)


@dataclass(frozen=True)
class ClassifiedLine:
    content: str
    channel: Channel


@dataclass(frozen=True)
class Identity:
    user_id: str
    agent_id: Optional[str] = None


@dataclass(frozen=True)
class LogRecord:
    user_id: str
    agent_id: Optional[str]
    content: str
    stream: Channel

    @classmethod
    def from_line(cls, identity: Identity, content: str, channel: Channel) -> "LogRecord":
        return cls(
            user_id=identity.user_id,
            agent_id=identity.agent_id,
            content=content,
            stream=channel,
        )


def record_to_row(record: LogRecord) -> dict:
    """Convert a LogRecord to the row shape inserted into the store."""
    row = asdict(record)
    row["stream"] = record.stream.value
    return row


@dataclass
class DeliveryTask:
    record: LogRecord
    max_attempts: int
    attempts: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts
