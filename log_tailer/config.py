"""Configuration loading from CLI args, env vars, and optional YAML file."""

import argparse
import logging
import os
from dataclasses import dataclass, field

import yaml

from log_tailer.delivery import DEFAULT_RETRY_ATTEMPTS, DEFAULT_RETRY_DELAY
from log_tailer.models import ConfigError, PathSpec
from log_tailer.sink import DEFAULT_TIMEOUT_SECONDS
from log_tailer.tailer import DEFAULT_POLL_INTERVAL

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Config:
    paths: tuple[PathSpec, ...] = field(default_factory=tuple)
    jwt: str = ""
    supabase_url: str = ""
    supabase_anon_key: str = ""
    table: str = "logs"
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_delay: float = DEFAULT_RETRY_DELAY
    poll_interval: float = DEFAULT_POLL_INTERVAL
    request_timeout: float = DEFAULT_TIMEOUT_SECONDS
    log_level: str = "INFO"


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="supabase-tailer",
        description="Tail log files and forward each line to Supabase",
    )
    parser.add_argument(
        "paths", nargs="+",
        help="Files or glob patterns to tail, optionally prefixed 'json:'; '-' reads stdin",
    )
    parser.add_argument("--jwt", default=None, help="JWT token for authentication")
    parser.add_argument("--table", default=None, help="Table to insert log rows into")
    parser.add_argument(
        "--config", default=None,
        help="Path to YAML config file for delivery settings",
    )
    parser.add_argument("--log-level", default=None, help="Diagnostic log level")
    return parser


def load_yaml_config(path: str | None) -> dict:
    """Load settings from a YAML file. Returns empty dict if no path."""
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"Config file {path} not found") from None
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    logger.info("Loaded YAML config from %s", path)
    return data


def _number(value, cast, name: str):
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for {name}: {value!r}") from None


def load_config(cli_args, yaml_data: dict, env=None) -> Config:
    """Build Config from defaults <- YAML <- env vars <- CLI args (highest priority)."""
    if env is None:
        env = os.environ

    jwt = cli_args.jwt or env.get("SUPABASE_JWT", "")
    if not jwt:
        raise ConfigError("No JWT token specified (--jwt or SUPABASE_JWT)")
    supabase_url = env.get("SUPABASE_URL", "")
    if not supabase_url:
        raise ConfigError("SUPABASE_URL is not set")
    supabase_anon_key = env.get("SUPABASE_ANON_KEY", "")
    if not supabase_anon_key:
        raise ConfigError("SUPABASE_ANON_KEY is not set")

    if not cli_args.paths:
        raise ConfigError("No paths specified")
    paths = tuple(PathSpec.parse(p) for p in cli_args.paths)

    retry_delay_ms = env.get("RETRY_DELAY_MS", yaml_data.get("retry_delay_ms"))
    retry_delay = (
        _number(retry_delay_ms, float, "retry_delay_ms") / 1000
        if retry_delay_ms is not None else DEFAULT_RETRY_DELAY
    )
    retry_attempts = _number(
        env.get("RETRY_ATTEMPTS", yaml_data.get("retry_attempts", DEFAULT_RETRY_ATTEMPTS)),
        int, "retry_attempts",
    )
    if retry_attempts < 1:
        raise ConfigError("retry_attempts must be at least 1")

    return Config(
        paths=paths,
        jwt=jwt,
        supabase_url=supabase_url,
        supabase_anon_key=supabase_anon_key,
        table=cli_args.table or env.get("LOG_TABLE") or yaml_data.get("table", "logs"),
        retry_attempts=retry_attempts,
        retry_delay=retry_delay,
        poll_interval=_number(
            env.get("POLL_INTERVAL", yaml_data.get("poll_interval", DEFAULT_POLL_INTERVAL)),
            float, "poll_interval",
        ),
        request_timeout=_number(
            env.get("REQUEST_TIMEOUT", yaml_data.get("request_timeout", DEFAULT_TIMEOUT_SECONDS)),
            float, "request_timeout",
        ),
        log_level=(
            cli_args.log_level or env.get("LOG_LEVEL") or yaml_data.get("log_level", "INFO")
        ).upper(),
    )
