"""One-shot row update against the same Supabase store."""

import argparse
import asyncio
import json
import logging
import os
import sys

from dotenv import load_dotenv

from log_tailer.cli import setup_logging
from log_tailer.models import ConfigError
from log_tailer.sink import SinkError, SinkResult, SupabaseSink

logger = logging.getLogger(__name__)


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="supabase-updater", description="Update a row in supabase",
    )
    parser.add_argument("--jwt", default=None, help="JWT token for authentication")
    parser.add_argument("table", help="Table to update")
    parser.add_argument("id", help="ID of the row to update")
    parser.add_argument("json", help="JSON to update the row with")
    parser.add_argument(
        "condition", nargs="?", default=None,
        help="Optional condition in the format col=value",
    )
    return parser


def parse_condition(condition: str | None) -> tuple[str, str] | None:
    if not condition:
        return None
    column, sep, value = condition.partition("=")
    if not sep or not column:
        raise ConfigError(f"Condition must look like col=value, got {condition!r}")
    return column, value


def parse_values(raw: str) -> dict:
    try:
        values = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON: {e}") from e
    if not isinstance(values, dict):
        raise ConfigError("JSON must be an object")
    return values


async def update_row(sink: SupabaseSink, args) -> SinkResult:
    return await sink.update(
        args.table, args.id, parse_values(args.json), parse_condition(args.condition),
    )


async def _run(args, jwt: str, env) -> SinkResult:
    async with SupabaseSink(
        env.get("SUPABASE_URL", ""), env.get("SUPABASE_ANON_KEY", ""), jwt,
    ) as sink:
        return await update_row(sink, args)


def main(argv=None, env=None) -> int:
    load_dotenv()
    setup_logging("WARNING")
    if env is None:
        env = os.environ

    args = build_cli_parser().parse_args(argv)
    jwt = args.jwt or env.get("SUPABASE_JWT", "")
    if not jwt:
        logger.error("Error: No JWT token specified")
        return 2

    try:
        parse_values(args.json)
        parse_condition(args.condition)
        result = asyncio.run(_run(args, jwt, env))
    except (ConfigError, SinkError) as e:
        logger.error("Error: %s", e)
        return 2

    if not result.ok:
        logger.error("Error: %s", result.error)
        return 1
    print(json.dumps(result.data, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
