"""Supabase Log Tailer — Entry Point."""

import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

from log_tailer.config import build_cli_parser, load_config, load_yaml_config
from log_tailer.identity import extract_identity
from log_tailer.models import ConfigError
from log_tailer.pipeline import Pipeline
from log_tailer.sink import SupabaseSink

LOG_FORMAT = "%(asctime)s [TAILER] %(levelname)s %(name)s %(message)s"

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )


async def run_pipeline(config, identity) -> None:
    async with SupabaseSink(
        config.supabase_url,
        config.supabase_anon_key,
        config.jwt,
        timeout_seconds=config.request_timeout,
    ) as sink:
        pipeline = Pipeline(
            config.paths,
            sink,
            identity,
            table=config.table,
            retry_attempts=config.retry_attempts,
            retry_delay=config.retry_delay,
            poll_interval=config.poll_interval,
        )
        main_task = asyncio.current_task()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, main_task.cancel)

        try:
            await pipeline.run()
        except asyncio.CancelledError:
            logger.info("Shutdown signal received, stopping...")
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            pipeline.metrics.log_summary()


def main(argv=None) -> int:
    load_dotenv()
    setup_logging()

    args = build_cli_parser().parse_args(argv)
    try:
        config = load_config(args, load_yaml_config(args.config))
        setup_logging(config.log_level)
        identity = extract_identity(config.jwt)
    except ConfigError as e:
        logger.error("Error: %s", e)
        return 2

    logger.info(
        "Config: table=%s, retry_attempts=%d, retry_delay=%.1fs, watching %d path(s)",
        config.table, config.retry_attempts, config.retry_delay, len(config.paths),
    )

    try:
        asyncio.run(run_pipeline(config, identity))
    except Exception as e:
        logger.error("Fatal: %s", e)
        return 1
    logger.info("Supabase Log Tailer stopped.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
