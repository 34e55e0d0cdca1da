from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from download_watch import __version__
from download_watch.config import ConfigLoadError, YamlConfigLoader
from download_watch.config.models import ConfigLoadRequest
from download_watch.logging import apply_log_level, init_logging
from download_watch.scheduler.impl import FetchScheduler

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="download-watch",
        description="Periodically download files and keep them up to date",
    )
    parser.add_argument(
        "-f",
        "--config-file",
        default="files.yaml",
        help="Configuration file (default: files.yaml)",
    )
    parser.add_argument(
        "--dotenv",
        default=".env",
        help="Optional .env file with DOWNLOAD_WATCH__* overrides (default: .env)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show more debug output",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"download-watch {__version__}",
        help="Prints current version and exits",
    )
    return parser


def _install_signal_handlers(scheduler: FetchScheduler) -> None:
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGHUP, scheduler.request_reload)
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, scheduler.request_stop)


async def _run(args: argparse.Namespace) -> int:
    loader = YamlConfigLoader(ConfigLoadRequest(yaml_path=args.config_file, dotenv_path=args.dotenv))
    scheduler = FetchScheduler(
        loader.load,
        on_reload=lambda config: apply_log_level(config.logging, verbose=args.verbose),
    )

    # Bootstrap logging so a failing initial load is still reported.
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        config = await scheduler.load_initial()
    except ConfigLoadError as e:
        logger.error("Initial load of config failed. error=%s", e)
        return 1

    init_logging(config.logging, verbose=args.verbose)
    logger.info(
        "Starting download-watch. version=%s config_file=%s files=%d",
        __version__,
        args.config_file,
        len(config.files),
    )

    _install_signal_handlers(scheduler)
    await scheduler.run()
    logger.info("Stopped.")
    return 0


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        exit_code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        exit_code = 0
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
