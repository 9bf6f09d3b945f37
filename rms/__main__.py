"""
Entry point for running rms via `python -m rms`.

Loads the configuration, sets up logging and runs the orchestrator until
the server exits.
"""

import asyncio
import contextlib
import logging
import sys
from logging.handlers import RotatingFileHandler

from .config import Config, load_config
from .errors import RmsError
from .orchestrator import Orchestrator

logger = logging.getLogger("rms")


def setup_logging(config: Config):
    """Console logging, plus a rotating log file when one is configured."""
    log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)
    handlers = [console_handler]

    if config.logging.file:
        file_handler = RotatingFileHandler(
            config.logging.file,
            maxBytes=config.logging.max_bytes,
            backupCount=config.logging.backup_count,
        )
        file_handler.setFormatter(log_formatter)
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, str(config.logging.level).upper(), logging.INFO),
        handlers=handlers,
        force=True,
    )


async def run(config: Config) -> int:
    """Run the orchestrator, with the control API alongside when enabled."""
    orchestrator = Orchestrator(config, console=sys.stdin)

    api_task = None
    if config.api.enabled:
        from .api import serve_api

        api_task = asyncio.create_task(serve_api(orchestrator))

    try:
        return await orchestrator.run()
    finally:
        if api_task is not None:
            api_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await api_task


def main(argv=None) -> int:
    """Run the supervisor."""
    argv = sys.argv[1:] if argv is None else argv
    config_path = argv[0] if argv else None

    try:
        config = load_config(config_path)
    except (OSError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(config)

    try:
        return asyncio.run(run(config))
    except (RmsError, OSError) as e:
        logger.error(f"Exiting: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
