"""
Main entry point for the ytpipe service.

Loads the configuration (environment variables take precedence over the
config file), sets up logging, and serves the aiohttp application until
interrupted.
"""

import os
import sys
import logging
import asyncio
from pathlib import Path
from types import TracebackType
from typing import Mapping, Type

from aiohttp import web

from ytpipe._version import __version__
from ytpipe.logging_config import ACCESS_LOG_FORMAT, setup_logging
from ytpipe.config import ConfigManager, Settings, apply_env_overrides
from ytpipe.constants import CONFIG_FILE
from ytpipe.web import create_app

def handle_exception(exc_type: Type[BaseException], exc_value: BaseException, exc_traceback: TracebackType):
    """Logs unhandled exceptions from synchronous code."""
    logger = logging.getLogger()
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_traceback)
        return
    logger.critical("Unhandled exception:", exc_info=(exc_type, exc_value, exc_traceback))

def handle_async_exception(loop, context):
    """Logs unhandled exceptions from asyncio tasks."""
    logger = logging.getLogger()
    msg = context.get("exception", context["message"])
    logger.critical(f"Caught exception from asyncio task: {msg}")


def load_settings(environ: Mapping[str, str] = os.environ) -> Settings:
    """Reads the config file named by YTPIPE_CONFIG and applies environment overrides."""
    config_manager = ConfigManager(Path(environ.get('YTPIPE_CONFIG') or CONFIG_FILE))
    return apply_env_overrides(config_manager.load(), environ)


def main():
    settings = load_settings()
    log_path = setup_logging(settings.log_level, keep_archives=settings.log_archive_count)
    sys.excepthook = handle_exception

    loop = asyncio.new_event_loop()
    loop.set_exception_handler(handle_async_exception)

    logging.info(f"ytpipe {__version__} listening on {settings.host}:{settings.port} (log: {log_path})")
    try:
        web.run_app(
            create_app(settings),
            host=settings.host,
            port=settings.port,
            loop=loop,
            handler_cancellation=True,
            access_log_format=ACCESS_LOG_FORMAT,
            print=None,
        )
    except KeyboardInterrupt:
        logging.info("Service interrupted by user.")


if __name__ == "__main__":
    main()
