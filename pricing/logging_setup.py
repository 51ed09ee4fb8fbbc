"""loguru configuration shared by the CLI and batch runs.

Library modules log through the standard ``logging`` module; the
InterceptHandler forwards those records to loguru so everything lands in
the same sinks.
"""
import inspect
import logging
import sys

from loguru import logger

from config import LOG_FILE, LOGS_DIR


class InterceptHandler(logging.Handler):
    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller outside the logging module
        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(verbose=False):
    """Configure loguru file + stderr logging with rotation."""
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    logger.remove()
    logger.add(
        str(LOG_FILE),
        rotation="5 MB",
        retention=5,
        level="DEBUG",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    )
    logger.add(
        sys.stderr,
        level="DEBUG" if verbose else "INFO",
        format="{time:HH:mm:ss} | {level: <8} | {message}",
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=logging.DEBUG, force=True)
    # Third-party chatter
    for noisy in ("urllib3", "httpx", "httpcore", "anthropic"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    def _exception_hook(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logger.opt(exception=(exc_type, exc_value, exc_tb)).error("Unhandled exception: {}", exc_value)

    sys.excepthook = _exception_hook
