"""Logging setup for the chat core."""

import logging
import logging.handlers
import pathlib
import sys

from radiochat.config import Settings

# Guards against configuring handlers twice
_logging_initialized = False

# ANSI colours for the console
COLORS = {
    "DEBUG": "\033[36m",     # Cyan
    "INFO": "\033[32m",      # Green
    "WARNING": "\033[33m",   # Yellow
    "ERROR": "\033[31m",     # Red
    "CRITICAL": "\033[35m",  # Magenta
    "RESET": "\033[0m",
}


class ColoredFormatter(logging.Formatter):
    """Console formatter that colours the level name."""

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if levelname in COLORS:
            record.levelname = f"{COLORS[levelname]}{levelname}{COLORS['RESET']}"
        result = super().format(record)
        record.levelname = levelname
        return result


class ContextFilter(logging.Filter):
    """Adds ``short_name`` (last dotted component of the logger name)."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name:
            parts = record.name.split(".")
            record.short_name = parts[-1] if len(parts) > 1 else record.name
        else:
            record.short_name = "root"
        return True


def setup_logging(settings: Settings) -> None:
    """Configure root logging: three rotating files plus the console."""
    global _logging_initialized

    if _logging_initialized:
        return
    _logging_initialized = True

    log_dir = pathlib.Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    level = getattr(logging, settings.log_level, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(logging.DEBUG)

    context_filter = ContextFilter()

    file_format = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s [%(short_name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    console_format = ColoredFormatter(
        "[%(asctime)s] %(levelname)-8s [%(short_name)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    error_format = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s [%(name)s:%(lineno)d] %(message)s\n"
        "    File: %(pathname)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # 1. Main log (configured level and above)
    main_handler = logging.handlers.RotatingFileHandler(
        log_dir / "radiochat.log",
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    main_handler.setLevel(level)
    main_handler.setFormatter(file_format)
    main_handler.addFilter(context_filter)
    root_logger.addHandler(main_handler)

    # 2. Errors only
    error_handler = logging.handlers.RotatingFileHandler(
        log_dir / "errors.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=10,
        encoding="utf-8",
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(error_format)
    error_handler.addFilter(context_filter)
    root_logger.addHandler(error_handler)

    # 3. Debug log
    debug_handler = logging.handlers.RotatingFileHandler(
        log_dir / "debug.log",
        maxBytes=20 * 1024 * 1024,
        backupCount=3,
        encoding="utf-8",
    )
    debug_handler.setLevel(logging.DEBUG)
    debug_handler.setFormatter(file_format)
    debug_handler.addFilter(context_filter)
    root_logger.addHandler(debug_handler)

    # 4. Console
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(console_format)
    console_handler.addFilter(context_filter)
    root_logger.addHandler(console_handler)

    # Quiet down library chatter
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.info(f"Logging: level={settings.log_level} | dir={log_dir.absolute()}")
    logging.info("  radiochat.log (level+), errors.log (ERROR+), debug.log (DEBUG+)")
