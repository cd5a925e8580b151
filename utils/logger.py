import logging
import os
import json
from datetime import UTC, datetime
from typing import Optional, Iterable, TypeVar

from colorama import Fore, Style, init
from tqdm import tqdm

init(autoreset=True)

T = TypeVar("T")


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured scraping logs"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "event_type": getattr(record, "event_type", "general"),
            "event_data": getattr(record, "event_data", {}),
        }

        # Add exception info if present
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for console output with event highlighting"""

    COLORS = {
        "DEBUG": Fore.CYAN,
        "INFO": Fore.BLUE,
        "WARNING": Fore.YELLOW,
        "ERROR": Fore.RED,
        "CRITICAL": Fore.MAGENTA + Style.BRIGHT,
    }

    EVENT_COLORS = {
        "discovery": Fore.CYAN,
        "extraction": Fore.GREEN,
        "job": Fore.BLUE,
        "progress": Fore.MAGENTA,
        "checkpoint": Fore.YELLOW,
        "operation": Fore.WHITE + Style.BRIGHT,
        "general": Fore.WHITE,
    }

    def format(self, record):
        record.levelname_colored = (
            self.COLORS.get(record.levelname, Fore.WHITE)
            + record.levelname
            + Style.RESET_ALL
        )

        event_type = getattr(record, "event_type", "general")
        record.event_type_colored = (
            self.EVENT_COLORS.get(event_type, Fore.WHITE)
            + event_type.upper()
            + Style.RESET_ALL
        )

        return super().format(record)


class DefaultEventMetadataFilter(logging.Filter):
    """Ensure log records contain event metadata expected by the formatters."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401 (doc inherited)
        if not hasattr(record, "event_type"):
            record.event_type = "general"
        if not hasattr(record, "event_data"):
            record.event_data = {}
        return True


def setup_logger(
    name: Optional[str] = "scraper",
    level=logging.INFO,
    log_file: Optional[str] = "data/logs/scrape.log",
    console=True,
    structured_file: Optional[str] = None,
):
    """Setup logger with file, console and optional JSON-lines handlers

    Args:
        name: Logger name (``None`` configures the root logger)
        level: Logging level or level name
        log_file: Path to plain-text log file, ``None`` disables it
        console: Whether to enable colored console logging
        structured_file: Path to JSON-lines log file, ``None`` disables it
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Avoid duplicate handlers
    if logger.hasHandlers():
        logger.handlers.clear()

    logger.addFilter(DefaultEventMetadataFilter())

    if log_file:
        # Create logs directory if not exists
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.addFilter(DefaultEventMetadataFilter())
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(event_type)s] - %(message)s"
            )
        )
        logger.addHandler(file_handler)

    if structured_file:
        os.makedirs(os.path.dirname(structured_file) or ".", exist_ok=True)
        json_handler = logging.FileHandler(structured_file, encoding="utf-8")
        json_handler.setLevel(level)
        json_handler.setFormatter(StructuredFormatter())
        logger.addHandler(json_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.addFilter(DefaultEventMetadataFilter())
        console_handler.setFormatter(
            ColoredFormatter(
                "%(asctime)s - %(levelname_colored)s - [%(event_type_colored)s] - %(message)s"
            )
        )
        logger.addHandler(console_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get logger instance for the given name.

    Handlers are attached once by ``setup_logger`` at the entry point; module
    loggers only propagate to it.
    """
    return logging.getLogger(name)


def create_progress_bar(
    iterable: Iterable[T], desc="Progress", unit="it", total=None, disable=False
):
    """Create tqdm progress bar"""
    return tqdm(
        iterable, desc=desc, unit=unit, total=total, colour="green", disable=disable
    )
