"""
Commons Logging Framework

Centralized logging configuration for the runtime, persistence and API layers.
Structured context is passed as keyword arguments and rendered after the message.

Usage:
    from backend.utils.logger import get_logger
    logger = get_logger(__name__)

    logger.info("Tool executed", tool_name="lookup", duration_ms=12)
    logger.exception("Run failed", session_id="abc")
"""

import logging
import logging.handlers
import os
import sys
from typing import Any, Dict, Optional


# =============================================================================
# Log Level Constants
# =============================================================================

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

ROOT_LOGGER_NAME = "commons"


# =============================================================================
# Formatter
# =============================================================================

class CommonsFormatter(logging.Formatter):
    """
    Formatter that appends structured context and a file location.

    Output:
        2025-01-04 12:00:00 | INFO     | registry.py:clear:88 | Context cleared | session_id=abc
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
        "RESET": "\033[0m",
    }

    def __init__(self, fmt: str, datefmt: Optional[str] = None, use_colors: bool = False):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        filename = os.path.basename(record.pathname) if record.pathname else "unknown"
        record.location = f"{filename}:{record.funcName}:{record.lineno}"

        context = getattr(record, "context", None) or {}
        parts = [f"{key}={value}" for key, value in context.items()]
        record.context_str = " | " + " ".join(parts) if parts else ""

        if self.use_colors and record.levelname in self.COLORS:
            record.levelname_colored = (
                f"{self.COLORS[record.levelname]}{record.levelname:8}{self.COLORS['RESET']}"
            )
        else:
            record.levelname_colored = f"{record.levelname:8}"

        return super().format(record)


# =============================================================================
# Context-Aware Logger
# =============================================================================

class CommonsLogger(logging.LoggerAdapter):
    """
    Logger adapter that turns extra keyword arguments into structured context.

    Example:
        logger.info("Session created", session_id="abc", agent_id="agent-1")
    """

    _STANDARD_KEYS = {"exc_info", "stack_info", "stacklevel", "extra"}

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        context = dict(self.extra)
        for key in list(kwargs.keys()):
            if key not in self._STANDARD_KEYS:
                context[key] = kwargs.pop(key)

        extra = dict(kwargs.get("extra") or {})
        extra["context"] = context
        kwargs["extra"] = extra
        return msg, kwargs


# =============================================================================
# Configuration
# =============================================================================

_initialized = False


def configure_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    log_to_console: bool = True,
    use_colors: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 7,
    force: bool = False,
) -> None:
    """
    Configure the "commons" logger hierarchy. Only the first call has effect
    unless force is set.

    Args:
        log_level: Minimum console level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for a rotating commons.log file; no file output if None
        log_to_console: Whether to output logs to stderr
        use_colors: Whether to colorize console level names
        max_bytes: Maximum size of each log file before rotation
        backup_count: Number of rotated files to keep
        force: Reconfigure even if logging was already set up
    """
    global _initialized

    if _initialized and not force:
        return

    level = LOG_LEVELS.get(log_level.upper(), logging.INFO)

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    console_format = "%(asctime)s | %(levelname_colored)s | %(location)s | %(message)s%(context_str)s"
    file_format = "%(asctime)s | %(levelname)-8s | %(name)s | %(location)s | %(message)s%(context_str)s"

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(
            CommonsFormatter(console_format, datefmt="%Y-%m-%d %H:%M:%S", use_colors=use_colors)
        )
        root.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, "commons.log"),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(CommonsFormatter(file_format, datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(file_handler)

    for module_name in ["aiohttp", "anthropic", "sqlalchemy"]:
        logging.getLogger(module_name).setLevel(logging.WARNING)

    _initialized = True


def get_logger(name: Optional[str] = None) -> CommonsLogger:
    """
    Get a logger for the given module.

    "backend.commons.runtime.registry" maps to "commons.runtime.registry" so that
    every module logs under the configured root.
    """
    if not _initialized:
        configure_logging(
            log_level=os.getenv("COMMONS_LOG_LEVEL", "INFO"),
            log_dir=os.getenv("COMMONS_LOG_DIR") or None,
        )

    if name:
        if name.startswith("backend."):
            name = name[len("backend."):]
        logger_name = name if name.startswith(ROOT_LOGGER_NAME) else f"{ROOT_LOGGER_NAME}.{name}"
    else:
        logger_name = ROOT_LOGGER_NAME

    return CommonsLogger(logging.getLogger(logger_name))


__all__ = [
    "configure_logging",
    "get_logger",
    "CommonsLogger",
    "CommonsFormatter",
    "LOG_LEVELS",
]
