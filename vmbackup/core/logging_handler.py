"""
Logging setup for console and rotating file output.
"""
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from vmbackup.core.config import Settings

APP_LOGGER = "vmbackup"

# Global handler instances
_file_log_handler = None
_console_log_handler = None


def get_file_log_handler(
    log_dir: str,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5
) -> RotatingFileHandler:
    """Get the global file log handler instance."""
    global _file_log_handler
    if _file_log_handler is None:
        # Ensure log directory exists
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        log_file = log_path / "vmbackup.log"
        _file_log_handler = RotatingFileHandler(
            filename=str(log_file),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )

        # Set detailed formatter for file logs
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        _file_log_handler.setFormatter(formatter)

    return _file_log_handler


def setup_logging(settings: Settings, console: bool = True) -> logging.Logger:
    """
    Configure the application logger.

    Only the ``vmbackup`` logger is touched; the root logger is left alone so
    that embedding applications keep their own configuration.

    Args:
        settings: Application settings (LOG_LEVEL, LOG_DIR, rotation limits)
        console: Whether to attach a stderr handler

    Returns:
        The configured application logger
    """
    global _console_log_handler
    logger = logging.getLogger(APP_LOGGER)
    level = logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logger.setLevel(level)

    if console and _console_log_handler is None:
        _console_log_handler = logging.StreamHandler()
        _console_log_handler.setFormatter(logging.Formatter('%(levelname)s - %(name)s - %(message)s'))
        logger.addHandler(_console_log_handler)

    if settings.LOG_DIR:
        try:
            file_handler = get_file_log_handler(
                settings.LOG_DIR,
                settings.LOG_MAX_BYTES,
                settings.LOG_BACKUP_COUNT
            )
            if file_handler not in logger.handlers:
                logger.addHandler(file_handler)
        except OSError as e:
            logger.warning(f"Failed to setup file logging in {settings.LOG_DIR}: {e}")

    return logger


def reset_logging(logger_name: Optional[str] = None):
    """Detach and close all handlers installed by setup_logging."""
    global _file_log_handler, _console_log_handler
    logger = logging.getLogger(logger_name or APP_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    _file_log_handler = None
    _console_log_handler = None
