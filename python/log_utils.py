"""
Shared logging utilities for the batch screening service

Configures handlers from the logging section of config.yaml and sanitizes
user-supplied text (entity names, upstream error messages) before it is
written to a log line.
"""

import logging
import re
from pathlib import Path
from typing import Optional

from config_manager import LoggingConfig

logger = logging.getLogger(__name__)


def sanitize_for_logging(text: str) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    # Remove newlines, carriage returns, and other control characters
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    # Collapse multiple spaces
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    # Truncate to reasonable length
    return sanitized[:500] if len(sanitized) > 500 else sanitized


def setup_logging(config: Optional[LoggingConfig] = None) -> None:
    """Install console and file handlers on the root logger.

    Calling it again replaces the handlers it installed earlier, so reloading
    configuration does not duplicate output.

    Args:
        config: Logging section of the configuration (defaults if None)
    """
    config = config or LoggingConfig()
    root_logger = logging.getLogger()

    level = logging.getLevelName(str(config.level).upper())
    if not isinstance(level, int):
        level = logging.INFO
    root_logger.setLevel(level)

    for handler in list(root_logger.handlers):
        if getattr(handler, "_batch_screening", False):
            root_logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(config.format)

    if config.console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler._batch_screening = True
        root_logger.addHandler(console_handler)

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding='utf-8')
        file_handler.setFormatter(formatter)
        file_handler._batch_screening = True
        root_logger.addHandler(file_handler)

    logger.debug("Logging configured: level=%s file=%s", config.level, config.file or "<none>")
