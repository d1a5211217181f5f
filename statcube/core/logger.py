"""
STATCUBE Logging System

This module provides centralized logging for the cube engine.
Console output for operators, plus a build log handler that keeps each build's
records so they can be stored inside the cube it produced.
"""

import logging
import sys
from typing import Optional

from .config import Config
from .build_log import BuildLogHandler

# One handler per process, shared by every Logger, so a build's records are
# collected no matter which component emitted them.
_build_log_handler = BuildLogHandler()


def get_build_log_handler() -> BuildLogHandler:
    return _build_log_handler


class Logger:
    """Centralized logging system with per-build capture."""

    def __init__(self, name: str = "statcube", level: str = "INFO", config: Optional[Config] = None):
        """Initialize logger.

        Args:
            name: Logger name
            level: Log level used when the configuration does not set one
            config: Optional Config instance
        """
        self.name = name
        self.config = config or Config()

        config_level = self.config.get('logging.level', level)
        self.level = getattr(logging, str(config_level).upper(), logging.INFO)

        self.build_log = _build_log_handler
        self.logger = self._setup_logger()

    def _setup_logger(self) -> logging.Logger:
        """Set up logger with console and build log handlers."""
        logger = logging.getLogger(self.name)
        logger.setLevel(self.level)

        # Handlers live on this logger only; propagating would emit every record twice.
        logger.handlers.clear()
        logger.propagate = False

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.level)
        console_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        console_handler.setFormatter(console_formatter)
        logger.addHandler(console_handler)

        self.build_log.setLevel(self.level)
        logger.addHandler(self.build_log)

        return logger

    def info(self, message: str, **kwargs) -> None:
        """Log info message."""
        self.logger.info(message, extra=kwargs)

    def warning(self, message: str, **kwargs) -> None:
        """Log warning message."""
        self.logger.warning(message, extra=kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs) -> None:
        """Log error message."""
        self.logger.error(message, exc_info=exc_info, extra=kwargs)

    def debug(self, message: str, **kwargs) -> None:
        """Log debug message."""
        self.logger.debug(message, extra=kwargs)

    def log_phase_start(self, phase: str, **kwargs) -> None:
        """Log build phase start."""
        self.info(f"Starting {phase} phase", phase=phase, **kwargs)

    def log_phase_complete(self, phase: str, **kwargs) -> None:
        """Log build phase completion."""
        self.info(f"Completed {phase} phase", phase=phase, **kwargs)
