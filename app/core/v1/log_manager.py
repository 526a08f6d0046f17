"""Log Manager for application logging."""

import logging
import sys
from typing import Any, Dict, Optional
from datetime import datetime

from app.settings.v1.general import SETTINGS


class LogManager:
    """Log Manager class for handling application logs."""

    def __init__(self, name: str = __name__, **context: Any):
        """Initialize Log Manager.

        Args:
            name (str): Logger name.
            **context: Context rendered with every message of this instance
                (e.g. case_id and run_id of a liquidation run).
        """
        self.name = name
        self.context: Dict[str, Any] = dict(context)
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, SETTINGS.LOG_LEVEL.upper()))

        # Avoid duplicate handlers
        if not self.logger.handlers:
            self._setup_logger()

    def _setup_logger(self):
        """Set up logger configuration."""
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, SETTINGS.LOG_LEVEL.upper()))

        formatter = logging.Formatter(
            fmt=SETTINGS.LOG_FORMAT,
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

    def bind(self, **context: Any) -> "LogManager":
        """Return a logger for the same name carrying additional context.

        Args:
            **context: Context merged over the current one.

        Returns:
            LogManager: New bound logger.
        """
        return LogManager(self.name, **{**self.context, **context})

    def info(self, message: str, **kwargs):
        """Log info message.

        Args:
            message (str): Log message.
            **kwargs: Additional context information.
        """
        self.logger.info(f"{message} {self._format_context(kwargs)}".rstrip())

    def warning(self, message: str, **kwargs):
        """Log warning message.

        Args:
            message (str): Log message.
            **kwargs: Additional context information.
        """
        self.logger.warning(f"{message} {self._format_context(kwargs)}".rstrip())

    def error(self, message: str, **kwargs):
        """Log error message.

        Args:
            message (str): Log message.
            **kwargs: Additional context information.
        """
        self.logger.error(f"{message} {self._format_context(kwargs)}".rstrip())

    def debug(self, message: str, **kwargs):
        """Log debug message.

        Args:
            message (str): Log message.
            **kwargs: Additional context information.
        """
        self.logger.debug(f"{message} {self._format_context(kwargs)}".rstrip())

    def _format_context(self, context: dict) -> str:
        """Format context information for logging.

        Args:
            context (dict): Context information.

        Returns:
            str: Formatted context string.
        """
        merged = {**self.context, **context}
        if not merged:
            return ""

        formatted_items = []
        for key, value in merged.items():
            if isinstance(value, str):
                formatted_items.append(f"{key}='{value}'")
            else:
                formatted_items.append(f"{key}={value}")

        return f"[{', '.join(formatted_items)}]"

    def log_request(self, method: str, path: str, client: Optional[str] = None):
        """Log HTTP request.

        Args:
            method (str): HTTP method.
            path (str): Request path.
            client (Optional[str]): Client host, when known.
        """
        self.info(
            f"HTTP Request: {method} {path}",
            client=client,
            timestamp=datetime.now().isoformat()
        )

    def log_response(self, method: str, path: str, status_code: int, duration: float):
        """Log HTTP response.

        Args:
            method (str): HTTP method.
            path (str): Request path.
            status_code (int): HTTP status code.
            duration (float): Request duration in seconds.
        """
        self.info(
            f"HTTP Response: {method} {path} - {status_code}",
            duration=f"{duration:.3f}s",
            timestamp=datetime.now().isoformat()
        )
