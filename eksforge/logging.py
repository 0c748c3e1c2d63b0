"""Logging configuration and the output sink used by the workflow."""
import logging
import sys
import threading
from contextlib import contextmanager
from typing import Optional, TextIO


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Set up a logger with the specified name and log level.

    Args:
        name: The name of the logger
        level: The logging level (default: logging.INFO)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Don't add handlers if they're already configured
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


class OutputSink:
    """Where the workflow and its tasks report progress.

    One sink is created per run and passed down explicitly. ``discarding()``
    mutes progress messages for the duration of a block (dry runs) while
    ``write()`` still reaches the output stream.
    """

    def __init__(self, logger: Optional[logging.Logger] = None, stream: Optional[TextIO] = None):
        self.logger = logger or logging.getLogger("eksforge")
        self.stream = stream or sys.stdout
        self._muted = 0
        self._lock = threading.Lock()

    @property
    def muted(self) -> bool:
        return self._muted > 0

    @contextmanager
    def discarding(self):
        with self._lock:
            self._muted += 1
        try:
            yield self
        finally:
            with self._lock:
                self._muted -= 1

    def _log(self, level: int, message: str) -> None:
        if not self.muted:
            self.logger.log(level, message)

    def debug(self, message: str) -> None:
        self._log(logging.DEBUG, message)

    def info(self, message: str) -> None:
        self._log(logging.INFO, message)

    def success(self, message: str) -> None:
        self._log(logging.INFO, f"✅ {message}")

    def warning(self, message: str) -> None:
        self._log(logging.WARNING, f"⚠️  {message}")

    def critical(self, message: str) -> None:
        self._log(logging.CRITICAL, f"❌ {message}")

    def write(self, text: str) -> None:
        """Write a document (e.g. a dry-run config) straight to the stream."""
        with self._lock:
            self.stream.write(text)
            if not text.endswith("\n"):
                self.stream.write("\n")
            self.stream.flush()
