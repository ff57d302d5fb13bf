"""
palettekit Structured Logging
Records go through loguru's shared logger; sinks belong to the host.
"""
import sys
from typing import Dict, Any, Optional

from loguru import logger

from palettekit.config import config

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {message} | {extra}"


class StructuredLogger:
    """Emits structured records; installs a sink only when asked to."""

    def __init__(self):
        self._handler_id: Optional[int] = None

    def add_sink(self, sink=sys.stderr, level: Optional[str] = None) -> int:
        """
        Install a palettekit-formatted sink.

        Replaces the sink this logger installed earlier, if any. Handlers
        registered elsewhere are left untouched.
        """
        self.remove_sink()
        self._handler_id = logger.add(
            sink,
            format=LOG_FORMAT,
            level=(level or config.LOG_LEVEL).upper(),
            serialize=False
        )
        return self._handler_id

    def remove_sink(self):
        if self._handler_id is not None:
            logger.remove(self._handler_id)
            self._handler_id = None

    def _emit(self, level: str, message: str, extra: Optional[Dict[str, Any]]):
        target = logger.bind(**extra) if extra else logger
        # depth=2 attributes the record to the caller of info()/warning()
        target.opt(depth=2).log(level, message)

    def info(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self._emit("INFO", message, extra)

    def warning(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self._emit("WARNING", message, extra)

    def error(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self._emit("ERROR", message, extra)

    def debug(self, message: str, extra: Optional[Dict[str, Any]] = None):
        self._emit("DEBUG", message, extra)


_logger: Optional[StructuredLogger] = None


def get_logger() -> StructuredLogger:
    """Get or create the process-wide logger."""
    global _logger
    if _logger is None:
        _logger = StructuredLogger()
    return _logger
