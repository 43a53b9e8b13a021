"""
User-facing run events: the narrow sink the crawler core reports through
"""
from typing import Protocol

from loguru import logger


class RunLogger(Protocol):
    """Sink for user-facing run events; rendering is up to the implementation"""

    def info(self, message: str) -> None: ...

    def warning(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...

    def success(self, message: str) -> None: ...

    def update_progress(self, processed: int, total: int, message: str) -> None: ...


class LoguruRunLogger:
    """Default sink writing run events through loguru"""

    def __init__(self):
        self._log = logger.bind(component="run")

    def info(self, message: str) -> None:
        self._log.info(message)

    def warning(self, message: str) -> None:
        self._log.warning(message)

    def error(self, message: str) -> None:
        self._log.error(message)

    def success(self, message: str) -> None:
        self._log.success(message)

    def update_progress(self, processed: int, total: int, message: str) -> None:
        self._log.info(f"[{processed}/{total}] {message}")
