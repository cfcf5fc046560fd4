"""Application wide logging helpers."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from devicelab.utils.paths import LOG_DIR

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class LoggingService:
    """Central logging configuration helper."""

    def __init__(self, log_dir: Optional[Path] = None, level: int = logging.INFO) -> None:
        self.log_dir = log_dir or LOG_DIR
        self.level = level
        self._configured = False

    def configure(self) -> None:
        if self._configured:
            return
        handlers: list[logging.Handler] = [logging.StreamHandler()]
        file_error: Optional[OSError] = None
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(self.log_dir / "devicelab.log"))
        except OSError as exc:
            file_error = exc
        logging.basicConfig(level=self.level, format=LOG_FORMAT, handlers=handlers)
        self._configured = True
        if file_error is not None:
            self.get_logger(__name__).warning(
                "File logging disabled, console only: %s", file_error
            )

    def get_logger(self, name: Optional[str] = None) -> logging.Logger:
        return logging.getLogger(name)


logging_service = LoggingService()
