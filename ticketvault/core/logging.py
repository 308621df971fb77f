from __future__ import annotations

import logging
import sys

from ticketvault.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
# Quiet chatty dependencies unless debugging them explicitly.
_NOISY_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "httpx")


def configure_logging(level: str | None = None) -> None:
    settings = get_settings()
    resolved = (level or settings.log_level or "INFO").upper()
    root = logging.getLogger()
    if not any(getattr(handler, "_ticketvault", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._ticketvault = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(resolved)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))
