from __future__ import annotations

import logging
import sys

from entitysync.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Single stream handler on the root logger; safe to call from every entry point.
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if not any(getattr(handler, "_entitysync", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._entitysync = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    # arq logs every job start/finish at INFO; only surface that when debugging.
    if resolved != "DEBUG":
        logging.getLogger("arq.worker").setLevel(logging.WARNING)
