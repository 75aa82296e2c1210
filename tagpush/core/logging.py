from __future__ import annotations

import logging

from tagpush.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Install one stream handler per process; repeated calls only adjust the level.
    resolved = (level or get_settings().log_level).upper()
    root = logging.getLogger()
    if not any(getattr(handler, "_tagpush", False) for handler in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._tagpush = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(resolved)
    # arq logs every job start/finish at INFO; keep it quieter than our own loggers.
    if resolved != "DEBUG":
        logging.getLogger("arq").setLevel(logging.WARNING)


def token_preview(token: str) -> str:
    # Never log full device tokens.
    return f"{token[:10]}..." if len(token) > 10 else token
