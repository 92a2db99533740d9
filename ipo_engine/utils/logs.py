from __future__ import annotations

import logging

from ipo_engine.config import settings

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Process-wide logging setup. Called once by the hosting entry point."""
    lvl = getattr(logging, (level or settings.LOG_LEVEL or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=lvl, format=_FORMAT)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def kv(**fields: object) -> str:
    """Render structured fields as ``k=v`` pairs for log lines."""
    return " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)
