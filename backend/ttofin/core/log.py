# backend/ttofin/core/log.py
import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Root logger'a tek bir stream handler bağlar (tekrar çağrılırsa sadece seviyeyi günceller)."""
    root = logging.getLogger()
    root.setLevel((level or "INFO").upper())
    if any(getattr(h, "_ttofin", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._ttofin = True  # type: ignore[attr-defined]
    root.addHandler(handler)
