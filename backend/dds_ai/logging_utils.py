from __future__ import annotations

import logging
import os
import sys

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_configured = False


def setup_logging(level: str | None = None) -> None:
    global _configured

    if _configured:
        return
    lvl = str(level or os.getenv("DDS_LOG_LEVEL") or "INFO").upper()
    root = logging.getLogger("dds_ai")
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_FORMAT))
        root.addHandler(handler)
    root.setLevel(getattr(logging, lvl, logging.INFO))
    _configured = True


def get_logger(name: str) -> logging.Logger:
    setup_logging()
    return logging.getLogger(name)
