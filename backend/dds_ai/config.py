from __future__ import annotations

import os
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _csv(value: str) -> list[str]:
    return [p.strip() for p in value.split(",") if p.strip()]


REPO_ROOT = _repo_root()

APP_DB_PATH = Path(os.getenv("DDS_APP_DB_PATH", str(REPO_ROOT / "backend" / "data" / "app.sqlite")))

TOKEN_TTL_S = int(os.getenv("DDS_TOKEN_TTL_S", str(7 * 24 * 60 * 60)))
CLIENT_URL = os.getenv("DDS_CLIENT_URL", "http://localhost:5173").rstrip("/")
API_URL = os.getenv("DDS_API_URL", "http://localhost:3000").rstrip("/")

# Chat titles are a fixed-length prefix of the opening message.
TITLE_MAX_CHARS = 40

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or None
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta").rstrip("/")
GEMINI_MODELS = _csv(os.getenv("GEMINI_MODELS", "gemini-2.0-flash,gemini-1.5-flash,gemini-1.5-pro"))
GEMINI_TIMEOUT_S = float(os.getenv("GEMINI_TIMEOUT_S", "60"))

IMAGE_KIT_ENDPOINT = os.getenv("IMAGE_KIT_ENDPOINT") or None
IMAGE_KIT_PUBLIC_KEY = os.getenv("IMAGE_KIT_PUBLIC_KEY") or None
IMAGE_KIT_PRIVATE_KEY = os.getenv("IMAGE_KIT_PRIVATE_KEY") or None
