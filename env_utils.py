"""Environment helpers for paperdesk (loads .env + typed accessors)."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


# Load .env early for any module importing env_utils.
load_dotenv(Path(__file__).parent / ".env")


def env_present(name: str) -> bool:
    value = os.getenv(name)
    return value is not None and value.strip() != ""


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    if not env_present(name):
        return default
    return str(os.getenv(name)).strip()


def env_float(name: str, default: float) -> float:
    if not env_present(name):
        return default
    try:
        return float(str(os.getenv(name)).strip())
    except (TypeError, ValueError):
        return default


def _resolve_root() -> Path:
    here = Path(__file__).resolve().parent
    root = Path(env_str("PAPERDESK_ROOT", str(here)) or str(here)).expanduser()
    if not root.is_absolute():
        root = (here / root).resolve()
    return root


PAPERDESK_ROOT = str(_resolve_root())
PAPERDESK_RUNTIME_DIR = env_str("PAPERDESK_RUNTIME_DIR", str(Path(PAPERDESK_ROOT) / "state"))
PAPERDESK_DB_PATH = env_str("PAPERDESK_DB_PATH", str(Path(PAPERDESK_RUNTIME_DIR) / "paperdesk.db"))
PAPERDESK_CONFIG_FILE = env_str("PAPERDESK_CONFIG_FILE", str(Path(PAPERDESK_ROOT) / "paperdesk.yaml"))
