from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

# Author: Daniel Neugent

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_DB_PATH = BASE_DIR / "data" / "snapshelf.db"
DEFAULT_STORAGE_DIR = BASE_DIR / "data" / "blobs"
DEFAULT_MAX_UPLOAD_BYTES = 50 * 1024 * 1024  # 50MB
STORAGE_BACKENDS = {"local", "b2"}

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ConfigError(RuntimeError):
    """Raised when the environment does not describe a usable setup."""


@dataclass(frozen=True)
class Settings:
    db_path: Path
    storage_backend: str
    local_storage_dir: Path
    b2_key_id: Optional[str]
    b2_app_key: Optional[str]
    b2_bucket_name: Optional[str]
    site_url: str
    max_upload_bytes: int
    sharex_rate_limit: int
    sharex_rate_window: int
    log_level: str


def _int_setting(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from ``env`` (the process environment plus ``.env`` by default)."""
    if env is None:
        load_dotenv()
        env = os.environ

    backend = (env.get("SNAPSHELF_STORAGE") or "local").strip().lower()
    if backend not in STORAGE_BACKENDS:
        raise ConfigError(
            f"SNAPSHELF_STORAGE must be one of {sorted(STORAGE_BACKENDS)}, got {backend!r}"
        )

    b2 = {
        "KEY_ID": env.get("KEY_ID"),
        "APP_KEY": env.get("APP_KEY"),
        "BUCKET_NAME": env.get("BUCKET_NAME"),
    }
    if backend == "b2":
        missing = [name for name, value in b2.items() if not value]
        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}"
            )

    db_path = env.get("SNAPSHELF_DB_PATH")
    storage_dir = env.get("SNAPSHELF_STORAGE_DIR")
    return Settings(
        db_path=Path(db_path) if db_path else DEFAULT_DB_PATH,
        storage_backend=backend,
        local_storage_dir=Path(storage_dir) if storage_dir else DEFAULT_STORAGE_DIR,
        b2_key_id=b2["KEY_ID"],
        b2_app_key=b2["APP_KEY"],
        b2_bucket_name=b2["BUCKET_NAME"],
        site_url=(env.get("SNAPSHELF_SITE_URL") or "http://localhost:8080").rstrip("/"),
        max_upload_bytes=_int_setting(
            env, "SNAPSHELF_MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES
        ),
        sharex_rate_limit=_int_setting(env, "SNAPSHELF_SHAREX_RATE_LIMIT", 100),
        sharex_rate_window=_int_setting(env, "SNAPSHELF_SHAREX_RATE_WINDOW", 60 * 60),
        log_level=(env.get("SNAPSHELF_LOG_LEVEL") or "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    """Send every module's logger to stderr with a timestamped format."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
