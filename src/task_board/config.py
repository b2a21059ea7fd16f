"""
Runtime configuration read from environment variables.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_ATTACHMENT_MAX_MB = 10


@dataclass(frozen=True)
class Settings:
    """Resolved settings for the service, CLI and client helpers."""

    database_path: str = "task_board.db"
    blob_storage_dir: str = "blobs"
    public_base_url: str = "http://localhost:8080"
    attachment_max_mb: float = DEFAULT_ATTACHMENT_MAX_MB
    log_level: str = "INFO"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from the environment.

    Args:
        environ: Mapping to read from (defaults to ``os.environ``)

    Raises:
        ValueError: If ATTACHMENT_MAX_MB is not a positive number
    """
    env = os.environ if environ is None else environ

    raw_max = env.get("ATTACHMENT_MAX_MB", str(DEFAULT_ATTACHMENT_MAX_MB))
    try:
        attachment_max_mb = float(raw_max)
    except ValueError:
        raise ValueError(f"ATTACHMENT_MAX_MB must be a number, got '{raw_max}'")
    if attachment_max_mb <= 0:
        raise ValueError("ATTACHMENT_MAX_MB must be positive")

    return Settings(
        database_path=env.get("DATABASE_PATH", Settings.database_path),
        blob_storage_dir=env.get("BLOB_STORAGE_DIR", Settings.blob_storage_dir),
        public_base_url=env.get("PUBLIC_BASE_URL", Settings.public_base_url).rstrip("/"),
        attachment_max_mb=attachment_max_mb,
        log_level=env.get("LOG_LEVEL", Settings.log_level).upper(),
    )
