"""Configuration helpers for the DOCI registry."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_DATA_ROOT = Path.home() / "doci-data"
DEFAULT_RESEARCHER_PREFIX = "10.DOCIR"


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Runtime configuration loaded from env vars with sensible defaults."""

    data_dir: Path = Field(default_factory=lambda: DEFAULT_DATA_ROOT)
    db_filename: str = "registry.sqlite3"
    log_level: str = "INFO"
    log_json: bool = False
    researcher_prefix: str = DEFAULT_RESEARCHER_PREFIX
    suffix_width: int = 6
    allocation_retries: int = 3
    content_backend: str = "local"
    ipfs_api_url: str = "http://127.0.0.1:5001/api/v0"
    ledger_url: str | None = None
    anchor_on_register: bool = True
    auth_header: str = "X-User-Id"

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_filename

    @property
    def content_dir(self) -> Path:
        return self.data_dir / "content"

    def ensure_directories(self) -> None:
        """Create data directories if they are missing."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def load(cls) -> "Settings":
        load_dotenv()
        data_dir = Path(os.environ.get("DOCI_DATA_DIR", DEFAULT_DATA_ROOT))
        return cls(
            data_dir=data_dir,
            db_filename=os.environ.get("DOCI_DB_FILENAME", "registry.sqlite3"),
            log_level=os.environ.get("DOCI_LOG_LEVEL", "INFO"),
            log_json=_env_flag("DOCI_LOG_JSON", False),
            researcher_prefix=os.environ.get(
                "DOCI_RESEARCHER_PREFIX", DEFAULT_RESEARCHER_PREFIX
            ),
            suffix_width=int(os.environ.get("DOCI_SUFFIX_WIDTH", "6")),
            allocation_retries=int(os.environ.get("DOCI_ALLOCATION_RETRIES", "3")),
            content_backend=os.environ.get("DOCI_CONTENT_BACKEND", "local"),
            ipfs_api_url=os.environ.get(
                "DOCI_IPFS_API_URL", "http://127.0.0.1:5001/api/v0"
            ),
            ledger_url=os.environ.get("DOCI_LEDGER_URL") or None,
            anchor_on_register=_env_flag("DOCI_ANCHOR_ON_REGISTER", True),
            auth_header=os.environ.get("DOCI_AUTH_HEADER", "X-User-Id"),
        )


def get_settings() -> Settings:
    """Convenience accessor for lazy modules."""
    settings = Settings.load()
    settings.ensure_directories()
    return settings
