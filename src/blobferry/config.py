"""
Configuration for blobferry.

Settings come from defaults, overridden by ``BLOBFERRY_*`` environment
variables. A ``.env`` file in the project directory is loaded first.
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

PROJECT_DIR = Path(__file__).resolve().parent.parent.parent

load_dotenv(PROJECT_DIR / ".env")

DATA_DIR = Path(os.getenv("BLOBFERRY_DATA_DIR", str(Path.home() / ".blobferry")))

DEFAULT_BINARY_NAME = "blobferry-transfer"
ENV_PREFIX = "BLOBFERRY_"


class Settings(BaseModel):
    """Runtime settings for the transfer coordinator and its server."""

    binary_path: str = DEFAULT_BINARY_NAME
    # Terminal-emulating wrapper; empty string runs the binary directly.
    pty_wrapper: str = "script"
    data_dir: Path = DATA_DIR
    downloads_dir: Path = Path.home() / "Downloads"
    log_dir: Path = Path(tempfile.gettempdir())

    max_concurrent: int = 10
    transfer_idle_seconds: float = 2.0
    peer_idle_seconds: float = 3.0
    tail_interval_seconds: float = 0.5
    log_cleanup_delay_seconds: float = 1.0

    archive_name_attempts: int = 100
    suffix_pool_size: int = 1000
    output_buffer_limit: int = 10000
    output_buffer_keep: int = 5000

    host: str = "127.0.0.1"
    port: int = 25400

    @field_validator("max_concurrent", "archive_name_attempts", "suffix_pool_size")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator(
        "transfer_idle_seconds",
        "peer_idle_seconds",
        "tail_interval_seconds",
        "log_cleanup_delay_seconds",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than 0")
        return value

    @property
    def transfer_dir(self) -> Path:
        return self.data_dir / "transfer"

    @property
    def sender_dir(self) -> Path:
        return self.transfer_dir / "sender"

    @property
    def receiver_dir(self) -> Path:
        return self.transfer_dir / "receiver"

    def resolve_binary(self) -> str:
        """Return the absolute binary path when it can be found on PATH."""
        return shutil.which(self.binary_path) or self.binary_path

    def ensure_dirs(self) -> None:
        """Create the sender/receiver working directories."""
        self.sender_dir.mkdir(parents=True, exist_ok=True)
        self.receiver_dir.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "Settings":
        """
        Build settings from ``BLOBFERRY_*`` environment variables.

        ``BLOBFERRY_MAX_CONCURRENT=4`` sets ``max_concurrent``, and so on.
        Unknown variables are ignored.
        """
        environ = os.environ if environ is None else environ
        overrides = {}
        for name in cls.model_fields:
            value = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if value is not None and value != "":
                overrides[name] = value
        return cls(**overrides)


class _Config:
    """Lazily loaded, reloadable settings holder."""

    def __init__(self):
        self._settings: Optional[Settings] = None

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = Settings.from_env()
        return self._settings

    def reload(self) -> Settings:
        load_dotenv(PROJECT_DIR / ".env", override=True)
        self._settings = Settings.from_env()
        return self._settings

    def __getattr__(self, item):
        return getattr(self.settings, item)


CONFIG = _Config()
