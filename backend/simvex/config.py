"""Application settings and validation."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from .errors import ConfigurationError

BASE = Path(__file__).resolve().parent.parent
DRIVERS = ("memory", "file", "postgres")


class Settings:
    ENV: str
    LOG_LEVEL: str
    REPOSITORY_DRIVER: str
    REPOSITORY_FILE: Optional[str]
    DATABASE_URL: Optional[str]
    MIGRATIONS_DIR: str
    MAX_UPLOAD_BYTES: int
    ALLOW_DEV_CORS: bool

    def __init__(self):
        self.ENV = os.getenv("ENV", "dev").lower()
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
        self.REPOSITORY_DRIVER = os.getenv("SIMVEX_REPOSITORY_DRIVER", "memory").strip().lower()
        self.REPOSITORY_FILE = _optional_env("SIMVEX_REPOSITORY_FILE")
        self.DATABASE_URL = _optional_env("DATABASE_URL") or _optional_env("POSTGRES_URL")
        self.MIGRATIONS_DIR = os.getenv("SIMVEX_MIGRATIONS_DIR", str(BASE / "db" / "migrations"))
        self.MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(20 * 1024 * 1024)))  # 20 MB default
        self.ALLOW_DEV_CORS = os.getenv("ALLOW_DEV_CORS", "true").lower() == "true"
        self._validate()

    def _validate(self):
        if self.REPOSITORY_DRIVER not in DRIVERS:
            raise ConfigurationError(
                f"SIMVEX_REPOSITORY_DRIVER must be one of {', '.join(DRIVERS)}; got {self.REPOSITORY_DRIVER!r}"
            )
        if self.MAX_UPLOAD_BYTES <= 0:
            raise ConfigurationError("MAX_UPLOAD_BYTES must be positive")


class RepositoryConfig(BaseModel):
    """Which storage driver to build and where it keeps its data.

    `memory` keeps nothing after the process exits, `file` persists to
    `file_path`, `postgres` talks to the database at `database_url`.
    """
    driver: str = "memory"
    file_path: Optional[str] = None
    database_url: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "RepositoryConfig":
        file_path = settings.REPOSITORY_FILE
        if file_path:
            file_path = str(Path(file_path).resolve())
        return cls(
            driver=settings.REPOSITORY_DRIVER,
            file_path=file_path,
            database_url=settings.DATABASE_URL,
        )


def _optional_env(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


settings = Settings()
