"""Database URL configuration and the adapter factory."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from servforge.persistence.adapter import PersistenceAdapter

DEFAULT_URL = "memory://"


@dataclass
class DatabaseConfig:
    """Where committed data lives.

    Schemes: memory:// (process-local), sqlite:///<file>, postgresql://...
    """

    url: str = DEFAULT_URL

    @classmethod
    def from_env(cls, base_path: Path | None = None) -> DatabaseConfig:
        """DATABASE_URL wins; SERVFORGE_DB_PATH names a SQLite file
        (relative to base_path); otherwise memory://."""
        if os.environ.get("DATABASE_URL"):
            return cls(os.environ["DATABASE_URL"])

        sqlite_file = os.environ.get("SERVFORGE_DB_PATH")
        if not sqlite_file:
            return cls()
        path = Path(sqlite_file)
        if base_path is not None and not path.is_absolute():
            path = base_path / path
        return cls(f"sqlite:///{path}")

    @property
    def scheme(self) -> str:
        """URL scheme without a driver suffix ("postgresql+psycopg" -> "postgresql")."""
        return self.url.partition(":")[0].partition("+")[0].lower()

    @property
    def is_memory(self) -> bool:
        return self.scheme == "memory"

    @property
    def is_sqlite(self) -> bool:
        return self.scheme == "sqlite"

    @property
    def is_postgresql(self) -> bool:
        return self.scheme in ("postgresql", "postgres")

    @property
    def sqlalchemy_url(self) -> str:
        """The URL with the psycopg (v3) driver pinned for PostgreSQL."""
        scheme, sep, rest = self.url.partition("://")
        if self.is_postgresql and "+" not in scheme:
            return f"postgresql+psycopg{sep}{rest}"
        return self.url

    @property
    def sqlite_file(self) -> Path | None:
        if not self.is_sqlite:
            return None
        location = self.url.partition(":///")[2]
        if not location or location == ":memory:":
            return None
        return Path(location)


def create_adapter(config: DatabaseConfig) -> PersistenceAdapter:
    """Build the persistence adapter for a database URL. Tables are created
    later, per entity, by initialize_entity().

    Raises:
        ValueError: For schemes no adapter handles
    """
    if config.is_memory:
        from servforge.persistence.memory import InMemoryAdapter

        return InMemoryAdapter()

    if config.is_sqlite or config.is_postgresql:
        from servforge.persistence.sql import SQLAdapter

        if config.sqlite_file is not None:
            config.sqlite_file.parent.mkdir(parents=True, exist_ok=True)
        return SQLAdapter(config.sqlalchemy_url)

    raise ValueError(f"Unsupported database URL scheme: {config.url}")
