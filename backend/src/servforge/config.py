"""Runtime configuration from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from servforge.persistence.config import DatabaseConfig


@dataclass
class RuntimeConfig:
    """Process-wide settings, read once at startup.

    Environment:
        SERVFORGE_MODEL_PATH  model directory (default: <base>/model)
        DATABASE_URL          memory://, sqlite:///... or postgresql://...
        SERVFORGE_DB_PATH     SQLite file, used when DATABASE_URL is unset
        SERVFORGE_LOG_LEVEL   logging level name (default: INFO)
        SERVFORGE_HOST        bind address for `servforge serve`
        SERVFORGE_PORT        port for `servforge serve`
    """

    model_path: Path
    database: DatabaseConfig
    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000

    @classmethod
    def from_env(cls, base_path: Path | None = None) -> RuntimeConfig:
        base_path = base_path or Path.cwd()

        model_path = os.environ.get("SERVFORGE_MODEL_PATH")
        if model_path:
            resolved = Path(model_path)
            if not resolved.is_absolute():
                resolved = base_path / resolved
        else:
            resolved = base_path / "model"

        return cls(
            model_path=resolved,
            database=DatabaseConfig.from_env(base_path),
            log_level=os.environ.get("SERVFORGE_LOG_LEVEL", "INFO").upper(),
            host=os.environ.get("SERVFORGE_HOST", "127.0.0.1"),
            port=int(os.environ.get("SERVFORGE_PORT", "8000")),
        )
