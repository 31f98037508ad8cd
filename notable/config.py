"""Settings loaded from .env, NOTABLE_* environment variables and argv."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional, Sequence

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def default_db_path() -> Path:
    return Path.home() / ".notable" / "notes.db"


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="NOTABLE_",
        extra="ignore",
        cli_prog_name="notable",
    )

    # Listener
    bind: str = Field("localhost", description="Bind address")
    port: int = Field(8080, ge=1, le=65535, description="Port to listen on")

    # Storage
    db_path: Path = Field(default_factory=default_db_path, description="Path to the db file")
    engine: Literal["kv", "sql"] = Field("kv", description="Storage engine (kv or sql)")
    map_size: int = Field(1 << 30, gt=0, description="LMDB map size in bytes")

    # Lifecycle
    restart: bool = Field(False, description="Restart the running instance if there is one")
    check_timeout: float = Field(1.0, gt=0, description="Seconds to wait for a running instance")

    log_level: str = Field("INFO", description="Logging level")

    @property
    def base_url(self) -> str:
        host = f"[{self.bind}]" if ":" in self.bind else self.bind
        return f"http://{host}:{self.port}"


def load_settings(argv: Optional[Sequence[str]] = None) -> Settings:
    """Build settings, letting command-line arguments override the environment."""
    if argv is None:
        return Settings()
    return Settings(_cli_parse_args=list(argv))
