"""Workspace Registry — Application configuration via environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class RegistrySettings(BaseSettings):
    """Central configuration loaded from environment / .env file."""

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    # ── PostgreSQL (schema / template store) ───────────────────
    postgres_user: str = "workspace_registry"
    postgres_password: str = "change-me-in-production"
    postgres_db: str = "workspace_registry"
    postgres_host: str = "localhost"
    postgres_port: int = 5432

    # Explicit URL wins over the postgres_* parts (e.g. sqlite:///./registry.db)
    database_url: str = ""
    database_echo: bool = False

    @property
    def database_url_sync(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # ── API ────────────────────────────────────────────────────
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # ── Registry behaviour ─────────────────────────────────────
    default_page_size: int = 50
    max_page_size: int = 500
    seed_system_schemas: bool = True

    # ── Logging ────────────────────────────────────────────────
    log_level: str = "INFO"
    log_format: str = "json"


settings = RegistrySettings()
