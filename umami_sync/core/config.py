import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)
from sqlalchemy.engine import URL


class LocalSettingsSource(PydanticBaseSettingsSource):
    """Reads the ``Values`` block of a Functions-style local.settings.json.

    Keys are matched case-insensitively against field names, so
    ``UMAMI_DB_HOST`` populates ``umami_db_host``.
    """

    def __init__(self, settings_cls: type[BaseSettings], path: Path):
        super().__init__(settings_cls)
        self.path = path
        self._values = self._load()

    def _load(self) -> dict[str, Any]:
        if not self.path.is_file():
            return {}
        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        values = data.get("Values") or {}
        return {str(k).lower(): v for k, v in values.items()}

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._values.get(field_name.lower()), field_name, False

    def __call__(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for field_name, field in self.settings_cls.model_fields.items():
            value, key, _ = self.get_field_value(field, field_name)
            if value is not None:
                data[key] = value
        return data


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # User store (users, watermark, sync log)
    database_url: str = "sqlite+aiosqlite:////data/umami_sync.db"

    # Umami PostgreSQL source
    umami_db_host: str
    umami_db_port: int = 5432
    umami_db_name: str
    umami_db_user: str
    umami_db_password: str
    umami_db_ssl: bool = False
    umami_db_pool_size: int = 10
    umami_db_connect_timeout: float = 2.0

    # Umami REST API
    umami_api_base_url: str
    umami_api_username: str
    umami_api_password: str
    umami_api_timeout: float = 30.0
    umami_website_ids: str = ""

    # Sync behaviour
    initial_sync_days: int = 7
    sync_buffer_hours: int = 12
    api_page_size: int = 100
    api_max_pages: int = 1000
    partition_concurrency: int = 1
    sync_interval_minutes: int = 2
    sync_lease_ttl_minutes: int = 30
    run_on_startup: bool = False

    # Optional settings
    log_level: str = "INFO"
    debug: bool = False

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Real environment always wins over local.settings.json
        local_path = Path(os.environ.get("LOCAL_SETTINGS_PATH", "local.settings.json"))
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            LocalSettingsSource(settings_cls, local_path),
            file_secret_settings,
        )

    @property
    def website_ids(self) -> list[str]:
        """Configured Umami website ids, in configuration order."""
        return [w.strip() for w in self.umami_website_ids.split(",") if w.strip()]

    @property
    def umami_db_url(self) -> URL:
        return URL.create(
            "postgresql+asyncpg",
            username=self.umami_db_user,
            password=self.umami_db_password,
            host=self.umami_db_host,
            port=self.umami_db_port,
            database=self.umami_db_name,
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
