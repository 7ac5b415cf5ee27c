from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from fastapi import Depends
from typing_extensions import Annotated


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # development | production | test
    environment: str = "development"
    log_level: str = "INFO"
    log_buffer_size: int = 1000

    database_url: str = "sqlite+aiosqlite:///./tasks.db"
    # Credentials for the privileged archival path; falls back to database_url
    service_database_url: str | None = None
    db_pool_timeout: int = 10
    db_command_timeout: int = 15

    redis_dsn: str = "redis://localhost:6379/0"
    redis_pool_size: int = 5
    redis_socket_timeout: float = 2.0
    cache_namespace: str = "taskapi:"
    cache_ttl_seconds: int = 60

    # Comma separated list of origins allowed to make credentialed requests
    cors_origins: str = "http://localhost:3000"
    # Comma separated IPs or networks whose forwarding headers are trusted
    trusted_proxies: str = ""

    auth_url: str = "http://localhost:54321"
    auth_anon_key: str = ""
    auth_timeout_seconds: float = 5.0
    service_role_key: str | None = None
    access_token_cookie: str = "sb-access-token"
    refresh_token_cookie: str = "sb-refresh-token"

    rate_limit_window_seconds: int = 60
    rate_limit_read: int = 60
    rate_limit_write: int = 20
    rate_limit_auth: int = 10

    archive_after_days: int = 30
    archive_interval_seconds: int = 86400
    archive_schedule_enabled: bool = True

    @property
    def allowed_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def trusted_proxy_list(self) -> list[str]:
        return [p.strip() for p in self.trusted_proxies.split(",") if p.strip()]

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    return Settings()


SettingsDep = Annotated[Settings, Depends(get_settings)]
