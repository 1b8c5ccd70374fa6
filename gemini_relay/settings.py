from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    gemini_default_model: str = "gemini-1.5-flash"
    gemini_api_keys: str = ""
    gemini_keys_file: str = "keys.txt"
    upstream_timeout_seconds: float = 60.0
    dispatch_max_attempts: int = 3
    credential_failure_threshold: int = 3
    catalog_timeout_seconds: float = 10.0
    catalog_cache_ttl_seconds: float = 300.0
    ingress_auth_required: bool = False
    ingress_api_keys: str = ""
    relay_audit_log_enabled: bool = False
    relay_audit_log_path: str = "logs/relay_events.jsonl"
    cors_allow_origins: str = "*"
    host: str = "0.0.0.0"
    port: int = 7860

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def gemini_api_keys_list(self) -> list[str]:
        return _split_csv(self.gemini_api_keys)

    @property
    def ingress_api_keys_list(self) -> list[str]:
        return _split_csv(self.ingress_api_keys)

    @property
    def cors_allow_origins_list(self) -> list[str]:
        return _split_csv(self.cors_allow_origins)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
