from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    max_retries: int = 3
    retry_delay: int = 1000
    cache_ttl: int = 3_600_000
    cache_max_entries: int = 10_000
    cache_sweep_interval_seconds: float = 60.0
    rate_limit_enabled: bool = True
    rate_limit_window: int = 60_000
    rate_limit_max_requests: int = 60
    openrouter_api_key: str | None = None
    openrouter_api_keys: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    gemini_api_key: str | None = None
    gemini_api_keys: str = ""
    gateway_config_path: str | None = None
    upstream_timeout_seconds: float = 120.0
    upstream_connect_timeout_seconds: float = 5.0
    gateway_referer: str = "http://localhost:8787"
    gateway_title: str = "OpenAI Gateway Emulator"
    ingress_auth_required: bool = False
    ingress_api_keys: str = ""
    admin_api_keys: str = ""
    jwt_secret: str | None = None
    jwt_algorithms: str = "HS256"
    audit_log_enabled: bool = False
    audit_log_path: str = "logs/gateway_events.jsonl"
    metrics_enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8787

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def retry_delay_seconds(self) -> float:
        return max(0, self.retry_delay) / 1000.0

    @property
    def cache_ttl_seconds(self) -> float:
        return max(0, self.cache_ttl) / 1000.0

    @property
    def rate_limit_window_seconds(self) -> float:
        return max(1, self.rate_limit_window) / 1000.0

    @property
    def openrouter_api_keys_list(self) -> list[str]:
        return _merge_key_pool(self.openrouter_api_key, self.openrouter_api_keys)

    @property
    def gemini_api_keys_list(self) -> list[str]:
        return _merge_key_pool(self.gemini_api_key, self.gemini_api_keys)

    @property
    def ingress_api_keys_list(self) -> list[str]:
        return _split_csv(self.ingress_api_keys)

    @property
    def admin_api_keys_list(self) -> list[str]:
        return _split_csv(self.admin_api_keys)

    @property
    def jwt_algorithms_list(self) -> list[str]:
        values = _split_csv(self.jwt_algorithms)
        return values or ["HS256"]


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _merge_key_pool(single: str | None, pool: str | None) -> list[str]:
    keys: list[str] = []
    for key in [*_split_csv(single), *_split_csv(pool)]:
        if key not in keys:
            keys.append(key)
    return keys


@lru_cache
def get_settings() -> Settings:
    return Settings()
