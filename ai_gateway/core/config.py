from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Provider credentials (comma-separated, several keys per provider rotate on failure)
    openai_api_keys: str = ""
    google_api_keys: str = ""
    xai_api_keys: str = ""

    def api_keys_for(self, provider_id: str) -> list[str]:
        """Return the configured keys for a provider, trimmed and without blanks."""
        raw = getattr(self, f"{provider_id.strip().lower()}_api_keys", "") or ""
        return [k.strip() for k in raw.split(",") if k.strip()]

    # Retry / failover
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0  # seconds
    retry_max_delay: float = 30.0
    retry_backoff_multiplier: float = 2.0
    retry_jitter_factor: float = 0.1
    circuit_failure_threshold: int = 5
    circuit_recovery_timeout: float = 60.0
    key_cooldown_seconds: float = 60.0  # rate-limited keys come back after this

    # Content cache
    cache_enabled: bool = True
    cache_dir: str = "./.ai_cache"
    memory_cache_ttl_seconds: float = 1800.0  # 30 min
    memory_cache_max_entries: int = 1000
    models_cache_ttl_hours: int = 168  # 7 days
    disk_cache_max_bytes: int = 0  # 0 = unbounded

    # Dispatch
    http_timeout_seconds: float = 60.0
    default_language: str = "en"
    default_audio_format: str = "mp3"

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs


settings = Settings()
