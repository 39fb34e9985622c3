from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None
    database_url: str | None = None
    meta_token: str | None = None
    meta_phone_number_id: str | None = None
    meta_verify_token: str | None = None
    meta_app_secret: str | None = None
    meta_graph_version: str = "v19.0"
    meta_api_base_url: str = "https://graph.facebook.com"
    meta_http_timeout_seconds: float = 30.0
    files_signing_secret: str | None = None
    require_signed_url: bool | None = None  # unset -> required iff files_signing_secret is set
    media_signed_url_ttl_seconds: int = 900
    media_storage_root: str = "uploads"
    media_max_original_bytes: int = 25 * 1024 * 1024
    media_thumbnail_max_width: int = 512
    media_thumbnail_max_height: int = 512
    media_download_max_attempts: int = 3
    media_download_retry_delay_ms: int = 750
    realtime_subscriber_queue_size: int = 100
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @property
    def signed_urls_required(self) -> bool:
        if self.require_signed_url is not None:
            return self.require_signed_url
        return bool(self.files_signing_secret)


settings = Settings()
