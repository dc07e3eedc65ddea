"""Application configuration management."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BACKEND_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """Centralized application settings.

    Values are read from environment variables (case-insensitive, matching the
    field names) with defaults that let the pipeline run locally. Provider
    credentials should be injected via a real `.env` file.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = Field(default="Audiobook Uploader Backend")
    backend_cors_origins: str = Field(default="http://localhost:5173")
    log_level: str = Field(default="INFO")
    outputs_dir: str = Field(default=str(BACKEND_ROOT / "outputs"))
    run_retention_seconds: float = Field(default=3600.0, ge=0, description="How long finished runs stay queryable")

    vbee_api_key: str | None = Field(default=None)
    vbee_app_id: str | None = Field(default=None)
    vbee_api_url: str = Field(default="https://vbee.vn/api/v1/tts")
    vbee_callback_url: str = Field(default="https://example.com/callback")
    vbee_default_voice: str = Field(default="n_hanoi_female_nguyetnga2_book_vc")
    vbee_max_chunk_size: int = Field(default=2000, gt=0)
    vbee_poll_interval: float = Field(default=1.0, ge=0)
    vbee_poll_attempts: int = Field(default=60, gt=0)
    vbee_request_timeout: float = Field(default=120.0, gt=0)

    ffmpeg_binary: str | None = Field(default=None, description="Defaults to the binary bundled with MoviePy")
    ffmpeg_timeout: float = Field(default=600.0, gt=0)

    douyin_api_url: str = Field(default="https://douyin.tunnaduong.com/api/hybrid/video_data")
    douyin_request_timeout: float = Field(default=120.0, gt=0)

    gemini_api_key: str | None = Field(default=None)
    thumbnail_model: str = Field(default="gemini-2.5-flash-image")
    prompt_model: str = Field(default="gemini-2.5-flash")

    youtube_upload_url: str = Field(default="https://www.googleapis.com/upload/youtube/v3")
    youtube_token_url: str = Field(default="https://oauth2.googleapis.com/token")
    youtube_oauth_client_id: str | None = Field(default=None)
    youtube_oauth_client_secret: str | None = Field(default=None)
    youtube_token_refresh_margin: float = Field(default=60.0, ge=0)
    youtube_category_id: int = Field(default=24)
    youtube_default_language: str = Field(default="vi")
    youtube_request_timeout: float = Field(default=600.0, gt=0)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance for app-wide reuse."""

    return Settings()  # type: ignore[call-arg]
