import json
from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="PREVIZ_", extra="ignore"
    )

    # Application
    app_name: str = "Previz Export API"
    app_version: str = "0.1.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS - stored as string, parsed via computed property
    cors_origins_raw: str = "http://localhost:5173,http://localhost:3000"

    @computed_field
    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from pipe/comma-separated string or JSON array."""
        v = self.cors_origins_raw
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        if "|" in v:
            return [origin.strip() for origin in v.split("|") if origin.strip()]
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # Export
    export_output_dir: str = "/tmp/previz-exports"
    export_default_project_name: str = "Storyboard"
    export_max_dimension: int = 1920
    # Pause between starting the encoder and starting audio sources
    export_settle_delay_s: float = 0.1
    # Pause after the last frame before the encoder is stopped
    export_drain_grace_s: float = 0.5
    # Sleep one frame interval per frame (real-time pacing) instead of rendering flat out
    export_frame_pacing: bool = False
    export_placeholder_width: int = 1920
    export_placeholder_height: int = 1080
    export_region_epsilon_s: float = 0.001

    # Audio
    render_audio_sample_rate: int = 48000
    render_audio_channels: int = 2
    render_audio_bitrate: str = "192k"

    # Remote media
    media_fetch_timeout_s: float = 30.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
