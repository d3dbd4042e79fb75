import json
from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CLIPFORGE_",
        extra="ignore",
    )

    # Application
    app_name: str = "ClipForge Render API"
    app_version: str = "0.1.0"
    git_hash: str = "unknown"  # Set via CLIPFORGE_GIT_HASH at build time
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True

    # Base URL this service is reachable at (used for local storage file URLs)
    public_base_url: str = "http://localhost:8000"

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
        # Pipe-separated (for Cloud Run compatibility)
        if "|" in v:
            return [origin.strip() for origin in v.split("|") if origin.strip()]
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    # Google Cloud Storage
    gcs_bucket_name: str = "clipforge-renders"
    gcs_project_id: str = ""

    # Local storage for development (when GCS is not configured)
    use_local_storage: bool = True  # Set to False in production
    local_storage_path: str = "/tmp/clipforge-storage"

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # Render settings
    render_fps: int = 30
    render_fill_policy: Literal["contain", "cover"] = "cover"
    render_video_preset: str = "veryfast"
    render_crf: int = 22
    render_audio_bitrate: str = "192k"
    render_audio_sample_rate: int = 48000
    render_max_duration_seconds: float = 300.0
    # Worker pool size: upper bound on concurrently running jobs (and encoder processes)
    render_max_concurrent_jobs: int = 2
    # Per-job working directories are created under here
    render_work_dir: str = "/tmp/clipforge-work"

    # Asset downloads
    download_timeout_seconds: float = 120.0
    download_max_redirects: int = 5
    download_max_concurrency: int = 4
    download_max_bytes: int = 1024 * 1024 * 1024  # 1 GiB

    # Encoder subprocess
    encode_timeout_seconds: float = 900.0
    encode_stderr_tail_chars: int = 2000

    # Jobs
    error_detail_max_chars: int = 500
    job_ttl_seconds: int = 3600
    # Reject unsupported reference schemes at submission instead of at resolve time
    strict_reference_validation: bool = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
