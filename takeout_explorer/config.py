from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the takeout ingestion core."""

    model_config = SettingsConfigDict(
        env_prefix="TAKEOUT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    metadata_path: str = "data/page_metadata.json"
    payload_backend: str = "sqlite"  # options: memory, sqlite
    payload_path: str = "data/page_payloads.db"
    upload_dir: str = "data/uploads"
    known_page_ids: List[str] = [
        "browserHistory",
        "deviceInfo",
        "youtubeHistory",
        "playstoreAppsData",
        "fitbitData",
        "googleMapsTimeline",
        "googleMapReviews",
    ]
    chunk_size: int = 1000
    deep_search_min_length: int = 10
    sample_size: int = 5
    worker_start_method: str = "spawn"
    worker_poll_interval: float = 0.1
    max_upload_bytes: int = 2 * 1024 * 1024 * 1024
    log_level: str = "INFO"


settings = Settings()
