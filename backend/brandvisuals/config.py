from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_STORAGE_ROOT = PROJECT_ROOT / "storage"
DEFAULT_DB_PATH = DEFAULT_STORAGE_ROOT / "app.db"


class Settings(BaseSettings):
    app_name: str = "Brand Visuals Generation API"
    api_prefix: str = "/api"

    storage_root: Path = DEFAULT_STORAGE_ROOT
    database_url: str = f"sqlite:///{DEFAULT_DB_PATH.as_posix()}"
    redis_url: str = "redis://localhost:6379/0"
    public_base_url: str = "http://localhost:8000"
    frontend_origin: str = "http://localhost:5173"

    default_planner_provider: str = "mock"
    default_image_provider: str = "mock"
    openai_api_key: str | None = None
    openai_model: str = "gpt-5-mini"
    anthropic_api_key: str | None = None
    anthropic_model: str = "claude-sonnet-4-20250514"
    anthropic_max_tokens: int = 4096
    image_api_url: str | None = None
    image_api_key: str | None = None
    compositor_url: str | None = None
    compositor_api_key: str | None = None

    job_deadline_seconds: int = 300
    external_call_timeout_seconds: int = 90
    worker_batch_size: int = 5
    worker_lease_name: str = "generation-worker"
    worker_lease_ttl_seconds: int = 1800
    worker_poll_seconds: int = 30
    reaper_grace_seconds: int = 60
    reaper_interval_seconds: int = 60
    job_max_retries: int = 2
    retry_backoff_seconds: int = 15
    min_slide_count: int = 1
    max_slide_count: int = 10
    default_slide_count: int = 5

    coherence_threshold: float = 60.0
    base_tint_strength: int = 20
    boosted_tint_strength: int = 45
    compositor_max_attempts: int = 2
    image_max_attempts: int = 2
    rate_limit_backoff_seconds: int = 60
    max_rate_limit_deferrals: int = 3
    min_contrast_ratio: float = 4.5

    log_level: str = "INFO"
    suppress_job_poll_access_logs: bool = True
    suppress_httpx_info_logs: bool = True
    persist_job_events: bool = True
    log_preview_chars: int = 180
    job_events_page_size: int = 400

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()

for folder in [
    settings.storage_root,
    settings.storage_root / "objects",
]:
    folder.mkdir(parents=True, exist_ok=True)
