from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    app_name: str = 'Mentor Platform Scheduling'
    app_env: str = 'local'
    app_timezone: str = 'UTC'
    database_url: str = 'sqlite:///./mentor_platform.db'
    db_slow_query_ms: int = 100
    metrics_slow_ms: int = 200
    identity_header: str = 'X-User-Id'

    default_work_start: str = '09:00'
    default_work_end: str = '17:00'
    default_session_duration: int = 60
    default_buffer_minutes: int = 15
    min_session_duration_minutes: int = 15
    max_schedule_window_days: int = 31

    reschedule_reason_max_length: int = 100
    reschedule_replacement_status: str = 'approved'

    default_page_size: int = 10
    max_page_size: int = 100

    email_mode: str = 'log'
    email_service_url: str = 'http://127.0.0.1:8025'
    email_service_token: str = ''
    email_sender: str = 'no-reply@mentor-platform.local'
    email_timeout_seconds: float = 5.0
    notification_max_attempts: int = 5
    notification_retry_backoff_minutes: int = 5

    cache_backend: str = 'memory'
    cache_redis_url: str | None = None
    default_cache_ttl: int = 60
    available_mentors_cache_ttl: int = 30

    enable_background_jobs: bool = False
    reconcile_interval_minutes: int = 1
    notification_retry_interval_minutes: int = 5


settings = Settings()
