from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    app_name: str = 'Attendance Reconciliation Engine'
    app_env: str = 'local'
    app_base_url: str = 'http://127.0.0.1:8000'
    app_timezone: str = 'Asia/Kolkata'
    database_url: str = 'sqlite:///./attendance.db'
    auth_session_expiry_hours: int = 12
    auth_secret: str = 'change-me'
    weekly_holiday: str = 'friday'
    free_period_codes: list[str] = ['', '-', 'none', 'free']
    prayer_units: list[str] = ['fajr', 'zuhr', 'asr', 'maghrib', 'isha']
    default_section: str = 'A'
    missed_detection_time: str = '00:05'
    leave_rollover_time: str = '00:20'
    enable_scheduler: bool = True
    missed_urgent_days: int = 7
    missed_medium_days: int = 3
    missed_default_days_since: int = 30
    missed_cache_ttl: int = 60
    ledger_batch_size: int = 500
    job_lock_ttl_seconds: int = 900
    cache_backend: str = 'memory'
    cache_redis_url: str | None = None
    default_cache_ttl: int = 60
    db_slow_query_ms: int = 100
    metrics_slow_ms: int = 200


settings = Settings()
