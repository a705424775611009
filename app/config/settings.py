from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_env: str = "dev"
    log_level: str = "INFO"

    db_host: str = "localhost"
    db_port: int = 5432
    db_database: str = "file_uploader"
    db_username: str = "file_uploader"
    db_password: str = "secret"
    db_pool_min_size: int = 1
    db_pool_max_size: int = 10

    storage_backend: str = "s3"
    s3_endpoint_url: str | None = "http://localhost:9000"
    s3_access_key: str = "minioadmin"
    s3_secret_key: str = "minioadmin"
    s3_region: str = "us-east-1"
    s3_bucket: str = "uploads"
    s3_connect_timeout_seconds: int = 5
    s3_read_timeout_seconds: int = 60
    s3_max_attempts: int = 3

    staging_dir: str | None = None

    executor_core_size: int = 5
    executor_max_size: int = 10
    executor_queue_capacity: int = 100
    executor_submit_timeout_seconds: float = 5.0
    executor_keep_alive_seconds: float = 60.0
    executor_shutdown_timeout_seconds: float = 60.0
