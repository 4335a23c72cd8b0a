from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Security
    promptforge_secret_key: str = "dev-secret-key-change-in-production"

    # Database
    promptforge_db_url: str = "sqlite+aiosqlite:///data/promptforge.db"

    # Logging
    promptforge_log_level: str = "info"

    # CORS
    promptforge_cors_origins: str = "http://localhost:3000"

    # Public base URL used when building signed download links
    promptforge_public_base_url: str = "http://localhost:8000"

    # Blob storage (local filesystem backend)
    promptforge_storage_dir: str = "data/exports"

    # Exports
    promptforge_export_ttl_days: int = 7
    promptforge_download_link_ttl_seconds: int = 3600
    promptforge_download_token_algorithm: str = "HS256"

    # Export encryption
    promptforge_pbkdf2_iterations: int = 100_000

    # Webhooks
    promptforge_webhook_timeout_seconds: float = 10.0
    promptforge_webhook_max_attempts: int = 5

    # Background jobs
    promptforge_job_concurrency: int = 4

    model_config = {"env_prefix": "", "case_sensitive": False, "env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
