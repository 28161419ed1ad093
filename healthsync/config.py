"""Process configuration loaded from environment variables.

The sync configuration document (intervals, metrics, backup policy) is
separate; see ``healthsync.wearables.config_loader``.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "HealthSync"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Sync ---
    sync_config_path: str = ""  # YAML sync config; bundled defaults when empty
    sync_fetch_timeout_seconds: float = 20.0

    # --- Backups ---
    backup_dir: str = "./backups"
    backup_encryption_key: str = ""  # Fernet key; an ephemeral key is generated when empty
    backup_bucket: str = ""  # S3-compatible bucket for storage_location=cloud
    backup_s3_prefix: str = "backups"
    backup_s3_endpoint_url: str = ""  # e.g. R2 / MinIO endpoint; empty for AWS
    backup_s3_region: str = ""
    backup_s3_access_key_id: str = ""
    backup_s3_secret_access_key: str = ""

    # --- Platforms ---
    google_fit_client_id: str = ""
    google_fit_client_secret: str = ""
    google_fit_redirect_uri: str = ""
    fitbit_client_id: str = ""
    fitbit_client_secret: str = ""
    fitbit_redirect_uri: str = ""
    apple_health_export_path: str = ""

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
