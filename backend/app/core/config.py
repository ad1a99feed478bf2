"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings

MB = 1024 * 1024


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Video Compressor"
    SERVICE_NAME: str = "video-compressor"
    VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 3000

    # CORS
    CORS_ORIGINS: list[str] = ["*"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Temp files shared by every job (inputs and encoder outputs)
    UPLOAD_TMP_DIR: str = "/tmp/uploads"

    # Size limits
    MAX_UPLOAD_SIZE_BYTES: int = 200 * MB
    MAX_OUTPUT_SIZE_BYTES: int = 45 * MB

    # Encoding engine
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    FFMPEG_TIMEOUT_SECONDS: Optional[float] = 900.0

    # Request defaults
    DEFAULT_BUCKET: str = "videos"
    DEFAULT_FOLDER: str = "interviews"

    # Storage Configuration
    # STORAGE_BACKEND: local, s3, minio, supabase (S3-compatible endpoint)
    STORAGE_BACKEND: str = "local"

    # Local Storage (when STORAGE_BACKEND=local)
    LOCAL_STORAGE_PATH: str = "./storage"

    # S3/MinIO/Supabase (when STORAGE_BACKEND=s3, minio or supabase)
    STORAGE_REGION: str = ""
    STORAGE_ACCESS_KEY: str = ""
    STORAGE_SECRET_KEY: str = ""
    STORAGE_ENDPOINT_URL: Optional[str] = None
    STORAGE_USE_SSL: bool = True

    # Base for public object URLs, e.g.
    # https://<project>.supabase.co/storage/v1/object/public
    STORAGE_PUBLIC_BASE_URL: Optional[str] = None

    # Tracing
    OTLP_ENDPOINT: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
