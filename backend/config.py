import json
import os
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


class Settings:
    """Gateway settings read from the environment"""

    def __init__(self):
        self.app_name: str = os.getenv("APP_NAME", "Video Upload Gateway")
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")

        # AWS S3 Configuration
        self.aws_access_key: Optional[str] = os.getenv("AWS_ACCESS_KEY")
        self.aws_secret_key: Optional[str] = os.getenv("AWS_SECRET_KEY")
        self.aws_region: str = os.getenv("AWS_REGION", "us-east-2")
        self.bucket_name: Optional[str] = os.getenv("BUCKET_NAME")
        self.presigned_url_expiry: int = int(os.getenv("PRESIGNED_URL_EXPIRY", "3600"))

        # Storage layout
        self.upload_prefix: str = "uploads/videos/"
        self.hls_prefix: str = "hls/"
        self.processing_jobs_prefix: str = "processing/jobs/"

        # Transcoding trigger (optional)
        self.processing_lambda_function: Optional[str] = os.getenv("VIDEO_PROCESSING_LAMBDA_FUNCTION")

        # Redis Configuration
        self.redis_host: str = os.getenv("REDIS_HOST", "redis")
        self.redis_port: int = int(os.getenv("REDIS_PORT", "6379"))
        self.redis_password: str = os.getenv("REDIS_PASSWORD", "")
        self.upload_record_ttl_days: int = int(os.getenv("UPLOAD_RECORD_TTL_DAYS", "7"))

        # Cleanup
        self.stale_upload_days: int = int(os.getenv("STALE_UPLOAD_DAYS", "7"))
        self.cleanup_interval_hours: float = float(os.getenv("CLEANUP_INTERVAL_HOURS", "6"))

        cors_origins = os.getenv("CORS_ORIGINS", "*")
        try:
            self.cors_origins: List[str] = (
                json.loads(cors_origins) if cors_origins.startswith("[")
                else [origin.strip() for origin in cors_origins.split(",") if origin.strip()]
            )
        except ValueError:
            self.cors_origins = ["*"]

    def missing_storage_config(self) -> List[str]:
        """Names of the storage settings that are not configured"""
        required = {
            "AWS_ACCESS_KEY": self.aws_access_key,
            "AWS_SECRET_KEY": self.aws_secret_key,
            "BUCKET_NAME": self.bucket_name,
        }
        return [name for name, value in required.items() if not value]

    def object_url(self, key: str) -> str:
        return f"https://{self.bucket_name}.s3.{self.aws_region}.amazonaws.com/{key}"


settings = Settings()
