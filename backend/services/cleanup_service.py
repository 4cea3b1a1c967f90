# services/cleanup_service.py
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import redis
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from config import Settings, settings as default_settings
from models.upload_models import TERMINAL_STATUSES, UploadRecord
from services.upload_service import RECORD_KEY_PREFIX

logger = logging.getLogger(__name__)

FINISHED_RECORD_MAX_AGE = timedelta(hours=48)


class CleanupService:
    def __init__(self, s3_client, redis_client, settings: Optional[Settings] = None):
        self.s3_client = s3_client
        self.redis_client = redis_client
        self.settings = settings or default_settings
        self.bucket_name = self.settings.bucket_name

    async def start_cleanup_scheduler(self):
        """Start the cleanup scheduler"""
        while True:
            try:
                await self.cleanup_finished_records()
                await self.cleanup_incomplete_uploads()

                await asyncio.sleep(self.settings.cleanup_interval_hours * 60 * 60)

            except asyncio.CancelledError:
                logger.info("Cleanup scheduler cancelled")
                break
            except (redis.RedisError, BotoCoreError, ClientError) as e:
                logger.error(f"Error in cleanup scheduler: {e}")
                await asyncio.sleep(60)

    async def cleanup_finished_records(self, now: Optional[datetime] = None) -> int:
        """Drop records of finished uploads older than 48h and unreadable records"""
        now = now or datetime.now()
        cleaned_count = 0

        for key in self.redis_client.scan_iter(match=f"{RECORD_KEY_PREFIX}*"):
            data = self.redis_client.get(key)
            if not data:
                continue
            try:
                record = UploadRecord.model_validate_json(data)
            except ValidationError as e:
                logger.warning(f"Deleting unreadable upload record {key!r}: {e}")
                self.redis_client.delete(key)
                cleaned_count += 1
                continue

            if record.status in TERMINAL_STATUSES and now - record.created_at > FINISHED_RECORD_MAX_AGE:
                self.redis_client.delete(key)
                cleaned_count += 1

        logger.info(f"Record cleanup completed. Cleaned {cleaned_count} records")
        return cleaned_count

    async def cleanup_incomplete_uploads(self, now: Optional[datetime] = None) -> int:
        """Abort multipart uploads that were never completed nor aborted"""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=self.settings.stale_upload_days)
        cleanup_count = 0

        kwargs = {"Bucket": self.bucket_name, "Prefix": self.settings.upload_prefix}
        while True:
            response = self.s3_client.list_multipart_uploads(**kwargs)

            for upload in response.get("Uploads", []):
                initiated = upload["Initiated"]
                if initiated.tzinfo is None:
                    initiated = initiated.replace(tzinfo=timezone.utc)
                if initiated >= cutoff:
                    continue
                try:
                    self.s3_client.abort_multipart_upload(
                        Bucket=self.bucket_name,
                        Key=upload["Key"],
                        UploadId=upload["UploadId"],
                    )
                    cleanup_count += 1
                    logger.info(f"Aborted stale upload: {upload['Key']}")
                except ClientError as e:
                    logger.error(f"Failed to abort upload {upload['UploadId']}: {e}")

            if not response.get("IsTruncated"):
                break
            kwargs["KeyMarker"] = response.get("NextKeyMarker")
            kwargs["UploadIdMarker"] = response.get("NextUploadIdMarker")

        logger.info(f"Cleaned up {cleanup_count} incomplete S3 uploads")
        return cleanup_count
