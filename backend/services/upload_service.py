# services/upload_service.py
import boto3
import redis
import json
import logging
import os
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from config import Settings, settings as default_settings
from models.upload_models import *

logger = logging.getLogger(__name__)

RECORD_KEY_PREFIX = "upload_session:"


def build_storage_key(file_id: str, file_name: str, prefix: str = "uploads/videos/", timestamp_ms: Optional[int] = None) -> str:
    """Final object key: {prefix}{fileId}_{epochMillis}.{ext}"""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    _, ext = os.path.splitext(file_name)
    extension = ext.lstrip(".") or "bin"
    return f"{prefix}{file_id}_{timestamp_ms}.{extension}"


class UploadService:
    def __init__(self, s3_client=None, redis_client=None, lambda_client=None, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

        # AWS S3 Configuration
        self.s3_client = s3_client or boto3.client(
            "s3",
            region_name=self.settings.aws_region,
            aws_access_key_id=self.settings.aws_access_key,
            aws_secret_access_key=self.settings.aws_secret_key,
            config=Config(signature_version="s3v4"),
        )
        self.bucket_name = self.settings.bucket_name

        self._lambda_client = lambda_client

        # Redis Configuration
        self.redis_client = redis_client or redis.Redis(
            host=self.settings.redis_host,
            port=self.settings.redis_port,
            password=self.settings.redis_password,
            decode_responses=False,
            socket_connect_timeout=5,
            health_check_interval=30,
            db=0,
        )

        self.record_ttl = timedelta(days=self.settings.upload_record_ttl_days)

    @property
    def lambda_client(self):
        if self._lambda_client is None:
            self._lambda_client = boto3.client(
                "lambda",
                region_name=self.settings.aws_region,
                aws_access_key_id=self.settings.aws_access_key,
                aws_secret_access_key=self.settings.aws_secret_key,
            )
        return self._lambda_client

    async def initialize_upload(self, request: InitializeUploadRequest) -> UploadRecord:
        """Open a multipart upload on S3 and record it"""
        s3_key = build_storage_key(request.file_id, request.file_name, prefix=self.settings.upload_prefix)

        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key,
            ContentType=request.content_type,
            Metadata={
                "originalFileName": request.file_name,
                "fileId": request.file_id,
                "totalChunks": str(request.total_chunks),
                "uploadedAt": datetime.now().isoformat(),
                "uploadMethod": "s3-multipart",
            },
        )
        upload_id = response.get("UploadId")
        if not upload_id:
            raise RuntimeError("Failed to initialize multipart upload")

        now = datetime.now()
        record = UploadRecord(
            file_id=request.file_id,
            file_name=request.file_name,
            s3_key=s3_key,
            upload_id=upload_id,
            content_type=request.content_type,
            total_parts=request.total_chunks,
            status=UploadStatus.UPLOADING,
            created_at=now,
            expires_at=now + self.record_ttl,
        )
        try:
            await self._store_record(record)
        except redis.RedisError:
            logger.error(f"Could not record upload {upload_id}; aborting it")
            self._abort_unrecorded(upload_id, s3_key)
            raise

        logger.info(f"Multipart upload initialized: file_id={record.file_id} upload_id={upload_id} key={s3_key}")
        return record

    def _abort_unrecorded(self, upload_id: str, s3_key: str):
        try:
            self.s3_client.abort_multipart_upload(Bucket=self.bucket_name, Key=s3_key, UploadId=upload_id)
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Abort of unrecorded upload {upload_id} failed: {e}")

    def generate_presigned_url(self, upload_id: str, s3_key: str, part_number: int) -> str:
        """Sign a single UploadPart PUT"""
        url = self.s3_client.generate_presigned_url(
            "upload_part",
            Params={
                "Bucket": self.bucket_name,
                "Key": s3_key,
                "UploadId": upload_id,
                "PartNumber": part_number,
            },
            ExpiresIn=self.settings.presigned_url_expiry,
            HttpMethod="PUT",
        )
        logger.debug(f"Presigned URL generated for part {part_number} of {s3_key}")
        return url

    async def complete_upload(self, request: CompleteUploadRequest) -> Dict[str, Any]:
        """Finalize the multipart upload with parts sorted by part number"""
        sorted_parts = sorted(request.parts, key=lambda part: part.part_number)

        self.s3_client.complete_multipart_upload(
            Bucket=self.bucket_name,
            Key=request.s3_key,
            UploadId=request.upload_id,
            MultipartUpload={
                "Parts": [{"ETag": part.etag, "PartNumber": part.part_number} for part in sorted_parts]
            },
        )

        try:
            head = self.s3_client.head_object(Bucket=self.bucket_name, Key=request.s3_key)
            file_size = head.get("ContentLength")
        except (BotoCoreError, ClientError) as e:
            # the object exists; only its size is unknown
            logger.warning(f"Size lookup for {request.s3_key} failed: {e}")
            file_size = None
        object_url = self.settings.object_url(request.s3_key)

        await self._update_record(
            request.file_id,
            status=UploadStatus.COMPLETED,
            completed_at=datetime.now(),
            file_size=file_size,
            object_url=object_url,
        )

        lambda_triggered = self.trigger_processing(request.s3_key, request.file_id, request.file_name)

        logger.info(f"Multipart upload completed: file_id={request.file_id} parts={len(sorted_parts)} size={file_size}")
        return {
            "s3Url": object_url,
            "s3Key": request.s3_key,
            "fileSize": file_size,
            "fileName": os.path.basename(request.s3_key),
            "originalName": request.file_name,
            "fileId": request.file_id,
            "contentType": request.content_type,
            "uploadId": request.upload_id,
            "partsCompleted": len(sorted_parts),
            "processing": {
                "lambdaTriggered": lambda_triggered,
                "checkStatusUrl": f"/api/processing-status/{request.file_id}",
            },
        }

    async def abort_upload(self, upload_id: str, s3_key: str, file_id: Optional[str] = None):
        """Abort a multipart upload and release the stored parts"""
        self.s3_client.abort_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key,
            UploadId=upload_id,
        )
        if file_id:
            await self._update_record(file_id, status=UploadStatus.ABORTED)
        logger.info(f"Multipart upload aborted: upload_id={upload_id} key={s3_key}")

    def trigger_processing(self, s3_key: str, file_id: str, file_name: str) -> bool:
        """Kick off HLS transcoding; a failed trigger never fails the upload"""
        function_name = self.settings.processing_lambda_function
        if not function_name:
            return False

        payload = {
            "inputS3Key": s3_key,
            "outputPrefix": f"{self.settings.hls_prefix}{file_id}/",
            "fileId": file_id,
            "originalFileName": file_name,
            "bucket": self.bucket_name,
        }
        try:
            self.lambda_client.invoke(
                FunctionName=function_name,
                InvocationType="Event",
                Payload=json.dumps(payload).encode("utf-8"),
            )
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Processing trigger failed for {file_id}: {e}")
            return False
        logger.info(f"Processing triggered for {file_id} via {function_name}")
        return True

    async def get_upload_status(self, file_id: str) -> Optional[Dict[str, Any]]:
        """Upload record plus the parts S3 has received so far"""
        record = await self.get_record(file_id)
        if not record:
            return None

        parts: List[Dict[str, Any]] = []
        if record.status == UploadStatus.UPLOADING:
            parts = self._list_parts(record.upload_id, record.s3_key)

        return {
            "fileId": record.file_id,
            "status": record.status.value,
            "uploadId": record.upload_id,
            "s3Key": record.s3_key,
            "totalParts": record.total_parts,
            "partsUploaded": len(parts),
            "parts": parts,
            "totalSize": sum(part["size"] for part in parts),
            "createdAt": record.created_at.isoformat(),
            "completedAt": record.completed_at.isoformat() if record.completed_at else None,
        }

    def _list_parts(self, upload_id: str, s3_key: str) -> List[Dict[str, Any]]:
        parts = []
        marker = 0
        while True:
            response = self.s3_client.list_parts(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                PartNumberMarker=marker,
            )
            for part in response.get("Parts", []):
                last_modified = part.get("LastModified")
                parts.append({
                    "partNumber": part["PartNumber"],
                    "etag": part.get("ETag"),
                    "size": part.get("Size", 0),
                    "lastModified": last_modified.isoformat() if last_modified else None,
                })
            if not response.get("IsTruncated"):
                break
            marker = response.get("NextPartNumberMarker", 0)
        return sorted(parts, key=lambda part: part["partNumber"])

    async def get_record(self, file_id: str) -> Optional[UploadRecord]:
        """Get upload record by file id"""
        data = self.redis_client.get(f"{RECORD_KEY_PREFIX}{file_id}")
        if not data:
            return None
        return UploadRecord.model_validate_json(data)

    async def _store_record(self, record: UploadRecord):
        """Store record in Redis"""
        self.redis_client.setex(
            f"{RECORD_KEY_PREFIX}{record.file_id}",
            int(self.record_ttl.total_seconds()),
            record.model_dump_json(),
        )

    async def _update_record(self, file_id: Optional[str], **changes):
        # best-effort once S3 has accepted the call
        if not file_id:
            return
        try:
            record = await self.get_record(file_id)
            if not record:
                logger.warning(f"No upload record for {file_id}")
                return
            await self._store_record(record.model_copy(update=changes))
        except redis.RedisError as e:
            logger.warning(f"Failed to update upload record {file_id}: {e}")
