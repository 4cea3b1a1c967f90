# services/processing_service.py
import json
import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from config import Settings, settings as default_settings
from models.upload_models import ProcessingPhase

logger = logging.getLogger(__name__)


class ProcessingService:
    """Reads HLS transcoding output from the bucket; never writes to it"""

    def __init__(self, s3_client, settings: Optional[Settings] = None):
        self.s3_client = s3_client
        self.settings = settings or default_settings
        self.bucket_name = self.settings.bucket_name

    def _list_objects(self, prefix: str) -> List[Dict[str, Any]]:
        objects = []
        kwargs = {"Bucket": self.bucket_name, "Prefix": prefix}
        while True:
            response = self.s3_client.list_objects_v2(**kwargs)
            objects.extend(response.get("Contents", []))
            if not response.get("IsTruncated"):
                return objects
            kwargs["ContinuationToken"] = response["NextContinuationToken"]

    def _describe(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        last_modified = obj.get("LastModified")
        return {
            "key": obj["Key"],
            "size": obj.get("Size", 0),
            "lastModified": last_modified.isoformat() if last_modified else None,
            "url": self.settings.object_url(obj["Key"]),
        }

    def _hls_files(self, file_id: str):
        hls_files = self._list_objects(f"{self.settings.hls_prefix}{file_id}/")
        playlist = next((f for f in hls_files if f["Key"].endswith(".m3u8")), None)
        segments = [f for f in hls_files if f["Key"].endswith(".ts")]
        return hls_files, playlist, segments

    def _job_details(self, file_id: str) -> Optional[Dict[str, Any]]:
        key = f"{self.settings.processing_jobs_prefix}{file_id}.json"
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                return None
            raise
        try:
            return json.loads(response["Body"].read())
        except ValueError as e:
            logger.warning(f"Unreadable job document {key}: {e}")
            return None

    def get_processing_status(self, file_id: str) -> Dict[str, Any]:
        hls_files, playlist, segments = self._hls_files(file_id)

        if playlist:
            phase = ProcessingPhase.COMPLETED
        elif hls_files:
            phase = ProcessingPhase.IN_PROGRESS
        else:
            phase = ProcessingPhase.PENDING

        originals = self._list_objects(f"{self.settings.upload_prefix}{file_id}_")
        details = self._job_details(file_id)

        logger.info(f"Processing status for {file_id}: {phase.value} ({len(hls_files)} HLS files)")
        return {
            "fileId": file_id,
            "processing": {
                "status": phase.value,
                "hlsFilesFound": len(hls_files),
                "segmentCount": len(segments),
                "hasPlaylist": playlist is not None,
            },
            "original": {
                "exists": bool(originals),
                "files": [self._describe(obj) for obj in originals],
            },
            "hls": {
                "playlistUrl": self.settings.object_url(playlist["Key"]),
                "segmentCount": len(segments),
                "totalFiles": len(hls_files),
                "ready": True,
            } if playlist else None,
            "metadata": (details or {}).get("metadata"),
            "videoDetails": details,
        }

    def get_video_info(self, file_id: str) -> Optional[Dict[str, Any]]:
        """Resolved playlist and segment URLs, or None while HLS output is missing"""
        hls_files, playlist, segments = self._hls_files(file_id)
        if not playlist:
            return None

        return {
            "fileId": file_id,
            "hls": {
                "playlistUrl": self.settings.object_url(playlist["Key"]),
                "segmentCount": len(segments),
                "segmentUrls": [self.settings.object_url(s["Key"]) for s in segments],
                "totalFiles": len(hls_files),
            },
            "files": [self._describe(obj) for obj in hls_files],
        }
