# models/upload_models.py
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from typing import Any, ClassVar, Dict, List, Optional
from datetime import datetime
from enum import Enum


class UploadStatus(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_STATUSES = (UploadStatus.COMPLETED, UploadStatus.ABORTED, UploadStatus.FAILED)


class ProcessingPhase(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class GatewayRequest(BaseModel):
    """Base for gateway request bodies; fields travel in camelCase"""

    model_config = ConfigDict(populate_by_name=True)

    # field name -> label used in missing-field messages
    required_fields: ClassVar[Dict[str, str]] = {}

    def missing_fields(self) -> Dict[str, List[str]]:
        errors = {}
        for name, label in self.required_fields.items():
            if not getattr(self, name):
                alias = type(self).model_fields[name].alias or name
                errors[alias] = [f"{label} is required"]
        return errors


class InitializeUploadRequest(GatewayRequest):
    required_fields: ClassVar[Dict[str, str]] = {
        "file_name": "File name",
        "file_id": "File ID",
        "content_type": "Content type",
        "total_chunks": "Total chunks",
    }

    file_name: Optional[str] = Field(None, alias="fileName")
    file_id: Optional[str] = Field(None, alias="fileId")
    content_type: Optional[str] = Field(None, alias="contentType")
    total_chunks: Optional[int] = Field(None, alias="totalChunks")


class CompletedPart(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    part_number: int = Field(alias="PartNumber", ge=1)
    etag: str = Field(alias="ETag")


class CompleteUploadRequest(GatewayRequest):
    required_fields: ClassVar[Dict[str, str]] = {
        "upload_id": "Upload ID",
        "s3_key": "S3 key",
        "parts": "Parts",
        "file_name": "File name",
        "file_id": "File ID",
    }

    upload_id: Optional[str] = Field(None, alias="uploadId")
    s3_key: Optional[str] = Field(None, alias="s3Key")
    parts: List[CompletedPart] = []
    file_name: Optional[str] = Field(None, alias="fileName")
    file_id: Optional[str] = Field(None, alias="fileId")
    content_type: Optional[str] = Field(None, alias="contentType")


class AbortUploadRequest(GatewayRequest):
    required_fields: ClassVar[Dict[str, str]] = {
        "upload_id": "Upload ID",
        "s3_key": "S3 key",
    }

    upload_id: Optional[str] = Field(None, alias="uploadId")
    s3_key: Optional[str] = Field(None, alias="s3Key")
    file_id: Optional[str] = Field(None, alias="fileId")


class UploadRecord(BaseModel):
    """Server-side bookkeeping for one multipart upload, keyed by file id"""

    file_id: str
    file_name: str
    s3_key: str
    upload_id: str
    content_type: str
    total_parts: int
    status: UploadStatus
    created_at: datetime
    completed_at: Optional[datetime] = None
    expires_at: datetime
    file_size: Optional[int] = None
    object_url: Optional[str] = None


class VideoMetadata(BaseModel):
    """Metadata the transcoder extracts; unknown members are kept as-is"""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    duration: Optional[float] = None
    resolution: Optional[str] = None
    codec: Optional[str] = Field(None, validation_alias=AliasChoices("codec", "video_codec"))
    bitrate: Optional[int] = None


class ProcessingStatus(BaseModel):
    file_id: str
    phase: ProcessingPhase = ProcessingPhase.PENDING
    hls_files_found: int = 0
    segments_found: int = 0
    playlist_ready: bool = False
    playlist_url: Optional[str] = None
    metadata: Optional[VideoMetadata] = None

    @property
    def is_ready(self) -> bool:
        return self.phase == ProcessingPhase.COMPLETED and self.playlist_ready

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "ProcessingStatus":
        """Build from a /processing-status response body"""
        processing = data.get("processing")
        if not isinstance(processing, dict):
            processing = {}
        hls = data.get("hls")
        if not isinstance(hls, dict):
            hls = {}
        return cls(
            file_id=data.get("fileId", ""),
            phase=processing.get("status", ProcessingPhase.PENDING),
            hls_files_found=processing.get("hlsFilesFound", 0),
            segments_found=processing.get("segmentCount", 0),
            playlist_ready=bool(hls.get("ready", False)),
            playlist_url=hls.get("playlistUrl"),
            metadata=data.get("metadata"),
        )
