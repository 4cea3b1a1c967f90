# uploader/results.py
from enum import Enum
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from models.upload_models import UploadStatus


class UploadErrorKind(str, Enum):
    VALIDATION = "validation"
    INITIALIZATION_FAILED = "initialization_failed"
    PART_UPLOAD_FAILED = "part_upload_failed"
    COMPLETION_FAILED = "completion_failed"
    ABORTED = "aborted"


class UploadError(Exception):
    """Failure below the orchestrator; converted to UploadFailure at its boundary"""

    kind: UploadErrorKind

    def __init__(self, message: str, part_number: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.part_number = part_number


class InitializationFailed(UploadError):
    kind = UploadErrorKind.INITIALIZATION_FAILED


class PartUploadFailed(UploadError):
    kind = UploadErrorKind.PART_UPLOAD_FAILED

    def __init__(self, part_number: int, message: Optional[str] = None):
        super().__init__(message or f"Failed to upload part {part_number}", part_number=part_number)


class CompletionFailed(UploadError):
    kind = UploadErrorKind.COMPLETION_FAILED


class UploadAborted(UploadError):
    kind = UploadErrorKind.ABORTED

    def __init__(self, message: str = "Upload cancelled"):
        super().__init__(message)


class PartUploadResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    part_number: int = Field(ge=1)
    integrity_tag: str


class UploadProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    percent: int
    current_part: int
    total_parts: int
    bytes_uploaded: int
    total_bytes: int


class UploadSession(BaseModel):
    """One file's multipart upload as seen by the client"""

    file_id: str
    file_name: str
    content_type: str
    file_size: int
    total_parts: int
    upload_id: Optional[str] = None
    storage_key: Optional[str] = None
    status: UploadStatus = UploadStatus.IDLE

    # part number -> integrity tag
    parts_completed: Dict[int, str] = {}

    def record_part(self, result: PartUploadResult) -> None:
        if not 1 <= result.part_number <= self.total_parts:
            raise ValueError(f"Part {result.part_number} outside 1..{self.total_parts}")
        if result.part_number in self.parts_completed:
            raise ValueError(f"Part {result.part_number} already recorded")
        self.parts_completed[result.part_number] = result.integrity_tag

    def is_complete(self) -> bool:
        return len(self.parts_completed) == self.total_parts

    def completed_parts(self) -> List[PartUploadResult]:
        """Recorded parts in ascending part-number order"""
        return [
            PartUploadResult(part_number=number, integrity_tag=tag)
            for number, tag in sorted(self.parts_completed.items())
        ]


class UploadSuccess(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: Literal[True] = True
    file_id: str
    storage_key: str
    file_size: int
    content_type: str
    object_url: str
    file_name: Optional[str] = None


class UploadFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: Literal[False] = False
    kind: UploadErrorKind
    message: str
    part_number: Optional[int] = None
    file_id: Optional[str] = None

    @classmethod
    def from_error(cls, error: UploadError, file_id: Optional[str] = None) -> "UploadFailure":
        return cls(kind=error.kind, message=error.message, part_number=error.part_number, file_id=file_id)


UploadOutcome = Union[UploadSuccess, UploadFailure]
