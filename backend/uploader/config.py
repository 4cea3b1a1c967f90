# uploader/config.py
import math
import re
import time
from typing import FrozenSet, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

MIB = 1024 * 1024
# S3 rejects non-final parts smaller than this
MIN_PART_SIZE = 5 * MIB

VIDEO_CONTENT_TYPES = frozenset({
    "video/mp4",
    "video/avi",
    "video/mov",
    "video/quicktime",
    "video/wmv",
    "video/x-ms-wmv",
    "video/flv",
    "video/x-flv",
    "video/webm",
    "video/mkv",
    "video/x-matroska",
    "video/3gp",
    "video/mp2t",
    "video/mpeg",
    "video/mpg",
    "video/mpe",
    "video/m4v",
    "video/asf",
    "video/vob",
    "video/ogv",
    "video/ogg",
})


class UploadConfig(BaseModel):
    """Client upload policy. Durations are in seconds."""

    model_config = ConfigDict(frozen=True)

    chunk_size: int = MIN_PART_SIZE
    max_retries: int = Field(3, ge=1)
    retry_base_delay: float = Field(1.0, ge=0)
    allowed_content_types: FrozenSet[str] = VIDEO_CONTENT_TYPES
    presigned_url_expiry: int = Field(3600, gt=0)

    @field_validator("chunk_size")
    @classmethod
    def check_chunk_size(cls, value: int) -> int:
        if value < MIN_PART_SIZE:
            raise ValueError(f"chunk_size must be at least {MIN_PART_SIZE} bytes")
        return value


DEFAULT_CONFIG = UploadConfig()

DEFAULT_POLL_INTERVAL = 3.0
DEFAULT_POLL_TIMEOUT = 120.0


class InvalidFileType(BaseModel):
    """A file the upload policy refuses; returned, never raised"""

    model_config = ConfigDict(frozen=True)

    content_type: str
    allowed_content_types: FrozenSet[str]

    @property
    def message(self) -> str:
        return f"Invalid file type: {self.content_type or 'unknown'}. Please select a video file."


def validate_file(file, config: UploadConfig = DEFAULT_CONFIG) -> Optional[InvalidFileType]:
    """None when the file may be uploaded"""
    if file.content_type in config.allowed_content_types:
        return None
    return InvalidFileType(
        content_type=file.content_type or "",
        allowed_content_types=config.allowed_content_types,
    )


def count_parts(file_size: int, chunk_size: int) -> int:
    # an empty file still needs one (empty) part
    return max(1, math.ceil(file_size / chunk_size))


def part_range(part_number: int, file_size: int, chunk_size: int) -> Tuple[int, int]:
    """Half-open byte range [start, end) of a 1-based part"""
    start = (part_number - 1) * chunk_size
    return start, min(part_number * chunk_size, file_size)


def part_ranges(file_size: int, chunk_size: int) -> List[Tuple[int, int]]:
    return [part_range(n, file_size, chunk_size) for n in range(1, count_parts(file_size, chunk_size) + 1)]


def generate_file_id(file_name: str) -> str:
    clean_name = re.sub(r"[^a-zA-Z0-9]", "_", file_name)
    timestamp = int(time.time() * 1000)
    return f"{clean_name}-{timestamp}-{uuid4().hex[:9]}"


def format_file_size(size: int) -> str:
    if size == 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"
