# uploader/orchestrator.py
import logging
import math
import time
from typing import Callable, Optional

from models.upload_models import UploadStatus
from uploader.cancellation import CancellationToken
from uploader.config import DEFAULT_CONFIG, UploadConfig, count_parts, format_file_size, generate_file_id, part_range
from uploader.gateway_client import GatewayClient, GatewayError
from uploader.part_uploader import PartUploader
from uploader.results import (
    CompletionFailed,
    InitializationFailed,
    PartUploadFailed,
    UploadAborted,
    UploadError,
    UploadFailure,
    UploadOutcome,
    UploadProgress,
    UploadSession,
    UploadSuccess,
)
from uploader.source_file import SourceFile

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[UploadProgress], None]

# share of the progress bar before the first part and before completion
INITIALIZED_PERCENT = 5
PARTS_PERCENT = 85
COMPLETING_PERCENT = 95


def part_progress(part_number: int, total_parts: int) -> int:
    return INITIALIZED_PERCENT + math.floor(PARTS_PERCENT * part_number / total_parts + 0.5)


class MultipartUploadOrchestrator:
    """Drives one file through initialize, sequential part uploads and complete.

    Parts are uploaded strictly one after another: part N+1 is not signed
    before part N has succeeded or exhausted its retries. Any failure after
    initialization aborts the multipart session on a best-effort basis.
    `upload_file` reports every outcome as an UploadSuccess or UploadFailure.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        part_uploader: PartUploader,
        config: UploadConfig = DEFAULT_CONFIG,
    ):
        self.gateway = gateway
        self.part_uploader = part_uploader
        self.config = config
        self.session: Optional[UploadSession] = None

    async def upload_file(
        self,
        source: SourceFile,
        cancel_token: CancellationToken,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadOutcome:
        chunk_size = self.config.chunk_size
        session = UploadSession(
            file_id=generate_file_id(source.name),
            file_name=source.name,
            content_type=source.content_type,
            file_size=source.size,
            total_parts=count_parts(source.size, chunk_size),
        )
        self.session = session
        started = time.monotonic()

        def report(percent: int, current_part: int, bytes_uploaded: int):
            if on_progress:
                on_progress(UploadProgress(
                    percent=percent,
                    current_part=current_part,
                    total_parts=session.total_parts,
                    bytes_uploaded=bytes_uploaded,
                    total_bytes=source.size,
                ))

        logger.info(
            f"Starting multipart upload of {source.name} ({format_file_size(source.size)}, "
            f"{session.total_parts} parts) as {session.file_id}"
        )

        try:
            init = await self.gateway.initialize(
                source.name, session.file_id, source.content_type, session.total_parts
            )
        except GatewayError as e:
            logger.error(f"Could not initialize upload for {source.name}: {e}")
            session.status = UploadStatus.FAILED
            return UploadFailure.from_error(InitializationFailed(e.message), file_id=session.file_id)

        session.upload_id = init["uploadId"]
        session.storage_key = init["s3Key"]
        session.status = UploadStatus.UPLOADING
        report(INITIALIZED_PERCENT, 0, 0)

        try:
            result = await self._upload_parts_and_complete(source, session, cancel_token, report)
        except UploadError as e:
            if isinstance(e, UploadAborted):
                logger.info(f"Upload {session.file_id} cancelled")
                session.status = UploadStatus.ABORTED
            else:
                logger.error(f"Upload {session.file_id} failed: {e.message}")
                session.status = UploadStatus.FAILED
            await self._abort_quietly(session)
            return UploadFailure.from_error(e, file_id=session.file_id)

        session.status = UploadStatus.COMPLETED
        logger.info(f"Upload {session.file_id} completed in {time.monotonic() - started:.1f}s")
        return result

    async def _upload_parts_and_complete(self, source, session, cancel_token, report) -> UploadSuccess:
        chunk_size = self.config.chunk_size

        for part_number in range(1, session.total_parts + 1):
            if cancel_token.cancelled:
                raise UploadAborted(f"Upload cancelled at part {part_number}")

            start, end = part_range(part_number, source.size, chunk_size)
            try:
                data = source.read_range(start, end)
                url = await self.gateway.sign_part(session.upload_id, part_number, session.storage_key)
            except (OSError, GatewayError) as e:
                raise PartUploadFailed(part_number, f"Part {part_number} could not be prepared: {e}") from e

            result = await self.part_uploader.upload_part_with_retry(url, data, part_number, cancel_token)
            session.record_part(result)

            logger.info(f"Part {part_number}/{session.total_parts} uploaded ({start}-{end})")
            report(part_progress(part_number, session.total_parts), part_number, end)

        if cancel_token.cancelled:
            raise UploadAborted("Upload cancelled before completion")
        if not session.is_complete():
            raise CompletionFailed(f"Only {len(session.parts_completed)} of {session.total_parts} parts uploaded")

        report(COMPLETING_PERCENT, session.total_parts, source.size)
        try:
            completed = await self.gateway.complete(
                session.upload_id,
                session.storage_key,
                session.completed_parts(),
                source.name,
                session.file_id,
                source.content_type,
            )
        except GatewayError as e:
            raise CompletionFailed(e.message) from e

        report(100, session.total_parts, source.size)
        return UploadSuccess(
            file_id=session.file_id,
            storage_key=session.storage_key,
            file_size=completed.get("fileSize") or source.size,
            content_type=source.content_type,
            object_url=completed.get("s3Url") or "",
            file_name=completed.get("fileName"),
        )

    async def _abort_quietly(self, session: UploadSession):
        try:
            await self.gateway.abort(session.upload_id, session.storage_key, session.file_id)
        except GatewayError as e:
            logger.warning(f"Abort of upload {session.upload_id} failed: {e}")
        else:
            logger.info(f"Aborted multipart upload {session.upload_id}")
