# uploader/form_gate.py
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Optional

from models.upload_models import ProcessingStatus
from uploader.poller import PollOutcome, PollTimeout, ProcessingPoller
from uploader.results import UploadSuccess
from uploader.source_file import SourceFile

logger = logging.getLogger(__name__)

SubmitCallback = Callable[[UploadSuccess, Optional[ProcessingStatus]], Any]


class GateState(str, Enum):
    NO_UPLOAD = "no_upload"
    PROCESSING = "processing"
    READY = "ready"
    TIMED_OUT = "timed_out"


class SubmitDecision(str, Enum):
    SUBMITTED = "submitted"
    DEFERRED = "deferred"
    BLOCKED = "blocked"


class SubmissionGate:
    """Holds a content form's submit until its video is usable.

    Submitting while transcoding is still running defers the submit; it
    fires on its own once metadata arrives, or with no metadata when
    polling gives up. Without a finished upload, submit is refused.
    """

    def __init__(self, submit: SubmitCallback):
        self._submit = submit
        self.state = GateState.NO_UPLOAD
        self.upload: Optional[UploadSuccess] = None
        self.metadata: Optional[ProcessingStatus] = None
        self.pending = False

    async def upload_changed(self, file: Optional[SourceFile], result: Optional[UploadSuccess]):
        """Matches the upload controller's file-change callback"""
        self.upload = result
        self.metadata = None
        self.pending = False
        self.state = GateState.PROCESSING if result else GateState.NO_UPLOAD

    async def metadata_ready(self, status: ProcessingStatus):
        """Matches the poller's ready callback"""
        if self.upload is None or status.file_id not in ("", self.upload.file_id):
            logger.warning(f"Ignoring metadata for {status.file_id}; no matching upload")
            return
        self.metadata = status
        self.state = GateState.READY
        if self.pending:
            logger.info(f"Metadata ready for {status.file_id}; sending deferred submit")
            await self._fire()

    async def processing_timed_out(self):
        if self.state != GateState.PROCESSING:
            return
        self.state = GateState.TIMED_OUT
        if self.pending:
            logger.info("Processing still running; sending deferred submit without metadata")
            await self._fire()

    async def watch(self, poller: ProcessingPoller) -> PollOutcome:
        """Poll the current upload's processing and feed the outcome back into the gate"""
        if self.upload is None:
            raise RuntimeError("No finished upload to watch")
        result = await poller.poll_until_ready(self.upload.file_id, self.metadata_ready)
        if isinstance(result, PollTimeout):
            await self.processing_timed_out()
        return result

    async def request_submit(self) -> SubmitDecision:
        if self.state == GateState.NO_UPLOAD:
            return SubmitDecision.BLOCKED
        if self.state == GateState.PROCESSING:
            self.pending = True
            return SubmitDecision.DEFERRED
        await self._fire()
        return SubmitDecision.SUBMITTED

    async def _fire(self):
        self.pending = False
        result = self._submit(self.upload, self.metadata)
        if inspect.isawaitable(result):
            await result
