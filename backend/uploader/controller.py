# uploader/controller.py
import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, List, Optional, Union

from pydantic import BaseModel, ConfigDict

from uploader.cancellation import CancellationToken
from uploader.config import DEFAULT_CONFIG, UploadConfig, validate_file
from uploader.orchestrator import MultipartUploadOrchestrator
from uploader.results import UploadErrorKind, UploadFailure, UploadOutcome, UploadProgress, UploadSuccess
from uploader.source_file import SourceFile

logger = logging.getLogger(__name__)


class UploadPhase(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    SUCCESS = "success"
    ERROR = "error"


class InvalidTransition(Exception):
    pass


class UploadUIState(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: UploadPhase = UploadPhase.IDLE
    progress_percent: int = 0
    current_part: int = 0
    total_parts: int = 0
    retry_count: int = 0
    file_name: Optional[str] = None
    file_id: Optional[str] = None
    error_kind: Optional[UploadErrorKind] = None
    error_message: Optional[str] = None

    @property
    def actions(self) -> List[str]:
        """Controls the widget offers in this state"""
        if self.status == UploadPhase.UPLOADING:
            return ["cancel"]
        if self.status == UploadPhase.SUCCESS:
            return ["remove", "choose_file"]
        if self.status == UploadPhase.ERROR:
            if self.error_kind == UploadErrorKind.VALIDATION:
                return ["choose_file"]
            return ["retry", "remove", "choose_file"]
        return ["choose_file"]


# events

class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class FileRejected(_Event):
    file_name: str
    message: str


class UploadStarted(_Event):
    file_name: str


class RetryStarted(_Event):
    pass


class ProgressReported(_Event):
    progress: UploadProgress


class UploadSucceeded(_Event):
    file_id: str


class UploadFailed(_Event):
    kind: UploadErrorKind
    message: str
    file_id: Optional[str] = None


class UploadCancelled(_Event):
    pass


class FileRemoved(_Event):
    pass


UploadEvent = Union[
    FileRejected, UploadStarted, RetryStarted, ProgressReported,
    UploadSucceeded, UploadFailed, UploadCancelled, FileRemoved,
]


def _require(state: UploadUIState, event: _Event, *allowed: UploadPhase):
    if state.status not in allowed:
        raise InvalidTransition(f"{type(event).__name__} not allowed while {state.status.value}")


def reduce(state: UploadUIState, event: UploadEvent, config: UploadConfig = DEFAULT_CONFIG) -> UploadUIState:
    """Next widget state; raises InvalidTransition for events the state does not accept"""
    if isinstance(event, FileRejected):
        _require(state, event, UploadPhase.IDLE, UploadPhase.SUCCESS, UploadPhase.ERROR)
        return UploadUIState(
            status=UploadPhase.ERROR,
            file_name=event.file_name,
            error_kind=UploadErrorKind.VALIDATION,
            error_message=event.message,
        )

    if isinstance(event, UploadStarted):
        _require(state, event, UploadPhase.IDLE, UploadPhase.SUCCESS, UploadPhase.ERROR)
        return UploadUIState(status=UploadPhase.UPLOADING, file_name=event.file_name)

    if isinstance(event, RetryStarted):
        _require(state, event, UploadPhase.ERROR)
        if state.error_kind == UploadErrorKind.VALIDATION:
            raise InvalidTransition("A rejected file cannot be retried; choose a different file")
        if state.retry_count >= config.max_retries:
            raise InvalidTransition(f"Retry limit of {config.max_retries} reached")
        return UploadUIState(
            status=UploadPhase.UPLOADING,
            file_name=state.file_name,
            retry_count=state.retry_count + 1,
        )

    if isinstance(event, ProgressReported):
        _require(state, event, UploadPhase.UPLOADING)
        progress = event.progress
        return state.model_copy(update={
            "progress_percent": max(state.progress_percent, progress.percent),
            "current_part": max(state.current_part, progress.current_part),
            "total_parts": progress.total_parts,
        })

    if isinstance(event, UploadSucceeded):
        _require(state, event, UploadPhase.UPLOADING)
        return state.model_copy(update={
            "status": UploadPhase.SUCCESS,
            "progress_percent": 100,
            "current_part": state.total_parts,
            "file_id": event.file_id,
        })

    if isinstance(event, UploadFailed):
        _require(state, event, UploadPhase.UPLOADING)
        return state.model_copy(update={
            "status": UploadPhase.ERROR,
            "file_id": event.file_id,
            "error_kind": event.kind,
            "error_message": event.message,
        })

    if isinstance(event, UploadCancelled):
        _require(state, event, UploadPhase.UPLOADING)
        return UploadUIState()

    if isinstance(event, FileRemoved):
        _require(state, event, UploadPhase.SUCCESS, UploadPhase.ERROR)
        return UploadUIState()

    raise TypeError(f"Unknown upload event: {event!r}")


FileChangeCallback = Callable[[Optional[SourceFile], Optional[UploadSuccess]], Any]


class UploadSessionController:
    """Owns one upload widget's state and bridges the orchestrator to the form.

    The parent callback receives `(file, result)` once an upload succeeds and
    `(None, None)` when the file is removed; until then the parent must treat
    the upload as unusable.
    """

    def __init__(
        self,
        orchestrator: MultipartUploadOrchestrator,
        on_file_change: FileChangeCallback,
        config: UploadConfig = DEFAULT_CONFIG,
        on_state_change: Optional[Callable[[UploadUIState], Any]] = None,
    ):
        self.orchestrator = orchestrator
        self.config = config
        self.state = UploadUIState()
        self.last_outcome: Optional[UploadOutcome] = None
        self._on_file_change = on_file_change
        self._on_state_change = on_state_change
        self._source: Optional[SourceFile] = None
        self._token: Optional[CancellationToken] = None
        self._settled: Optional[asyncio.Event] = None

    def _dispatch(self, event: UploadEvent):
        self.state = reduce(self.state, event, self.config)
        if self._on_state_change:
            self._on_state_change(self.state)

    async def _notify_parent(self, source: Optional[SourceFile], result: Optional[UploadSuccess]):
        outcome = self._on_file_change(source, result)
        if inspect.isawaitable(outcome):
            await outcome

    async def select_file(self, source: SourceFile) -> UploadUIState:
        """Validate the file and, if accepted, upload it; returns the settled state"""
        if self.state.status == UploadPhase.UPLOADING:
            raise InvalidTransition("An upload is already in progress")

        rejection = validate_file(source, self.config)
        if rejection:
            logger.warning(f"Rejected {source.name}: {rejection.message}")
            self._source = None
            self._dispatch(FileRejected(file_name=source.name, message=rejection.message))
            return self.state

        self._source = source
        self._dispatch(UploadStarted(file_name=source.name))
        return await self._run()

    async def retry(self) -> UploadUIState:
        """Start the whole upload again with a fresh session"""
        self._dispatch(RetryStarted())
        logger.info(f"Retrying upload of {self._source.name} ({self.state.retry_count}/{self.config.max_retries})")
        return await self._run()

    async def cancel(self) -> UploadUIState:
        """Stop the running upload and wait for the orchestrator to acknowledge"""
        if self.state.status != UploadPhase.UPLOADING or self._token is None:
            raise InvalidTransition("No upload in progress")
        self._token.cancel()
        await self._settled.wait()
        return self.state

    async def remove(self) -> UploadUIState:
        self._dispatch(FileRemoved())
        self._source = None
        self.last_outcome = None
        await self._notify_parent(None, None)
        return self.state

    def _on_progress(self, progress: UploadProgress):
        token = self._token
        if token is not None and not token.cancelled:
            self._dispatch(ProgressReported(progress=progress))

    async def _run(self) -> UploadUIState:
        token = CancellationToken()
        self._token = token
        self._settled = asyncio.Event()
        try:
            outcome = await self.orchestrator.upload_file(self._source, token, on_progress=self._on_progress)
            self.last_outcome = outcome

            if isinstance(outcome, UploadSuccess):
                self._dispatch(UploadSucceeded(file_id=outcome.file_id))
                await self._notify_parent(self._source, outcome)
            elif outcome.kind == UploadErrorKind.ABORTED:
                self._dispatch(UploadCancelled())
            else:
                self._dispatch(UploadFailed(kind=outcome.kind, message=outcome.message, file_id=outcome.file_id))
        finally:
            self._token = None
            self._settled.set()
        return self.state

    @property
    def error(self) -> Optional[UploadFailure]:
        if isinstance(self.last_outcome, UploadFailure):
            return self.last_outcome
        return None
