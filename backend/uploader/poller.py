# uploader/poller.py
import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from models.upload_models import ProcessingStatus
from uploader.cancellation import CancellationToken
from uploader.config import DEFAULT_POLL_INTERVAL, DEFAULT_POLL_TIMEOUT
from uploader.gateway_client import GatewayClient, GatewayError

logger = logging.getLogger(__name__)

ReadyCallback = Callable[[ProcessingStatus], Any]


class PollReady(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: ProcessingStatus
    polls: int


class PollTimeout(BaseModel):
    """Transcoding is still running; not an error"""

    model_config = ConfigDict(frozen=True)

    polls: int
    last_status: Optional[ProcessingStatus] = None


class PollCancelled(BaseModel):
    model_config = ConfigDict(frozen=True)

    polls: int


PollOutcome = Union[PollReady, PollTimeout, PollCancelled]


class ProcessingPoller:
    """Polls processing status for one file until its HLS output is ready.

    A status request goes out immediately and then every `interval` seconds,
    scheduled from the start time so slow responses do not stretch the loop.
    Failed requests are logged and polling continues. Polling ends when the
    file is ready (`on_ready` fires once), when `timeout` seconds have
    elapsed, or when `stop()` is called.
    """

    def __init__(
        self,
        gateway: GatewayClient,
        interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_POLL_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.gateway = gateway
        self.interval = interval
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep
        self._token: Optional[CancellationToken] = None
        self._task: Optional[asyncio.Task] = None
        self.status: Optional[ProcessingStatus] = None

    def start(self, file_id: str, on_ready: ReadyCallback) -> asyncio.Task:
        """Run `poll_until_ready` in the background"""
        if self._task and not self._task.done():
            raise RuntimeError(f"Already polling {file_id}")
        # the token exists before the task first runs so an early stop() is not lost
        token = CancellationToken()
        self._token = token
        self._task = asyncio.ensure_future(self.poll_until_ready(file_id, on_ready, token))
        return self._task

    def stop(self):
        """Stop polling; `on_ready` will not fire afterwards"""
        if self._token:
            self._token.cancel()

    @property
    def is_polling(self) -> bool:
        return self._token is not None and not self._token.cancelled

    async def _fetch(self, file_id: str, attempt: int) -> Optional[ProcessingStatus]:
        try:
            status = await self.gateway.processing_status(file_id)
        except (GatewayError, httpx.HTTPError, ValidationError) as e:
            logger.warning(f"Status poll {attempt} for {file_id} failed: {e}")
            return None
        logger.debug(f"Status poll {attempt} for {file_id}: {status.phase.value}")
        return status

    async def poll_until_ready(
        self,
        file_id: str,
        on_ready: ReadyCallback,
        token: Optional[CancellationToken] = None,
    ) -> PollOutcome:
        token = token or CancellationToken()
        self._token = token
        sleep = self._sleep or token.sleep

        started = self._clock()
        deadline = started + self.timeout
        polls = 0

        try:
            while not token.cancelled:
                polls += 1
                status = await self._fetch(file_id, polls)
                if token.cancelled:
                    break
                if status is not None:
                    self.status = status
                    if status.is_ready:
                        logger.info(f"Processing complete for {file_id} after {polls} polls")
                        token.cancel()
                        result = on_ready(status)
                        if inspect.isawaitable(result):
                            await result
                        return PollReady(status=status, polls=polls)

                next_poll = started + polls * self.interval
                if next_poll >= deadline:
                    logger.info(f"Stopped polling {file_id} after {self.timeout:.0f}s; still processing")
                    return PollTimeout(polls=polls, last_status=self.status)

                await sleep(max(0.0, next_poll - self._clock()))
        finally:
            token.cancel()

        logger.info(f"Polling for {file_id} stopped")
        return PollCancelled(polls=polls)
