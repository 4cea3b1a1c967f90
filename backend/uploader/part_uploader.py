# uploader/part_uploader.py
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from uploader.cancellation import CancellationToken
from uploader.config import DEFAULT_CONFIG, UploadConfig
from uploader.results import PartUploadFailed, PartUploadResult, UploadAborted

logger = logging.getLogger(__name__)


class PartRejected(Exception):
    """Storage answered the PUT without accepting the part"""


def backoff_delay(failed_attempt: int, base_delay: float) -> float:
    """Wait after the given failed attempt (1-based) before the next one"""
    return base_delay * 2 ** (failed_attempt - 1)


class PartUploader:
    """PUTs one byte range to a presigned URL, retrying with exponential backoff"""

    def __init__(
        self,
        config: UploadConfig = DEFAULT_CONFIG,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        timeout: float = 120.0,
    ):
        self.config = config
        self._owns_client = client is None
        # presigned URLs carry their own credentials; no gateway auth headers here
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._sleep = sleep

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def upload_part(self, url: str, data: bytes, part_number: int) -> PartUploadResult:
        """Single attempt; raises PartRejected or httpx.HTTPError"""
        response = await self._client.put(url, content=data)
        if response.is_error:
            raise PartRejected(f"Part {part_number} upload failed: {response.status_code} - {response.text}")

        etag = response.headers.get("ETag")
        if not etag:
            raise PartRejected(f"No ETag received for part {part_number}")
        return PartUploadResult(part_number=part_number, integrity_tag=etag)

    async def upload_part_with_retry(
        self,
        url: str,
        data: bytes,
        part_number: int,
        cancel_token: CancellationToken,
    ) -> PartUploadResult:
        max_retries = self.config.max_retries

        for attempt in range(1, max_retries + 1):
            if cancel_token.cancelled:
                raise UploadAborted(f"Upload cancelled before part {part_number}")

            try:
                result = await self.upload_part(url, data, part_number)
            except httpx.InvalidURL as e:
                raise PartUploadFailed(part_number, f"Invalid upload URL for part {part_number}: {e}") from e
            except (httpx.HTTPError, PartRejected) as e:
                logger.warning(f"Part {part_number} attempt {attempt}/{max_retries} failed: {e}")
            else:
                if cancel_token.cancelled:
                    # the part landed in storage but the upload is being torn down
                    raise UploadAborted(f"Upload cancelled during part {part_number}")
                logger.debug(f"Part {part_number} uploaded on attempt {attempt}")
                return result

            if attempt < max_retries:
                delay = backoff_delay(attempt, self.config.retry_base_delay)
                logger.info(f"Waiting {delay:.1f}s before retrying part {part_number}")
                await (self._sleep or cancel_token.sleep)(delay)

        logger.error(f"Part {part_number} failed after {max_retries} attempts")
        raise PartUploadFailed(part_number, f"Failed to upload part {part_number} after {max_retries} attempts")
