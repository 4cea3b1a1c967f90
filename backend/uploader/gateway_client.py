# uploader/gateway_client.py
import logging
from typing import Any, Dict, List, Optional

import httpx

from models.upload_models import ProcessingStatus
from uploader.results import PartUploadResult

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    def __init__(self, operation: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.message = message
        self.status_code = status_code


class GatewayClient:
    """HTTP client for the upload gateway endpoints"""

    def __init__(
        self,
        base_url: str = "http://localhost:8000/api",
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers
        self.base_url = base_url.rstrip("/")

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, f"{self.base_url}{path}", headers=self._headers, **kwargs)
        except httpx.HTTPError as e:
            raise GatewayError(operation, str(e) or type(e).__name__) from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.is_error or not body.get("success"):
            message = body.get("error") or body.get("message") or response.text or f"HTTP {response.status_code}"
            raise GatewayError(operation, message, status_code=response.status_code)
        return body

    async def initialize(self, file_name: str, file_id: str, content_type: str, total_parts: int) -> Dict[str, Any]:
        """Returns the body with `uploadId` and `s3Key`"""
        body = await self._request(
            "initialize",
            "POST",
            "/upload-presign",
            json={
                "fileName": file_name,
                "fileId": file_id,
                "contentType": content_type,
                "totalChunks": total_parts,
            },
        )
        if not body.get("uploadId") or not body.get("s3Key"):
            raise GatewayError("initialize", "response missing uploadId or s3Key")
        return body

    async def sign_part(self, upload_id: str, part_number: int, storage_key: str) -> str:
        body = await self._request(
            "sign_part",
            "GET",
            "/upload-presign",
            params={"uploadId": upload_id, "partNumber": part_number, "s3Key": storage_key},
        )
        url = body.get("presignedUrl")
        if not url:
            raise GatewayError("sign_part", f"no presigned URL for part {part_number}")
        return url

    async def complete(
        self,
        upload_id: str,
        storage_key: str,
        parts: List[PartUploadResult],
        file_name: str,
        file_id: str,
        content_type: str,
    ) -> Dict[str, Any]:
        ordered = sorted(parts, key=lambda part: part.part_number)
        return await self._request(
            "complete",
            "POST",
            "/complete-upload",
            json={
                "uploadId": upload_id,
                "s3Key": storage_key,
                "parts": [{"ETag": part.integrity_tag, "PartNumber": part.part_number} for part in ordered],
                "fileName": file_name,
                "fileId": file_id,
                "contentType": content_type,
            },
        )

    async def abort(self, upload_id: str, storage_key: str, file_id: Optional[str] = None) -> None:
        await self._request(
            "abort",
            "POST",
            "/abort-upload",
            json={"uploadId": upload_id, "s3Key": storage_key, "fileId": file_id},
        )

    async def processing_status(self, file_id: str) -> ProcessingStatus:
        body = await self._request("processing_status", "GET", f"/processing-status/{file_id}")
        try:
            return ProcessingStatus.from_response(body)
        except (ValueError, TypeError) as e:
            raise GatewayError("processing_status", f"unreadable status for {file_id}: {e}") from e
