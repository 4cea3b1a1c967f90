import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import redis
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from models.upload_models import *
from services.cleanup_service import CleanupService
from services.processing_service import ProcessingService
from services.upload_service import UploadService

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

# provider errors caused by the request rather than the server
CLIENT_SIDE_S3_ERRORS = {"InvalidPart", "InvalidPartOrder", "EntityTooSmall", "NoSuchUpload"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    cleanup_task = None
    missing = settings.missing_storage_config()
    if missing:
        logger.warning(f"Storage not configured ({', '.join(missing)}); cleanup scheduler disabled")
    else:
        cleanup_service = CleanupService(upload_service.s3_client, upload_service.redis_client)
        cleanup_task = asyncio.create_task(cleanup_service.start_cleanup_scheduler())

    yield

    # Shutdown
    if cleanup_task:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass


app = FastAPI(title=settings.app_name, lifespan=lifespan)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

# Initialize services
upload_service = UploadService()
processing_service = ProcessingService(upload_service.s3_client)


def error_response(
    status_code: int,
    message: str,
    error: Optional[str] = None,
    error_code: Optional[str] = None,
    errors: Optional[Dict[str, List[str]]] = None,
) -> JSONResponse:
    body = {"success": False, "message": message}
    if error is not None:
        body["error"] = error
    if error_code is not None:
        body["errorCode"] = error_code
    if errors is not None:
        body["errors"] = errors
    return JSONResponse(status_code=status_code, content=body)


def provider_error_response(e: Exception, message: str, error_code: str) -> JSONResponse:
    status_code = 500
    if isinstance(e, ClientError):
        code = e.response.get("Error", {}).get("Code")
        if code in CLIENT_SIDE_S3_ERRORS:
            status_code = 404 if code == "NoSuchUpload" else 400
    return error_response(status_code, message, error=str(e), error_code=error_code)


@app.exception_handler(RequestValidationError)
async def request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors: Dict[str, List[str]] = {}
    for error in exc.errors():
        # drop the "body" / "query" prefix
        loc = [str(part) for part in error.get("loc", ())]
        field = ".".join(loc[1:]) or ".".join(loc) or "request"
        errors.setdefault(field, []).append(error.get("msg", "Invalid value"))
    logger.warning(f"Rejected {request.method} {request.url.path}: {errors}")
    return error_response(422, "Invalid request parameters", errors=errors)


def storage_config_error() -> Optional[JSONResponse]:
    missing = settings.missing_storage_config()
    if missing:
        logger.error(f"Missing AWS configuration: {', '.join(missing)}")
        return error_response(500, "Server configuration error: Missing AWS credentials")
    return None


def preflight(methods: str) -> Response:
    return Response(
        status_code=200,
        headers={
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": methods,
            "Access-Control-Allow-Headers": "Content-Type, Authorization",
        },
    )


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.post("/api/upload-presign")
async def initialize_upload(payload: InitializeUploadRequest):
    """Initialize a new multipart upload session"""
    config_error = storage_config_error()
    if config_error:
        return config_error

    errors = payload.missing_fields()
    if errors:
        return error_response(422, "Missing required parameters", errors=errors)

    try:
        record = await upload_service.initialize_upload(payload)
    except (BotoCoreError, ClientError, redis.RedisError, RuntimeError) as e:
        logger.error(f"Multipart upload initialization failed for {payload.file_id}: {e}")
        return provider_error_response(e, "Multipart upload initialization failed", "MULTIPART_INIT_FAILED")

    return {
        "success": True,
        "message": "Multipart upload initialized successfully",
        "uploadId": record.upload_id,
        "fileId": record.file_id,
        "s3Key": record.s3_key,
        "fileName": os.path.basename(record.s3_key),
        "originalName": record.file_name,
        "contentType": record.content_type,
        "totalChunks": record.total_parts,
    }


@app.get("/api/upload-presign")
async def get_presigned_url(
    upload_id: str = Query("", alias="uploadId"),
    part_number: int = Query(0, alias="partNumber"),
    s3_key: str = Query("", alias="s3Key"),
):
    """Generate presigned URL for uploading a specific part"""
    config_error = storage_config_error()
    if config_error:
        return config_error

    errors = {}
    if not upload_id:
        errors["uploadId"] = ["Upload ID is required"]
    if part_number < 1:
        errors["partNumber"] = ["Part number is required"]
    if not s3_key:
        errors["s3Key"] = ["S3 key is required"]
    if errors:
        return error_response(422, "Missing required parameters", errors=errors)

    try:
        url = upload_service.generate_presigned_url(upload_id, s3_key, part_number)
    except (BotoCoreError, ClientError) as e:
        logger.error(f"Presigned URL generation failed for part {part_number}: {e}")
        return provider_error_response(e, "Presigned URL generation failed", "PRESIGNED_URL_FAILED")

    return {
        "success": True,
        "message": f"Presigned URL generated for part {part_number}",
        "partNumber": part_number,
        "uploadId": upload_id,
        "s3Key": s3_key,
        "presignedUrl": url,
        "expiresIn": settings.presigned_url_expiry,
    }


@app.options("/api/upload-presign")
async def upload_presign_options():
    return preflight("GET, POST, OPTIONS")


@app.post("/api/complete-upload")
async def complete_upload(payload: CompleteUploadRequest):
    """Complete the multipart upload"""
    config_error = storage_config_error()
    if config_error:
        return config_error

    errors = payload.missing_fields()
    if errors:
        return error_response(422, "Missing required fields", errors=errors)

    try:
        result = await upload_service.complete_upload(payload)
    except (BotoCoreError, ClientError) as e:
        logger.error(f"Upload completion failed for {payload.file_id}: {e}")
        return provider_error_response(e, "Upload completion failed", "UPLOAD_COMPLETION_FAILED")

    return {"success": True, "message": "File uploaded successfully", **result}


@app.options("/api/complete-upload")
async def complete_upload_options():
    return preflight("POST, OPTIONS")


@app.post("/api/abort-upload")
async def abort_upload(payload: AbortUploadRequest):
    """Abort an ongoing upload"""
    config_error = storage_config_error()
    if config_error:
        return config_error

    errors = payload.missing_fields()
    if errors:
        return error_response(422, "Missing required fields", errors=errors)

    try:
        await upload_service.abort_upload(payload.upload_id, payload.s3_key, payload.file_id)
    except (BotoCoreError, ClientError) as e:
        logger.error(f"Multipart upload abort failed for {payload.upload_id}: {e}")
        return provider_error_response(e, "Multipart upload abort failed", "MULTIPART_ABORT_FAILED")

    return {"success": True, "message": "Multipart upload aborted", "uploadId": payload.upload_id}


@app.options("/api/abort-upload")
async def abort_upload_options():
    return preflight("POST, OPTIONS")


@app.get("/api/processing-status/{file_id}")
async def get_processing_status(file_id: str):
    """HLS processing status for an uploaded video"""
    try:
        status = processing_service.get_processing_status(file_id)
    except (BotoCoreError, ClientError) as e:
        logger.error(f"Failed to get processing status for {file_id}: {e}")
        return error_response(500, "Failed to get processing status", error=str(e))
    return {"success": True, **status}


@app.options("/api/processing-status/{file_id}")
async def processing_status_options(file_id: str):
    return preflight("GET, OPTIONS")


@app.get("/api/upload-status/{file_id}")
async def get_upload_status(file_id: str):
    """Upload record and the parts received so far"""
    config_error = storage_config_error()
    if config_error:
        return config_error

    try:
        status = await upload_service.get_upload_status(file_id)
    except (BotoCoreError, ClientError, redis.RedisError) as e:
        logger.error(f"Failed to get upload status for {file_id}: {e}")
        return error_response(500, "Failed to get upload status", error=str(e))

    if status is None:
        return error_response(404, "Upload not found")
    return {"success": True, **status}


@app.options("/api/upload-status/{file_id}")
async def upload_status_options(file_id: str):
    return preflight("GET, OPTIONS")


@app.get("/api/video-info/{file_id}")
async def get_video_info(file_id: str):
    """Resolved HLS playlist and segment URLs"""
    try:
        info = processing_service.get_video_info(file_id)
    except (BotoCoreError, ClientError) as e:
        logger.error(f"Failed to get video info for {file_id}: {e}")
        return error_response(500, "Failed to get video info", error=str(e))

    if info is None:
        return error_response(404, "HLS files not found for this video")
    return {"success": True, **info}


@app.options("/api/video-info/{file_id}")
async def video_info_options(file_id: str):
    return preflight("GET, OPTIONS")
