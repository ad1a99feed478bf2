"""Compression API router.

``POST /compress`` takes a multipart upload, writes it to the shared temp
directory and hands it to the compression pipeline.
"""

import logging
import os
import re
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile

from app.core.config import Settings
from app.modules.compression.errors import (
    CompressionError,
    InputTooLargeError,
    MissingInputError,
)
from app.modules.compression.schemas import (
    CompressionResponse,
    ErrorResponse,
    ServiceStatusResponse,
)
from app.modules.compression.service import CompressionService, cleanup_temp_files, make_temp_path

logger = logging.getLogger(__name__)

router = APIRouter(tags=["compression"])

UPLOAD_CHUNK_SIZE = 1024 * 1024

_BUCKET_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,62}$")
_FOLDER_RE = re.compile(r"^[A-Za-z0-9._/-]{0,256}$")


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_compression_service(request: Request) -> CompressionService:
    """Dependency returning the service built at startup."""
    return request.app.state.compression_service


def validate_destination(bucket: str, folder: str) -> None:
    """Reject bucket/folder values that cannot form a safe storage key."""
    if not _BUCKET_RE.match(bucket):
        raise CompressionError(f"Invalid bucket name: {bucket}", status_code=400)
    if not _FOLDER_RE.match(folder) or ".." in folder.split("/"):
        raise CompressionError(f"Invalid folder: {folder}", status_code=400)


async def save_upload(upload: UploadFile, tmp_dir: str, max_size: int) -> tuple[str, int]:
    """Stream an upload into a fresh temp file.

    Returns:
        Tuple of (path, size in bytes)

    Raises:
        InputTooLargeError: the upload exceeds ``max_size``; nothing is left behind
    """
    os.makedirs(tmp_dir, exist_ok=True)
    path = make_temp_path(tmp_dir, "upload")
    size = 0

    try:
        with open(path, "xb") as out:
            while chunk := await upload.read(UPLOAD_CHUNK_SIZE):
                size += len(chunk)
                if size > max_size:
                    raise InputTooLargeError(max_size)
                out.write(chunk)
    except BaseException:
        cleanup_temp_files(path)
        raise
    finally:
        await upload.close()

    return path, size


@router.get("/", response_model=ServiceStatusResponse)
async def service_status(settings: Settings = Depends(get_settings)) -> ServiceStatusResponse:
    """Liveness endpoint naming the service."""
    return ServiceStatusResponse(status="ok", service=settings.SERVICE_NAME)


@router.post(
    "/compress",
    response_model=CompressionResponse,
    responses={
        400: {"model": ErrorResponse, "description": "No video file or invalid destination"},
        413: {"model": ErrorResponse, "description": "Upload larger than the inbound limit"},
        422: {"model": ErrorResponse, "description": "Compressed video above the size ceiling"},
        500: {"model": ErrorResponse, "description": "Encoding or unexpected failure"},
        502: {"model": ErrorResponse, "description": "Storage upload failed"},
    },
)
async def compress_video(
    request: Request,
    video: Optional[UploadFile] = File(None),
    bucket: Optional[str] = Form(None),
    folder: Optional[str] = Form(None),
    settings: Settings = Depends(get_settings),
    service: CompressionService = Depends(get_compression_service),
) -> CompressionResponse:
    """Compress an uploaded video and publish it to object storage.

    The video is scaled to 480p H.264/AAC, rejected if it is still above
    the size ceiling, and stored under a unique key in ``bucket``.
    """
    if video is None or not video.filename:
        raise MissingInputError()

    bucket = bucket or settings.DEFAULT_BUCKET
    folder = settings.DEFAULT_FOLDER if folder is None else folder
    validate_destination(bucket, folder)

    input_path, input_size = await save_upload(
        video, settings.UPLOAD_TMP_DIR, settings.MAX_UPLOAD_SIZE_BYTES
    )
    job = service.new_job(
        input_path=input_path,
        original_filename=video.filename,
        input_size=input_size,
        bucket=bucket,
        folder=folder,
    )
    request.state.compression_job = job
    result = await service.compress(job)
    return CompressionResponse.from_result(result)
