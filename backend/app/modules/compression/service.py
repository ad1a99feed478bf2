"""Compression pipeline: encode, size gate, publish, clean up.

A job runs its stages strictly in order. The encoder and the storage
upload are blocking calls and run on worker threads, so other jobs keep
progressing while one waits. Both temp files are removed on every exit
path before a result or an error leaves ``CompressionService.compress``.
"""

import asyncio
import logging
import os
import re
import secrets
import threading
import time
from contextlib import contextmanager
from pathlib import PurePosixPath, PureWindowsPath
from typing import Any, Callable, Iterator, Optional, TypeVar

from app.core.logging import job_context
from app.core.metrics import (
    COMPRESSION_INPUT_SIZE_BYTES,
    COMPRESSION_JOBS_IN_PROGRESS,
    COMPRESSION_JOBS_TOTAL,
    COMPRESSION_RATIO,
    COMPRESSION_STAGE_DURATION_SECONDS,
    TEMP_FILES_REMOVED_TOTAL,
)
from app.core.storage import StorageBackend
from app.core.tracing import stage_span
from app.modules.compression.errors import (
    CompressionError,
    EncodeFailedError,
    OutputTooLargeError,
    UnexpectedCompressionError,
    UploadFailedError,
)
from app.modules.compression.ffmpeg import FFmpegTranscoder
from app.modules.compression.models import (
    DEFAULT_PROFILE,
    CompressionJob,
    CompressionResult,
    EncodeProfile,
    JobStage,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MB = 1024 * 1024

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _timestamp_ms() -> int:
    return time.time_ns() // 1_000_000


def sanitize_basename(filename: str) -> str:
    """Reduce an uploaded filename to a key-safe stem.

    Directory components and the last extension are dropped; anything
    outside ``[A-Za-z0-9._-]`` becomes ``-``.
    """
    name = PureWindowsPath(PurePosixPath(filename or "").name).name
    stem, _ = os.path.splitext(name)
    stem = _UNSAFE_KEY_CHARS.sub("-", stem).strip("-.")
    return stem or "video"


def generate_upload_key(
    folder: str,
    original_filename: str,
    extension: str = ".mp4",
    now_ms: Optional[int] = None,
    suffix: Optional[str] = None,
) -> str:
    """Build a per-job unique storage key.

    ``<folder>/<epoch ms>-<random hex>-<sanitized name><extension>``. The
    random part keeps two uploads of the same file in the same millisecond
    apart.
    """
    if now_ms is None:
        now_ms = _timestamp_ms()
    if suffix is None:
        suffix = secrets.token_hex(4)

    name = f"{now_ms}-{suffix}-{sanitize_basename(original_filename)}{extension}"
    folder = folder.strip("/")
    return f"{folder}/{name}" if folder else name


def make_temp_path(tmp_dir: str, prefix: str, extension: str = "") -> str:
    """Collision-free path inside the shared temp directory."""
    return os.path.join(tmp_dir, f"{prefix}-{_timestamp_ms()}-{secrets.token_hex(6)}{extension}")


def check_output_size(output_path: str, ceiling_bytes: int) -> int:
    """Size gate: return the output size or reject it.

    Raises:
        OutputTooLargeError: size is above ``ceiling_bytes``
    """
    size = os.path.getsize(output_path)
    if size > ceiling_bytes:
        raise OutputTooLargeError(size, ceiling_bytes)
    return size


def compression_ratio(original_size: int, compressed_size: int) -> float:
    """Size reduction in percent, rounded to one decimal.

    Negative when the output grew.
    """
    if original_size <= 0:
        return 0.0
    return round((1 - compressed_size / original_size) * 100, 1)


def format_megabytes(size_bytes: int) -> str:
    return f"{size_bytes / MB:.2f}MB"


def format_ratio(ratio: float) -> str:
    return f"{ratio:.1f}%"


def format_seconds(seconds: float) -> str:
    return f"{seconds:.1f}s"


def cleanup_temp_files(*paths: Optional[str]) -> list[str]:
    """Remove every given path that exists.

    A path that is already gone is fine. Failing to remove one path is
    logged and does not stop the others from being removed.

    Returns:
        Paths that could not be removed
    """
    leftover = []
    for path in paths:
        if not path:
            continue
        try:
            os.remove(path)
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.error(f"Failed to remove temp file {path}", exc_info=e)
            leftover.append(path)
            continue
        TEMP_FILES_REMOVED_TOTAL.inc()
        logger.debug(f"Removed temp file {path}")
    return leftover


@contextmanager
def temp_files(*paths: Optional[str]) -> Iterator[None]:
    """Scope owning temp files; they are removed when the scope exits.

    When the body succeeded but a file could not be removed, the scope
    fails with ``UnexpectedCompressionError``. When the body raised, that
    error wins and leftovers are only logged.
    """
    try:
        yield
    except BaseException:
        cleanup_temp_files(*paths)
        raise

    leftover = cleanup_temp_files(*paths)
    if leftover:
        raise UnexpectedCompressionError(f"could not remove temp files: {', '.join(leftover)}")


async def run_blocking(
    func: Callable[..., T],
    *args: Any,
    cancel: Optional[threading.Event] = None,
    **kwargs: Any,
) -> T:
    """Run ``func`` on a worker thread and wait for it.

    If the waiting task is cancelled, ``cancel`` is set and the
    cancellation is held back until the thread has returned, so nothing the
    thread writes can outlive the caller's cleanup.
    """
    worker = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))
    try:
        return await asyncio.shield(worker)
    except asyncio.CancelledError:
        if cancel is not None:
            cancel.set()
        while not worker.done():
            try:
                await asyncio.wait({worker})
            except asyncio.CancelledError:
                continue
        if not worker.cancelled():
            # Retrieved so asyncio does not report it as unhandled
            worker.exception()
        raise


class CompressionService:
    """Runs compression jobs against one storage backend and encoder.

    Both collaborators are built once at startup and shared by all jobs.
    """

    def __init__(
        self,
        storage: StorageBackend,
        transcoder: FFmpegTranscoder,
        max_output_size: int,
        profile: EncodeProfile = DEFAULT_PROFILE,
    ):
        self.storage = storage
        self.transcoder = transcoder
        self.max_output_size = max_output_size
        self.profile = profile

    def new_job(
        self,
        input_path: str,
        original_filename: str,
        input_size: int,
        bucket: str,
        folder: str,
    ) -> CompressionJob:
        """Create a job with a fresh output path next to the input."""
        tmp_dir = os.path.dirname(input_path) or "."
        return CompressionJob(
            input_path=input_path,
            output_path=make_temp_path(tmp_dir, "compressed", self.profile.extension),
            original_filename=original_filename,
            input_size=input_size,
            bucket=bucket,
            folder=folder,
        )

    async def compress(self, job: CompressionJob) -> CompressionResult:
        """Run a job to completion.

        Raises:
            CompressionError: any stage failed; temp files are already gone
            asyncio.CancelledError: the job was cancelled; temp files are
                gone and the encoder has stopped
        """
        with job_context(job.job_id):
            COMPRESSION_JOBS_IN_PROGRESS.inc()
            try:
                return await self._compress(job)
            finally:
                COMPRESSION_JOBS_IN_PROGRESS.dec()

    async def _compress(self, job: CompressionJob) -> CompressionResult:
        logger.info(
            f"Compression started: {job.original_filename} ({format_megabytes(job.input_size)})",
            extra={"bucket": job.bucket, "folder": job.folder},
        )
        COMPRESSION_INPUT_SIZE_BYTES.observe(job.input_size)

        last_stage = job.stage
        try:
            with temp_files(job.input_path, job.output_path):
                try:
                    result = await self._run(job)
                finally:
                    last_stage = job.stage
                    job.stage = JobStage.CLEANUP
        except CompressionError as e:
            self._fail(job, e, last_stage)
            raise
        except asyncio.CancelledError:
            job.stage = JobStage.FAILED
            job.failed_stage = last_stage
            COMPRESSION_JOBS_TOTAL.labels(outcome="cancelled").inc()
            logger.warning(
                "Compression cancelled",
                extra={"stage": last_stage.value, "elapsed_seconds": round(job.elapsed_seconds(), 1)},
            )
            raise
        except Exception as e:
            wrapped = UnexpectedCompressionError(str(e) or type(e).__name__)
            self._fail(job, wrapped, last_stage, cause=e)
            raise wrapped from e

        job.stage = JobStage.PUBLISHED
        COMPRESSION_JOBS_TOTAL.labels(outcome="published").inc()
        COMPRESSION_STAGE_DURATION_SECONDS.labels(stage="total").observe(result.elapsed_seconds)
        COMPRESSION_RATIO.observe(max(result.compression_ratio, 0.0))
        logger.info(
            f"Compression completed in {format_seconds(result.elapsed_seconds)}",
            extra={"key": result.key, "compressed_size": result.compressed_size},
        )
        return result

    async def _run(self, job: CompressionJob) -> CompressionResult:
        job.stage = JobStage.ENCODING
        with stage_span("encode", job.job_id, {"job.input_bytes": job.input_size}):
            started = time.monotonic()
            cancel = threading.Event()
            await run_blocking(
                self.transcoder.transcode,
                job.input_path,
                job.output_path,
                self.profile,
                cancel=cancel,
                cancel_event=cancel,
            )
            COMPRESSION_STAGE_DURATION_SECONDS.labels(stage="encode").observe(time.monotonic() - started)
        job.stage = JobStage.ENCODED

        compressed_size = check_output_size(job.output_path, self.max_output_size)
        job.stage = JobStage.SIZE_CHECKED
        logger.info(f"Compressed size: {format_megabytes(compressed_size)}")

        key = generate_upload_key(job.folder, job.original_filename, self.profile.extension)
        url = await self._publish(job, key)

        return CompressionResult(
            original_size=job.input_size,
            compressed_size=compressed_size,
            compression_ratio=compression_ratio(job.input_size, compressed_size),
            url=url,
            key=key,
            elapsed_seconds=job.elapsed_seconds(),
        )

    async def _publish(self, job: CompressionJob, key: str) -> str:
        job.stage = JobStage.UPLOADING
        with stage_span("upload", job.job_id, {"storage.bucket": job.bucket, "storage.key": key}):
            started = time.monotonic()
            # An upload in flight cannot be interrupted; cancellation waits for it
            result = await run_blocking(
                self.storage.upload,
                job.bucket,
                key,
                job.output_path,
                content_type=self.profile.content_type,
                overwrite=False,
            )
            COMPRESSION_STAGE_DURATION_SECONDS.labels(stage="upload").observe(time.monotonic() - started)

        if not result.success:
            raise UploadFailedError(result.error_message or "storage rejected the upload")

        return self.storage.get_public_url(job.bucket, key)

    def _fail(
        self,
        job: CompressionJob,
        error: CompressionError,
        failed_stage: JobStage,
        cause: Optional[BaseException] = None,
    ) -> None:
        job.stage = JobStage.FAILED
        job.failed_stage = failed_stage
        COMPRESSION_JOBS_TOTAL.labels(outcome=_outcome_label(error)).inc()
        logger.error(
            f"Compression failed: {error.message}",
            exc_info=cause or error,
            extra={
                "stage": failed_stage.value,
                "original_filename": job.original_filename,
                "elapsed_seconds": round(job.elapsed_seconds(), 1),
            },
        )


def _outcome_label(error: CompressionError) -> str:
    if isinstance(error, EncodeFailedError):
        return "encode_failed"
    if isinstance(error, OutputTooLargeError):
        return "output_too_large"
    if isinstance(error, UploadFailedError):
        return "upload_failed"
    return "unexpected"
