"""Domain models for video compression jobs."""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class JobStage(str, Enum):
    """Stage of a compression job.

    Stages advance strictly forward; CLEANUP runs on every path before the
    job becomes PUBLISHED or FAILED.
    """
    RECEIVED = "received"
    ENCODING = "encoding"
    ENCODED = "encoded"
    SIZE_CHECKED = "size_checked"
    UPLOADING = "uploading"
    CLEANUP = "cleanup"
    PUBLISHED = "published"
    FAILED = "failed"


@dataclass(frozen=True)
class EncodeProfile:
    """Fixed transcoding target applied to every job."""
    video_codec: str = "libx264"
    height: int = 480  # width follows the aspect ratio
    crf: int = 28
    preset: str = "fast"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    faststart: bool = True  # moov atom at file start for progressive download
    extension: str = ".mp4"
    content_type: str = "video/mp4"

    @property
    def scale_filter(self) -> str:
        # -2 keeps the width even, which libx264 requires
        return f"scale=-2:{self.height}"


DEFAULT_PROFILE = EncodeProfile()


@dataclass
class CompressionJob:
    """One compression request.

    The job owns both temp paths for its whole lifetime; nothing else may
    reference them and both are gone once the job ends.
    """
    input_path: str
    output_path: str
    original_filename: str
    input_size: int
    bucket: str
    folder: str
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: float = field(default_factory=time.monotonic)
    stage: JobStage = JobStage.RECEIVED
    failed_stage: Optional[JobStage] = None

    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at


@dataclass
class CompressionResult:
    """Successful outcome of a job."""
    original_size: int
    compressed_size: int
    compression_ratio: float
    url: str
    key: str
    elapsed_seconds: float
