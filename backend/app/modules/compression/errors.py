"""Errors raised by the compression pipeline.

Every error is local to one job. The HTTP layer renders them as
``{"error": message}`` with ``status_code``.
"""

from typing import Optional

MB = 1024 * 1024


class CompressionError(Exception):
    """Base exception for compression jobs."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class MissingInputError(CompressionError):
    """No video file was supplied with the request."""

    status_code = 400

    def __init__(self):
        super().__init__("No video file provided")


class InputTooLargeError(CompressionError):
    """The uploaded file exceeds the inbound size limit."""

    status_code = 413

    def __init__(self, limit_bytes: int):
        self.limit_bytes = limit_bytes
        super().__init__(f"Video file exceeds the {limit_bytes / MB:.0f}MB upload limit")


class EncodeFailedError(CompressionError):
    """The encoding engine failed; ``reason`` is its diagnostic text."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Encoding failed: {reason}")


class EncodeTimeoutError(EncodeFailedError):
    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"encoder did not finish within {timeout_seconds:g}s")


class EncodeCancelledError(EncodeFailedError):
    """The job was cancelled while the encoder was running."""

    def __init__(self):
        super().__init__("encoder was cancelled")


class OutputTooLargeError(CompressionError):
    """Compressed output is above the size ceiling; nothing was uploaded."""

    status_code = 422

    def __init__(self, size_bytes: int, ceiling_bytes: int):
        self.size_bytes = size_bytes
        self.ceiling_bytes = ceiling_bytes
        super().__init__(
            f"Compressed video is still too large: {size_bytes / MB:.2f}MB "
            f"(limit {ceiling_bytes / MB:.2f}MB)"
        )


class UploadFailedError(CompressionError):
    """The storage backend rejected the upload."""

    status_code = 502

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Upload failed: {reason}")


class UnexpectedCompressionError(CompressionError):
    """Any failure outside the categories above."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Unexpected error: {reason}")
