"""Pydantic schemas for the compression API."""

from pydantic import BaseModel, ConfigDict, Field

from app.modules.compression.models import CompressionResult
from app.modules.compression.service import format_megabytes, format_ratio, format_seconds


class CompressionResponse(BaseModel):
    """Successful compression, serialized with camelCase field names."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    original_size: str = Field(..., alias="originalSize", description="Input size, e.g. 50.00MB")
    compressed_size: str = Field(..., alias="compressedSize", description="Output size, e.g. 18.00MB")
    compression_ratio: str = Field(..., alias="compressionRatio", description="Size reduction, e.g. 64.0%")
    url: str = Field(..., description="Public URL of the stored video")
    path: str = Field(..., description="Storage key inside the bucket")
    processing_time: str = Field(..., alias="processingTime", description="Wall-clock time, e.g. 12.3s")

    @classmethod
    def from_result(cls, result: CompressionResult) -> "CompressionResponse":
        return cls(
            original_size=format_megabytes(result.original_size),
            compressed_size=format_megabytes(result.compressed_size),
            compression_ratio=format_ratio(result.compression_ratio),
            url=result.url,
            path=result.key,
            processing_time=format_seconds(result.elapsed_seconds),
        )


class ErrorResponse(BaseModel):
    """Failed request."""
    error: str


class ServiceStatusResponse(BaseModel):
    status: str
    service: str
