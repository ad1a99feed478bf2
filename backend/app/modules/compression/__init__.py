"""Video compression module.

Transcodes uploaded videos to a fixed 480p H.264/AAC profile, rejects
outputs above the size ceiling, and publishes the result to object storage.
"""

from app.modules.compression.router import router as compression_router
from app.modules.compression.service import CompressionService
from app.modules.compression.errors import CompressionError

__all__ = ["compression_router", "CompressionService", "CompressionError"]
