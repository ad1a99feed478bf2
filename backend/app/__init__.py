"""Video compression service.

Accepts video uploads over HTTP, re-encodes them to a small 480p MP4 and
publishes the result to object storage.

Modules:
    - core: Configuration, logging, metrics, tracing, storage backends
    - modules.compression: Upload handling and the compression pipeline
    - modules.system_monitoring: Health checks and Prometheus metrics
"""

__version__ = "0.1.0"
