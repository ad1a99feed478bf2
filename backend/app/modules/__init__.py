"""Application modules.

- compression: Upload, encode, size gate, publish
- system_monitoring: Health checks and Prometheus metrics
"""
