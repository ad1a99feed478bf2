"""Core module for configuration and utilities."""

from app.core.config import settings

__all__ = ["settings"]
