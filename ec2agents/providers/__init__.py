"""Cloud providers."""

from .base import Provider

__all__ = ["Provider"]
