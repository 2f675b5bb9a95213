"""Logging setup."""

from .logging import LogConfig, setup_logging, teardown_logging

__all__ = [
    "LogConfig",
    "setup_logging",
    "teardown_logging",
]
