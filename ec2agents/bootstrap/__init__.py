"""Remote bootstrap of freshly launched instances."""

from .machine import BootstrapSession, BootstrapStateMachine, HostKeyLookup, TransportFactory
from .platforms import (
    PLATFORMS,
    DebianPlatform,
    MacPlatform,
    Platform,
    Prerequisite,
    UnixPlatform,
    platform_for,
)
from .runner import RemoteCommandRunner
from .settings import BootstrapSettings

__all__ = [
    "BootstrapSession",
    "BootstrapSettings",
    "BootstrapStateMachine",
    "DebianPlatform",
    "HostKeyLookup",
    "MacPlatform",
    "PLATFORMS",
    "Platform",
    "Prerequisite",
    "RemoteCommandRunner",
    "TransportFactory",
    "UnixPlatform",
    "platform_for",
]
