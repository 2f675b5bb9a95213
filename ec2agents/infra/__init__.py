"""Internal machinery: SSH transport and credential staging."""

from .credentials import CredentialStaging, known_hosts_entry
from .ssh import LineSink, RemoteSession, SSHTransport

__all__ = [
    "CredentialStaging",
    "known_hosts_entry",
    "LineSink",
    "RemoteSession",
    "SSHTransport",
]
