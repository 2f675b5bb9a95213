"""Ephemeral credential files for a single bootstrap attempt.

Both the private key and the pinned known-hosts entry live in temp files
that exist only for the duration of one attempt. Release is best-effort:
a file that cannot be deleted is logged and otherwise ignored.
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from loguru import logger

from ec2agents.exceptions import CleanupWarning
from ec2agents.types import HostKeyVerification

log = logger.bind(component="credentials")

_OWNER_ONLY = 0o600


def known_hosts_entry(host: str, port: int, host_key: str) -> str:
    """Format an OpenSSH known_hosts line (``[host]:port`` for non-22 ports)."""
    key_type, key_data, *_ = host_key.split()
    pattern = host if port == 22 else f"[{host}]:{port}"
    return f"{pattern} {key_type} {key_data}\n"


class CredentialStaging:
    """Stages identity and host-key files with owner-only permissions.

    Args:
        directory: Where temp files are created. Defaults to the system temp dir.
    """

    def __init__(self, directory: str | Path | None = None) -> None:
        self._directory = str(directory) if directory is not None else None

    @contextmanager
    def identity(self, instance_id: str, key_material: str) -> Iterator[Path]:
        """Write the private key for ``instance_id`` and yield its path."""
        path = self._write(f"ec2agents-{instance_id}-", ".pem", key_material)
        log.debug("Staged identity for {iid} at {path}", iid=instance_id, path=path)
        try:
            yield path
        finally:
            self._release(path)

    @contextmanager
    def host_key(
        self,
        instance_id: str,
        host: str,
        port: int,
        policy: HostKeyVerification,
        expected: str | None,
    ) -> Iterator[Path | None]:
        """Yield a pinned known-hosts file, or None when the policy does not pin.

        ``require-exact`` without an expected key yields None as well. The
        bootstrap treats that as a trust failure rather than a bypass.
        """
        match policy:
            case HostKeyVerification.ACCEPT_NEW | HostKeyVerification.REQUIRE_EXACT if expected:
                pass
            case _:
                yield None
                return

        path = self._write(
            f"ec2agents-{instance_id}-", ".known_hosts", known_hosts_entry(host, port, expected),
        )
        log.debug("Pinned host key for {iid} at {path}", iid=instance_id, path=path)
        try:
            yield path
        finally:
            self._release(path)

    def _write(self, prefix: str, suffix: str, content: str) -> Path:
        fd, name = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=self._directory)
        path = Path(name)
        try:
            with os.fdopen(fd, "w") as f:
                os.fchmod(f.fileno(), _OWNER_ONLY)
                f.write(content)
        except BaseException:
            self._release(path)
            raise
        return path

    @staticmethod
    def _release(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            log.warning("{warning}", warning=CleanupWarning(str(path), str(e)))
