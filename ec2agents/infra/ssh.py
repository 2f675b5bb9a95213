"""AsyncSSH-based transport for remote bootstrap.

Service class pattern - connection settings bound at construction,
not passed on every call.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeAlias

import asyncssh
from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ec2agents.exceptions import CommandTimeout, HostKeyRejected, SSHUnreachable
from ec2agents.types import HostKeyVerification

LineSink: TypeAlias = Callable[[str, str], None]
"""Receives ``(stream, line)`` for each output line, stream being stdout or stderr."""


class RemoteSession(Protocol):
    """What the bootstrap needs from an SSH session."""

    async def connect(self) -> None: ...

    async def run(
        self, command: str, *, sink: LineSink | None = None, timeout: float | None = None,
    ) -> int: ...

    async def write_file(self, remote: str, content: str) -> None: ...

    async def upload(self, local: str, remote: str) -> None: ...

    def host_key(self) -> str | None: ...

    async def close(self) -> None: ...


def _is_retryable_connect_error(e: BaseException) -> bool:
    # HostKeyNotVerifiable is a DisconnectError but a trust decision, not a blip.
    if isinstance(e, asyncssh.HostKeyNotVerifiable):
        return False
    return isinstance(e, (OSError, asyncssh.DisconnectError))


@dataclass
class SSHTransport:
    """Async SSH transport using asyncssh.

    Retry behavior is built into connect(): refused connections, timeouts
    and early auth failures (the key may not be installed yet while the
    instance boots) are retried with bounded exponential backoff.

    Example:
        >>> async with SSHTransport(host="10.0.0.1", user="ec2-user", key_path=key) as t:
        ...     code = await t.run("test -e /tmp/init.sh")
    """

    host: str
    user: str
    key_path: str
    port: int = 22
    known_hosts: str | None = None
    policy: HostKeyVerification = HostKeyVerification.ACCEPT_NEW
    connect_timeout: float = 30.0
    connect_attempts: int = 12
    backoff_base: float = 2.0
    backoff_max: float = 30.0

    _conn: asyncssh.SSHClientConnection | None = field(default=None, repr=False)

    def _known_hosts_arg(self) -> Any:
        if self.known_hosts is not None:
            return self.known_hosts
        match self.policy:
            case HostKeyVerification.KNOWN_HOSTS | HostKeyVerification.REQUIRE_EXACT:
                return ()  # asyncssh default: ~/.ssh/known_hosts
            case _:
                return None

    def _log_retry(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.debug(
            "SSH {host}:{port} attempt {n}/{total} failed ({err}), retrying",
            host=self.host, port=self.port, n=state.attempt_number,
            total=self.connect_attempts, err=type(exc).__name__,
        )

    async def connect(self) -> None:
        """Establish SSH connection with automatic retry.

        Raises:
            SSHUnreachable: All attempts failed with retryable errors.
            HostKeyRejected: The host key did not match the pinned key.
        """
        if self._conn is not None:
            return

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.connect_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception(_is_retryable_connect_error),
            before_sleep=self._log_retry,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    self._conn = await asyncssh.connect(
                        self.host,
                        port=self.port,
                        username=self.user,
                        client_keys=[self.key_path],
                        known_hosts=self._known_hosts_arg(),
                        connect_timeout=self.connect_timeout,
                    )
        except asyncssh.HostKeyNotVerifiable as e:
            raise HostKeyRejected(self.host, str(e)) from e
        except (OSError, asyncssh.DisconnectError) as e:
            raise SSHUnreachable(
                self.host, self.port, self.connect_attempts, str(e) or type(e).__name__,
            ) from e

    async def close(self) -> None:
        """Close SSH connection."""
        if self._conn is not None:
            self._conn.close()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._conn.wait_closed(), timeout=5.0)
            self._conn = None

    async def __aenter__(self) -> SSHTransport:
        await self.connect()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    def _require_connection(self) -> asyncssh.SSHClientConnection:
        if self._conn is None:
            raise RuntimeError("Not connected. Call connect() first.")
        return self._conn

    def host_key(self) -> str | None:
        """Presented server key as ``"<type> <base64>"``."""
        key = self._require_connection().get_server_host_key()
        if key is None:
            return None
        key_type, key_data, *_ = key.export_public_key("openssh").decode().split()
        return f"{key_type} {key_data}"

    # -------------------------------------------------------------------------
    # Command Execution
    # -------------------------------------------------------------------------

    async def run(
        self,
        command: str,
        *,
        sink: LineSink | None = None,
        timeout: float | None = None,
    ) -> int:
        """Execute command, streaming output lines to ``sink``.

        Returns:
            The exit code. A signal-terminated command reports -1.

        Raises:
            CommandTimeout: The command did not finish within ``timeout``.
        """
        conn = self._require_connection()

        async def pump(reader: asyncssh.SSHReader[str], name: str) -> None:
            async for line in reader:
                if sink is not None:
                    sink(name, line.rstrip("\n"))

        try:
            async with asyncio.timeout(timeout):
                async with conn.create_process(command) as proc:
                    await asyncio.gather(pump(proc.stdout, "stdout"), pump(proc.stderr, "stderr"))
                    result = await proc.wait(check=False)
        except TimeoutError as e:
            raise CommandTimeout(command, timeout or 0.0) from e

        return result.returncode if result.returncode is not None else -1

    # -------------------------------------------------------------------------
    # File Transfer
    # -------------------------------------------------------------------------

    async def write_file(self, remote: str, content: str) -> None:
        """Write content to remote file using SFTP."""
        conn = self._require_connection()

        async with conn.start_sftp_client() as sftp, sftp.open(remote, "w") as f:
            await f.write(content)

    async def upload(self, local: str, remote: str) -> None:
        """Copy a local file to the remote host over scp."""
        conn = self._require_connection()
        await asyncssh.scp(local, (conn, remote))
