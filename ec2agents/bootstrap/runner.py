"""Remote command execution that reports exit codes as values.

A nonzero exit is information (``test -e`` saying "no such file"), not a
fault. Callers decide per step whether nonzero is fatal.
"""

from __future__ import annotations

from typing import Any

from ec2agents.infra.ssh import RemoteSession


class RemoteCommandRunner:
    """Runs commands on a session, streaming output to a bound logger.

    Args:
        log: Attempt log sink (a loguru logger bound to the instance).
        timeout: Per-command bounded wait in seconds.
    """

    def __init__(self, log: Any, timeout: float | None = 600.0) -> None:
        self._log = log
        self.timeout = timeout

    def _sink(self, stream: str, line: str) -> None:
        if stream == "stderr":
            self._log.warning("{line}", line=line)
        else:
            self._log.info("{line}", line=line)

    async def run(self, session: RemoteSession, command: str) -> int:
        self._log.info("$ {cmd}", cmd=command)
        code = await session.run(command, sink=self._sink, timeout=self.timeout)
        self._log.debug("exit {code}: {cmd}", code=code, cmd=command)
        return code

    async def run_or_install(self, session: RemoteSession, probe: str, install: str) -> int:
        """Run ``probe``; when it fails, run ``install`` and return its exit code."""
        code = await self.run(session, probe)
        if code == 0:
            return 0
        self._log.info("'{probe}' exited {code}, installing", probe=probe, code=code)
        return await self.run(session, install)
