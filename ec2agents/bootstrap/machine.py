"""Bootstrap state machine: turn a booted instance into a running agent.

Flow:
    Connecting → VerifyingHost → InstallingPrereqs → StagingFiles
    → MarkingInit → LaunchingAgent → Done

Any fault moves the attempt to Failed. Every exit path, cancellation
included, closes the session and releases the staged credential files
in reverse acquisition order.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeAlias

from loguru import logger

from ec2agents.constants import AGENT_JAR_NAME, AGENT_LOG_NAME
from ec2agents.exceptions import (
    AgentLaunchFailed,
    BootstrapError,
    CommandTimeout,
    Ec2AgentsError,
    HostKeyRejected,
    PrerequisiteInstallFailed,
    ProviderError,
    SSHUnreachable,
    StagingFailed,
    TrustViolation,
    Unreachable,
)
from ec2agents.infra.credentials import CredentialStaging
from ec2agents.infra.ssh import RemoteSession, SSHTransport
from ec2agents.types import (
    BootstrapOutcome,
    BootstrapState,
    HostKeyVerification,
    InstanceHandle,
    Template,
)

from .platforms import Platform, platform_for
from .runner import RemoteCommandRunner
from .settings import BootstrapSettings

TransportFactory: TypeAlias = Callable[..., RemoteSession]
HostKeyLookup: TypeAlias = Callable[[InstanceHandle], Awaitable[str | None]]


def _same_key(presented: str | None, expected: str) -> bool:
    if presented is None:
        return False
    return presented.split()[:2] == expected.split()[:2]


@dataclass(slots=True)
class BootstrapSession:
    """Mutable context owned by exactly one bootstrap attempt."""

    handle: InstanceHandle
    host: str
    session: RemoteSession
    identity_path: Path
    known_hosts_path: Path | None
    runner: RemoteCommandRunner
    log: Any
    on_state: Callable[[BootstrapState], None] | None = None
    state: BootstrapState = BootstrapState.CONNECTING

    def enter(self, state: BootstrapState) -> None:
        self.state = state
        if self.on_state is not None:
            self.on_state(state)

    @property
    def instance_id(self) -> str:
        return self.handle.instance_id


class BootstrapStateMachine:
    """Bootstraps instances of one template over SSH.

    The machine itself is stateless between runs: every ``run`` builds its
    own ``BootstrapSession``, so concurrent runs against different
    instances share nothing.

    Args:
        template: Template the instances were launched from.
        private_key: PEM private key material for ``template.remote_admin``.
        settings: Retry and timeout settings.
        staging: Credential file staging.
        transport_factory: Builds a session. Called with SSHTransport's fields.
        host_keys: Out-of-band lookup of the instance's expected host key.
    """

    def __init__(
        self,
        template: Template,
        private_key: str,
        *,
        settings: BootstrapSettings | None = None,
        staging: CredentialStaging | None = None,
        transport_factory: TransportFactory = SSHTransport,
        host_keys: HostKeyLookup | None = None,
    ) -> None:
        self.template = template
        self.platform: Platform = platform_for(template.platform)
        self._private_key = private_key
        self.settings = settings or BootstrapSettings()
        self.staging = staging or CredentialStaging()
        self._transport_factory = transport_factory
        self._host_keys = host_keys

    @property
    def tmp_dir(self) -> str:
        return self.template.tmp_dir or self.platform.tmp_dir

    async def run(
        self,
        handle: InstanceHandle,
        *,
        on_state: Callable[[BootstrapState], None] | None = None,
    ) -> BootstrapOutcome:
        """Run one bootstrap attempt against ``handle``.

        ``on_state`` is called on every state transition, so a caller can
        tell which state a cancelled attempt was interrupted in.

        Raises:
            BootstrapError: Subclass describing the failed state and cause.
            asyncio.CancelledError: The attempt was cancelled. Cleanup has run.
        """
        iid = handle.instance_id
        log = logger.bind(component="bootstrap", template=self.template.name, instance_id=iid)
        policy = self.template.host_key_verification

        try:
            host = handle.address(self.template.connection_strategy)
        except Ec2AgentsError as e:
            raise Unreachable(iid, BootstrapState.CONNECTING, str(e)) from e

        expected = await self._expected_host_key(handle, log)
        if policy is HostKeyVerification.REQUIRE_EXACT and not expected:
            raise TrustViolation(
                iid, BootstrapState.VERIFYING_HOST, "no expected host key available for exact match",
            )

        state = BootstrapState.CONNECTING
        try:
            async with AsyncExitStack() as stack:
                identity = stack.enter_context(self.staging.identity(iid, self._private_key))
                known_hosts = stack.enter_context(
                    self.staging.host_key(iid, host, self.template.ssh_port, policy, expected),
                )
                session = self._transport_factory(
                    host=host,
                    user=self.template.remote_admin,
                    key_path=str(identity),
                    port=self.template.ssh_port,
                    known_hosts=str(known_hosts) if known_hosts else None,
                    policy=policy,
                    connect_timeout=self.settings.connect_timeout,
                    connect_attempts=self.settings.connect_attempts,
                    backoff_base=self.settings.backoff_base,
                    backoff_max=self.settings.backoff_max,
                )
                stack.push_async_callback(session.close)

                bs = BootstrapSession(
                    handle=handle,
                    host=host,
                    session=session,
                    identity_path=identity,
                    known_hosts_path=known_hosts,
                    runner=RemoteCommandRunner(log, timeout=self.settings.command_timeout),
                    log=log,
                    on_state=on_state,
                )
                try:
                    await self._connect(bs)
                    presented = self._verify_host(bs, expected)
                    await self._install_prereqs(bs)
                    await self._stage_files(bs)
                    await self._mark_init(bs)
                    await self._launch_agent(bs)
                finally:
                    state = bs.state
                bs.enter(BootstrapState.DONE)
        except BootstrapError as e:
            log.error("Bootstrap failed: {err}", err=e)
            raise
        except asyncio.CancelledError:
            log.warning("Bootstrap cancelled in state {state}", state=state)
            raise
        except Exception as e:
            log.exception("Bootstrap failed in state {state}", state=state)
            raise BootstrapError(iid, state, f"{type(e).__name__}: {e}") from e

        log.info("Agent launched on {host}", host=host)
        return BootstrapOutcome(instance_id=iid, host=host, presented_host_key=presented)

    # -------------------------------------------------------------------------
    # States
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def _step(
        self, bs: BootstrapSession, state: BootstrapState, failure: type[BootstrapError],
    ) -> AsyncIterator[None]:
        bs.enter(state)
        bs.log.debug("-> {state}", state=state)
        try:
            yield
        except BootstrapError:
            raise
        except CommandTimeout as e:
            # Not retried: a hung step may have partially applied its effects.
            raise failure(bs.instance_id, state, str(e), retryable=False) from e
        except Exception as e:
            raise failure(bs.instance_id, state, f"{type(e).__name__}: {e}") from e

    async def _connect(self, bs: BootstrapSession) -> None:
        bs.enter(BootstrapState.CONNECTING)
        bs.log.info(
            "Connecting to {user}@{host}:{port} (StrictHostKeyChecking={flag})",
            user=self.template.remote_admin, host=bs.host, port=self.template.ssh_port,
            flag=self.template.host_key_verification.ssh_flag,
        )
        try:
            await bs.session.connect()
        except SSHUnreachable as e:
            raise Unreachable(bs.instance_id, BootstrapState.CONNECTING, str(e)) from e
        except HostKeyRejected as e:
            raise TrustViolation(bs.instance_id, BootstrapState.VERIFYING_HOST, str(e)) from e

    def _verify_host(self, bs: BootstrapSession, expected: str | None) -> str | None:
        bs.enter(BootstrapState.VERIFYING_HOST)
        presented = bs.session.host_key()
        policy = self.template.host_key_verification

        match policy:
            case HostKeyVerification.REQUIRE_EXACT | HostKeyVerification.ACCEPT_NEW if expected:
                if not _same_key(presented, expected):
                    raise TrustViolation(
                        bs.instance_id, bs.state,
                        f"presented {presented or 'no key'}, expected {expected}",
                    )
                bs.log.debug("Host key matches pinned key")
            case HostKeyVerification.ACCEPT_NEW:
                bs.log.info("Accepting new host key {key}", key=presented)
            case _:
                pass
        return presented

    async def _install_prereqs(self, bs: BootstrapSession) -> None:
        async with self._step(bs, BootstrapState.INSTALLING_PREREQS, PrerequisiteInstallFailed):
            for prereq in self.platform.prerequisites(self.template.java_path):
                code = await bs.runner.run_or_install(bs.session, prereq.probe, prereq.install)
                if code != 0:
                    raise PrerequisiteInstallFailed(
                        bs.instance_id, bs.state, f"installing {prereq.name} exited {code}",
                    )

    async def _stage_files(self, bs: BootstrapSession) -> None:
        async with self._step(bs, BootstrapState.STAGING_FILES, StagingFailed):
            tmp = self.tmp_dir
            code = await bs.runner.run(bs.session, self.platform.mkdir_command(tmp))
            if code != 0:
                raise StagingFailed(bs.instance_id, bs.state, f"mkdir {tmp} exited {code}")

            if self.template.agent_jar:
                bs.log.info("Copying {jar} to {tmp}", jar=self.template.agent_jar, tmp=tmp)
                await bs.session.upload(self.template.agent_jar, f"{tmp}/{AGENT_JAR_NAME}")

            if not self.template.init_script:
                return

            marker = self.platform.init_marker
            if await bs.runner.run(bs.session, self.platform.exists_command(marker)) == 0:
                bs.log.info("Init marker {marker} present, skipping init script", marker=marker)
                return

            script = f"{tmp}/{self.platform.init_script_name}"
            await bs.session.write_file(script, self.template.init_script)
            code = await bs.runner.run(bs.session, f"chmod +x {script} && {script}")
            if code != 0:
                raise StagingFailed(bs.instance_id, bs.state, f"init script exited {code}")

    async def _mark_init(self, bs: BootstrapSession) -> None:
        async with self._step(bs, BootstrapState.MARKING_INIT, StagingFailed):
            marker = self.platform.init_marker
            code = await bs.runner.run(bs.session, self.platform.touch_command(marker))
            if code != 0:
                raise StagingFailed(bs.instance_id, bs.state, f"touch {marker} exited {code}")

    async def _launch_agent(self, bs: BootstrapSession) -> None:
        async with self._step(bs, BootstrapState.LAUNCHING_AGENT, AgentLaunchFailed):
            command = self.launch_command()
            log_path = f"{self.tmp_dir}/{AGENT_LOG_NAME}"
            bs.log.info("Launching agent: {cmd}", cmd=command)
            code = await bs.runner.run(
                bs.session, f"nohup {command} > {log_path} 2>&1 < /dev/null &",
            )
            if code != 0:
                raise AgentLaunchFailed(bs.instance_id, bs.state, f"launch exited {code}")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def launch_command(self) -> str:
        t = self.template
        command = t.agent_command or " ".join(
            part for part in (
                t.java_path, t.jvm_options,
                f"-jar {self.tmp_dir}/{AGENT_JAR_NAME}", f"-workDir {t.remote_fs}",
            ) if part
        )
        return " ".join(part for part in (t.launch_prefix, command, t.launch_suffix) if part)

    async def _expected_host_key(self, handle: InstanceHandle, log: Any) -> str | None:
        match self.template.host_key_verification:
            case HostKeyVerification.ACCEPT_NEW | HostKeyVerification.REQUIRE_EXACT:
                pass
            case _:
                return None
        if self._host_keys is None:
            return None
        try:
            return await self._host_keys(handle)
        except ProviderError as e:
            log.warning("Host key lookup failed: {err}", err=e)
            return None
