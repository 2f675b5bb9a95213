"""Tests for the bootstrap state machine against in-memory SSH sessions."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from ec2agents.bootstrap import BootstrapSettings, BootstrapStateMachine
from ec2agents.exceptions import (
    AgentLaunchFailed,
    BootstrapError,
    CommandTimeout,
    HostKeyRejected,
    PrerequisiteInstallFailed,
    ProviderError,
    SSHUnreachable,
    StagingFailed,
    TrustViolation,
    Unreachable,
)
from ec2agents.types import BootstrapState, HostKeyVerification, InstanceHandle, Template
from tests.conftest import HOST_KEY, OTHER_KEY, PRIVATE_KEY, SessionFactory, wait_until

pytestmark = [pytest.mark.unit]

JAVA_INSTALL = (
    "sudo amazon-linux-extras install java-openjdk11 -y; "
    "sudo yum install -y fontconfig java-11-openjdk"
)


def _machine(
    template: Template,
    staging,
    factory: SessionFactory,
    *,
    host_keys=None,
) -> BootstrapStateMachine:
    return BootstrapStateMachine(
        template,
        PRIVATE_KEY,
        settings=BootstrapSettings(),
        staging=staging,
        transport_factory=factory,
        host_keys=host_keys,
    )


def _leftovers(staging_dir: Path) -> list[Path]:
    return list(staging_dir.iterdir())


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_runs_every_step_in_order(self, template, handle, staging, staging_dir):
        factory = SessionFactory()
        outcome = await _machine(template, staging, factory).run(handle)

        session = factory.sessions[0]
        assert outcome.instance_id == "i-0001"
        assert outcome.host == "203.0.113.10"
        assert outcome.presented_host_key == HOST_KEY
        assert session.commands == [
            "java -fullversion",
            "which scp",
            "mkdir -p /tmp",
            "touch ~/.hudson-run-init",
            "nohup java -jar /tmp/remoting.jar -workDir /home/ec2-user "
            "> /tmp/agent.log 2>&1 < /dev/null &",
        ]

    @pytest.mark.asyncio
    async def test_cleans_up_after_success(self, template, handle, staging, staging_dir):
        factory = SessionFactory()
        await _machine(template, staging, factory).run(handle)

        assert factory.sessions[0].closed
        assert _leftovers(staging_dir) == []

    @pytest.mark.asyncio
    async def test_identity_is_owner_only_while_connecting(self, template, handle, staging):
        factory = SessionFactory()
        await _machine(template, staging, factory).run(handle)

        session = factory.sessions[0]
        assert session.identity_seen == PRIVATE_KEY
        assert session.identity_mode == 0o600

    @pytest.mark.asyncio
    async def test_transport_receives_template_settings(self, handle, staging):
        template = Template(
            name="linux", ami="ami-0abc", instance_type="t3.large",
            remote_admin="admin", ssh_port=2222,
        )
        factory = SessionFactory()
        await _machine(template, staging, factory).run(handle)

        kwargs = factory.sessions[0].kwargs
        assert kwargs["host"] == "203.0.113.10"
        assert kwargs["user"] == "admin"
        assert kwargs["port"] == 2222
        assert kwargs["connect_attempts"] == 12

    @pytest.mark.asyncio
    async def test_mkdir_is_idempotent_across_runs(self, template, handle, staging):
        factory = SessionFactory()
        machine = _machine(template, staging, factory)

        await machine.run(handle)
        await machine.run(handle)

        for session in factory.sessions:
            assert "mkdir -p /tmp" in session.commands

    @pytest.mark.asyncio
    async def test_uploads_agent_jar(self, handle, staging):
        template = Template(
            name="linux", ami="ami-0abc", instance_type="t3.large",
            agent_jar="/var/cache/remoting.jar",
        )
        factory = SessionFactory()
        await _machine(template, staging, factory).run(handle)

        assert factory.sessions[0].uploads == [("/var/cache/remoting.jar", "/tmp/remoting.jar")]


class TestPrerequisites:
    @pytest.mark.asyncio
    async def test_installs_missing_java(self, template, handle, staging):
        factory = SessionFactory(responses={"java -fullversion": 127})
        await _machine(template, staging, factory).run(handle)

        commands = factory.sessions[0].commands
        assert commands[:2] == ["java -fullversion", JAVA_INSTALL]

    @pytest.mark.asyncio
    async def test_failed_install_is_retryable(self, template, handle, staging, staging_dir):
        factory = SessionFactory(responses={"java -fullversion": 1, "sudo amazon-linux-extras": 1})

        with pytest.raises(PrerequisiteInstallFailed) as exc_info:
            await _machine(template, staging, factory).run(handle)

        assert exc_info.value.retryable
        assert exc_info.value.state == BootstrapState.INSTALLING_PREREQS
        assert "i-0001" in str(exc_info.value)
        assert factory.sessions[0].closed
        assert _leftovers(staging_dir) == []


class TestInitScript:
    @pytest.mark.asyncio
    async def test_runs_script_when_marker_absent(self, handle, staging):
        template = Template(
            name="linux", ami="ami-0abc", instance_type="t3.large", init_script="echo hi",
        )
        factory = SessionFactory(responses={"test -e": 1})
        await _machine(template, staging, factory).run(handle)

        session = factory.sessions[0]
        assert session.files == {"/tmp/init.sh": "echo hi"}
        assert "chmod +x /tmp/init.sh && /tmp/init.sh" in session.commands
        assert "touch ~/.hudson-run-init" in session.commands

    @pytest.mark.asyncio
    async def test_skips_script_when_marker_present(self, handle, staging):
        template = Template(
            name="linux", ami="ami-0abc", instance_type="t3.large", init_script="echo hi",
        )
        factory = SessionFactory(responses={"test -e": 0})
        await _machine(template, staging, factory).run(handle)

        session = factory.sessions[0]
        assert session.files == {}
        assert not any(c.startswith("chmod") for c in session.commands)

    @pytest.mark.asyncio
    async def test_failing_script_fails_staging(self, handle, staging, staging_dir):
        template = Template(
            name="linux", ami="ami-0abc", instance_type="t3.large", init_script="exit 3",
        )
        factory = SessionFactory(responses={"test -e": 1, "chmod +x": 3})

        with pytest.raises(StagingFailed) as exc_info:
            await _machine(template, staging, factory).run(handle)

        assert exc_info.value.state == BootstrapState.STAGING_FILES
        assert not any(c.startswith("touch") for c in factory.sessions[0].commands)
        assert factory.sessions[0].closed
        assert _leftovers(staging_dir) == []


class TestHostKeys:
    @pytest.mark.asyncio
    async def test_mismatch_is_a_trust_violation(self, template, handle, staging, staging_dir):
        factory = SessionFactory()
        lookup = AsyncMock(return_value=OTHER_KEY)

        with pytest.raises(TrustViolation) as exc_info:
            await _machine(template, staging, factory, host_keys=lookup).run(handle)

        session = factory.sessions[0]
        assert not exc_info.value.retryable
        assert exc_info.value.state == BootstrapState.VERIFYING_HOST
        assert session.kwargs["known_hosts"] is not None
        assert session.commands == []
        assert session.closed
        assert _leftovers(staging_dir) == []

    @pytest.mark.asyncio
    async def test_matching_pinned_key_passes(self, template, handle, staging):
        factory = SessionFactory()
        lookup = AsyncMock(return_value=f"{HOST_KEY} root@ip-10-0-0-10")

        outcome = await _machine(template, staging, factory, host_keys=lookup).run(handle)

        assert outcome.presented_host_key == HOST_KEY
        lookup.assert_awaited_once_with(handle)

    @pytest.mark.asyncio
    async def test_require_exact_without_key_never_connects(self, handle, staging):
        template = Template(
            name="linux", ami="ami-0abc", instance_type="t3.large",
            host_key_verification=HostKeyVerification.REQUIRE_EXACT,
        )
        factory = SessionFactory()

        with pytest.raises(TrustViolation):
            await _machine(template, staging, factory, host_keys=AsyncMock(return_value=None)).run(handle)

        assert factory.sessions == []

    @pytest.mark.asyncio
    async def test_off_skips_lookup_and_pinning(self, handle, staging):
        template = Template(
            name="linux", ami="ami-0abc", instance_type="t3.large",
            host_key_verification=HostKeyVerification.OFF,
        )
        factory = SessionFactory()
        lookup = AsyncMock(return_value=OTHER_KEY)

        await _machine(template, staging, factory, host_keys=lookup).run(handle)

        lookup.assert_not_awaited()
        assert factory.sessions[0].kwargs["known_hosts"] is None

    @pytest.mark.asyncio
    async def test_lookup_failure_falls_back_to_accept_new(self, template, handle, staging):
        factory = SessionFactory()
        lookup = AsyncMock(side_effect=ProviderError("console output unavailable"))

        outcome = await _machine(template, staging, factory, host_keys=lookup).run(handle)

        assert outcome.presented_host_key == HOST_KEY
        assert factory.sessions[0].kwargs["known_hosts"] is None

    @pytest.mark.asyncio
    async def test_rejected_during_handshake(self, template, handle, staging):
        factory = SessionFactory(connect_error=HostKeyRejected("203.0.113.10", "mismatch"))

        with pytest.raises(TrustViolation):
            await _machine(template, staging, factory).run(handle)


class TestFailures:
    @pytest.mark.asyncio
    async def test_unreachable_is_retryable(self, template, handle, staging, staging_dir):
        factory = SessionFactory(
            connect_error=SSHUnreachable("203.0.113.10", 22, 12, "Connection refused"),
        )

        with pytest.raises(Unreachable) as exc_info:
            await _machine(template, staging, factory).run(handle)

        assert exc_info.value.retryable
        assert exc_info.value.state == BootstrapState.CONNECTING
        assert factory.sessions[0].closed
        assert _leftovers(staging_dir) == []

    @pytest.mark.asyncio
    async def test_no_address_is_unreachable(self, template, staging):
        factory = SessionFactory()

        with pytest.raises(Unreachable):
            await _machine(template, staging, factory).run(InstanceHandle(instance_id="i-dark"))

        assert factory.sessions == []

    @pytest.mark.asyncio
    async def test_command_timeout_is_not_retried(self, template, handle, staging, staging_dir):
        factory = SessionFactory(responses={"touch": CommandTimeout("touch ~/.hudson-run-init", 600)})

        with pytest.raises(StagingFailed) as exc_info:
            await _machine(template, staging, factory).run(handle)

        assert exc_info.value.state == BootstrapState.MARKING_INIT
        assert not exc_info.value.retryable
        assert factory.sessions[0].closed
        assert _leftovers(staging_dir) == []

    @pytest.mark.asyncio
    async def test_rejected_launch(self, template, handle, staging, staging_dir):
        factory = SessionFactory(responses={"nohup": 126})

        with pytest.raises(AgentLaunchFailed) as exc_info:
            await _machine(template, staging, factory).run(handle)

        assert not exc_info.value.retryable
        assert exc_info.value.state == BootstrapState.LAUNCHING_AGENT
        assert factory.sessions[0].closed
        assert _leftovers(staging_dir) == []

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(self, template, handle, staging, staging_dir):
        factory = SessionFactory(connect_error=RuntimeError("boom"))

        with pytest.raises(BootstrapError) as exc_info:
            await _machine(template, staging, factory).run(handle)

        assert exc_info.value.state == BootstrapState.CONNECTING
        assert "RuntimeError: boom" in exc_info.value.cause
        assert _leftovers(staging_dir) == []


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_cleans_up(self, template, handle, staging, staging_dir):
        factory = SessionFactory(hang_on=("nohup",))
        machine = _machine(template, staging, factory, host_keys=AsyncMock(return_value=HOST_KEY))
        task = asyncio.create_task(machine.run(handle))

        await wait_until(lambda: factory.sessions and any(
            c.startswith("nohup") for c in factory.sessions[0].commands
        ))
        known_hosts = Path(factory.sessions[0].kwargs["known_hosts"])
        assert known_hosts.exists()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert factory.sessions[0].closed
        assert not known_hosts.exists()
        assert _leftovers(staging_dir) == []

    @pytest.mark.asyncio
    async def test_reports_state_it_was_interrupted_in(self, template, handle, staging):
        factory = SessionFactory(hang_on=("nohup",))
        states: list[BootstrapState] = []
        task = asyncio.create_task(
            _machine(template, staging, factory).run(handle, on_state=states.append),
        )

        await wait_until(lambda: BootstrapState.LAUNCHING_AGENT in states)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert states == [
            BootstrapState.CONNECTING,
            BootstrapState.VERIFYING_HOST,
            BootstrapState.INSTALLING_PREREQS,
            BootstrapState.STAGING_FILES,
            BootstrapState.MARKING_INIT,
            BootstrapState.LAUNCHING_AGENT,
        ]


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_runs_share_nothing(self, template, handle, staging, staging_dir):
        factory = SessionFactory(hang_on=())
        factory.per_host["203.0.113.11"] = {"responses": {"java -fullversion": 1, "sudo": 1}}
        machine = _machine(template, staging, factory, host_keys=AsyncMock(return_value=HOST_KEY))
        second = replace(handle, instance_id="i-0002", public_ip="203.0.113.11")

        results = await asyncio.gather(machine.run(handle), machine.run(second), return_exceptions=True)

        assert results[0].instance_id == "i-0001"
        assert isinstance(results[1], PrerequisiteInstallFailed)
        assert results[1].instance_id == "i-0002"

        first_session, second_session = factory.sessions
        assert first_session.kwargs["key_path"] != second_session.kwargs["key_path"]
        assert first_session.kwargs["known_hosts"] != second_session.kwargs["known_hosts"]
        assert "i-0001" in first_session.kwargs["key_path"]
        assert _leftovers(staging_dir) == []


class TestLaunchCommand:
    def test_default_command(self, template, staging):
        machine = _machine(template, staging, SessionFactory())
        assert machine.launch_command() == "java -jar /tmp/remoting.jar -workDir /home/ec2-user"

    def test_prefix_suffix_and_options(self, staging):
        template = Template(
            name="linux", ami="ami-0abc", instance_type="t3.large",
            jvm_options="-Xmx2g", launch_prefix="sudo -u agent", launch_suffix="-noReconnect",
            tmp_dir="/opt/agent",
        )
        machine = _machine(template, staging, SessionFactory())
        assert machine.launch_command() == (
            "sudo -u agent java -Xmx2g -jar /opt/agent/remoting.jar "
            "-workDir /home/ec2-user -noReconnect"
        )

    def test_explicit_agent_command(self, staging):
        template = Template(
            name="linux", ami="ami-0abc", instance_type="t3.large",
            agent_command="/opt/agent/start.sh",
        )
        machine = _machine(template, staging, SessionFactory())
        assert machine.launch_command() == "/opt/agent/start.sh"
