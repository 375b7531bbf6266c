"""Tests for guest readiness probes.

Pure interpretation helpers are tested directly; polling probes run against
a ScriptedRunner with millisecond deadlines.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

import pytest

from tests.fakes import HEALTHY_STORAGE, READ_ONLY_STORAGE, RecordingSink, ScriptedRunner, free_port, guest_with
from vm_workspaces.cancellation import CancelToken
from vm_workspaces.config import StartupConfig
from vm_workspaces.guest_probes import (
    EnvStatus,
    GuestReadinessProbes,
    classify_container_stack,
    classify_env_status,
    match_expected_containers,
    parse_storage_probe,
    repository_probe_command,
    runtime_env_failure_hint,
    runtime_env_heal_command,
    runtime_env_probe_command,
)
from vm_workspaces.models import CloudInitStatus, PortSet, StartOutcome, Workspace
from vm_workspaces.progress import StartupProgressReporter

TRANSIENT = StartOutcome.fail("SSH transient error: Connection reset by peer")

# ============================================================================
# Storage
# ============================================================================


class TestParseStorageProbe:
    def test_writable(self) -> None:
        check = parse_storage_probe(HEALTHY_STORAGE)
        assert not check.has_issue

    def test_read_only(self) -> None:
        check = parse_storage_probe(READ_ONLY_STORAGE)
        assert check.has_issue
        assert check.message.startswith("Read-only file system | root_mode=ro")

    def test_disk_full(self) -> None:
        output = "root_mode=rw opts=rw\nwrite_probe=fail err=sh: write error: No space left on device"
        check = parse_storage_probe(output)
        assert check.has_issue
        assert check.message.startswith("No space left on device")

    def test_generic_write_failure(self) -> None:
        check = parse_storage_probe("root_mode=rw\nwrite_probe=fail err=Input/output error")
        assert check.has_issue
        assert check.message.startswith("filesystem write failure")

    def test_empty_output(self) -> None:
        assert not parse_storage_probe("").has_issue


# ============================================================================
# Runtime env
# ============================================================================


class TestEnvStatus:
    @pytest.mark.parametrize(
        ("message", "status"),
        [
            ("status=missing-file", EnvStatus.MISSING_FILE),
            ("status=missing-secret key=API_KEY", EnvStatus.MISSING_SECRET),
            ("status=placeholder-secret key=API_TOKEN", EnvStatus.PLACEHOLDER_SECRET),
            ("grep: /opt/workspace/.env: Permission denied", EnvStatus.PERMISSION_DENIED),
            ("SSH transient error: timed out", EnvStatus.GENERIC),
            ("", EnvStatus.GENERIC),
        ],
    )
    def test_classify(self, message: str, status: EnvStatus) -> None:
        assert classify_env_status(message) is status

    def test_hint(self) -> None:
        assert runtime_env_failure_hint("status=missing-file") == (
            "runtime .env file not created yet (repository setup may still be running)"
        )

    def test_probe_command_quotes_path(self) -> None:
        command = runtime_env_probe_command("/opt/it's/.env")
        assert "f='/opt/it'\\''s/.env'" in command
        assert "echo env-ok" in command

    def test_repository_probe_uses_missing_exit_code(self) -> None:
        assert "exit 7" in repository_probe_command("/opt/workspace")


async def _sh(script: str) -> tuple[int, str]:
    proc = await asyncio.create_subprocess_exec(
        "sh", "-c", script, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.STDOUT
    )
    out, _ = await proc.communicate()
    return proc.returncode or 0, out.decode().strip()


def _env_values(env_file: Path) -> dict[str, str]:
    return dict(line.split("=", 1) for line in env_file.read_text().splitlines() if "=" in line)


@pytest.mark.skipif(sys.platform != "linux", reason="guest scripts use GNU sed -i")
class TestRuntimeEnvScripts:
    """The generated probe and heal scripts, run under the host's sh against a real file."""

    async def test_quoted_placeholder_is_healed(self, tmp_path: Path) -> None:
        env_file = tmp_path / ".env"
        env_file.write_text('API_KEY="replace-me"\nAPI_TOKEN="replace-me"\n')

        before = await _sh(runtime_env_probe_command(str(env_file)))
        healed = await _sh(runtime_env_heal_command(str(env_file)))
        after = await _sh(runtime_env_probe_command(str(env_file)))

        assert before == (9, "status=placeholder-secret key=API_KEY")
        assert healed == (0, "env-healed")
        assert after == (0, "env-ok")
        values = _env_values(env_file)
        assert len(values["API_KEY"]) == 64
        assert values["API_TOKEN"] == values["API_KEY"]

    async def test_valid_token_is_kept(self, tmp_path: Path) -> None:
        env_file = tmp_path / ".env"
        env_file.write_text("API_KEY=placeholder\nAPI_TOKEN=token-1234\n")

        healed = await _sh(runtime_env_heal_command(str(env_file)))

        assert healed == (0, "env-healed")
        values = _env_values(env_file)
        assert values["API_KEY"] != "placeholder"
        assert values["API_TOKEN"] == "token-1234"

    async def test_missing_token_mirrors_key(self, tmp_path: Path) -> None:
        env_file = tmp_path / ".env"
        env_file.write_text("API_KEY=key-5678\n")

        healed = await _sh(runtime_env_heal_command(str(env_file)))

        assert healed == (0, "env-healed")
        assert _env_values(env_file) == {"API_KEY": "key-5678", "API_TOKEN": "key-5678"}

    async def test_missing_file(self, tmp_path: Path) -> None:
        assert await _sh(runtime_env_heal_command(str(tmp_path / ".env"))) == (9, "status=missing-file")


# ============================================================================
# Container stack
# ============================================================================


class TestMatchExpectedContainers:
    def test_exact_match_not_stolen_by_fuzzy(self) -> None:
        """'workspace-ui' must not claim 'workspace-ui-v2' when both exist."""
        entries = [("workspace-ui-v2", "Up 1 minute"), ("workspace-ui", "Up 1 minute")]
        matches = match_expected_containers(("workspace-ui", "workspace-ui-v2"), entries)
        assert matches["workspace-ui"] == ("workspace-ui", "Up 1 minute")
        assert matches["workspace-ui-v2"] == ("workspace-ui-v2", "Up 1 minute")

    def test_prefix_suffix_beats_substring(self) -> None:
        entries = [("stack-ui-v2-1", "Up"), ("stack-ui", "Up")]
        assert match_expected_containers(("ui",), entries)["ui"] == ("stack-ui", "Up")

    def test_compose_project_prefix(self) -> None:
        entries = [("myproj-workspace-api-1", "Up 3 minutes (healthy)")]
        match = match_expected_containers(("workspace-api",), entries)["workspace-api"]
        assert match == ("myproj-workspace-api-1", "Up 3 minutes (healthy)")

    def test_missing(self) -> None:
        assert match_expected_containers(("api",), [("worker", "Up")])["api"] is None


class TestClassifyContainerStack:
    EXPECTED = ("api", "worker")

    def test_healthy(self) -> None:
        outcome = classify_container_stack("api|Up 2 minutes (healthy)\nworker|Up 2 minutes", self.EXPECTED)
        assert outcome == StartOutcome.ok("Docker stack is running and healthy (2/2 expected containers).")

    def test_missing_reported_before_not_running(self) -> None:
        outcome = classify_container_stack("api|Exited (1) 5 seconds ago", self.EXPECTED)
        assert outcome.message == "Docker missing containers: worker."

    def test_not_running(self) -> None:
        outcome = classify_container_stack(
            "api|Exited (1) 5 seconds ago\nworker|Up 1 minute (unhealthy)", self.EXPECTED
        )
        assert outcome.message == "Docker containers not running: api (Exited (1) 5 seconds ago)."

    def test_unhealthy_before_starting(self) -> None:
        outcome = classify_container_stack(
            "api|Up 1 minute (health: starting)\nworker|Up 1 minute (unhealthy)", self.EXPECTED
        )
        assert outcome.message == "Docker unhealthy containers: worker (Up 1 minute (unhealthy))."

    def test_health_starting(self) -> None:
        outcome = classify_container_stack("api|Up 3 seconds (health: starting)\nworker|Up 3 seconds", self.EXPECTED)
        assert outcome.message == "Docker health checks still starting: api (Up 3 seconds (health: starting))."

    def test_not_running_outranks_starting(self) -> None:
        output = "\n".join(
            [
                "api|Up 2 minutes (healthy)",
                "worker|Up 1 minute",
                "ollama|Exited (1)",
                "ui-v2|Up (health: starting)",
                "ui|Up",
            ]
        )
        expected = ("api", "worker", "ollama", "ui-v2", "ui")

        outcome = classify_container_stack(output, expected)

        assert outcome == StartOutcome.fail("Docker containers not running: ollama (Exited (1)).")
        matches = match_expected_containers(expected, [tuple(line.split("|", 1)) for line in output.splitlines()])
        assert matches["ui"] == ("ui", "Up")
        assert matches["ui-v2"] == ("ui-v2", "Up (health: starting)")

    def test_daemon_unavailable(self) -> None:
        assert classify_container_stack("docker-unavailable", self.EXPECTED).message == (
            "Docker daemon is not ready yet."
        )


# ============================================================================
# Polling probes
# ============================================================================


def _probes(handler: Callable[[str], StartOutcome], config: StartupConfig) -> tuple[GuestReadinessProbes, ScriptedRunner]:
    runner = ScriptedRunner(handler)
    return GuestReadinessProbes(runner, config), runner  # type: ignore[arg-type]


class TestWaitSshReady:
    async def test_ready(self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig) -> None:
        probes, _ = _probes(guest_with(), fast_config)
        outcome = await probes.wait_ssh_ready(make_workspace(), CancelToken())
        assert outcome == StartOutcome.ok("SSH command channel ready after 1 attempt(s).")

    async def test_unstable_reports_last_error(
        self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig
    ) -> None:
        probes, runner = _probes(guest_with(ssh=TRANSIENT), fast_config)
        outcome = await probes.wait_ssh_ready(make_workspace(), CancelToken())
        assert outcome.message == (
            "SSH became reachable but command channel did not stabilize: "
            "SSH transient error: Connection reset by peer"
        )
        assert runner.count("ssh-ready") >= 2

    async def test_host_key_mismatch_returns_at_once(
        self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig
    ) -> None:
        mismatch = StartOutcome.fail("reason=hostkey_mismatch; SSH host key mismatch for 127.0.0.1:2222.")
        probes, runner = _probes(guest_with(ssh=mismatch), fast_config)
        outcome = await probes.wait_ssh_ready(make_workspace(), CancelToken())
        assert outcome == mismatch
        assert runner.count("ssh-ready") == 1


class TestWaitRepositoryReady:
    async def test_ready(self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig) -> None:
        probes, _ = _probes(guest_with(), fast_config)
        outcome = await probes.wait_repository_ready(make_workspace(), CancelToken())
        assert outcome == StartOutcome.ok("Repository ready at /opt/workspace.")

    async def test_missing_until_deadline(
        self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig
    ) -> None:
        probes, _ = _probes(guest_with(repo=StartOutcome.fail("SSH command failed with exit 7")), fast_config)
        outcome = await probes.wait_repository_ready(make_workspace(), CancelToken())
        assert not outcome.success
        assert outcome.message.startswith(
            "Repository not ready after wait window: SSH command failed with exit 7 | cloud-init: "
        )


class TestCloudInit:
    @pytest.mark.parametrize(
        ("output", "status"),
        [
            ("status: running\nstatus: done", CloudInitStatus.DONE),
            ("status: running", CloudInitStatus.RUNNING),
            ("something else", CloudInitStatus.UNKNOWN),
        ],
    )
    async def test_status(
        self,
        make_workspace: Callable[..., Workspace],
        fast_config: StartupConfig,
        output: str,
        status: CloudInitStatus,
    ) -> None:
        probes, runner = _probes(guest_with(cloud_init=StartOutcome.ok(output)), fast_config)
        report = await probes.check_cloud_init(make_workspace(), CancelToken())
        assert report.status is status
        assert runner.commands[0].startswith("timeout 1 cloud-init status --wait")

    async def test_ssh_loss(self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig) -> None:
        probes, _ = _probes(guest_with(cloud_init=TRANSIENT), fast_config)
        report = await probes.check_cloud_init(make_workspace(), CancelToken())
        assert report.status is CloudInitStatus.UNKNOWN
        assert report.message.startswith("cloud-init probe hit SSH loss")


class TestStorageProbe:
    async def test_read_only(self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig) -> None:
        probes, _ = _probes(guest_with(storage=StartOutcome.ok(READ_ONLY_STORAGE)), fast_config)
        check = await probes.detect_guest_storage_issue(make_workspace(), CancelToken())
        assert check.has_issue

    async def test_probe_failure_is_not_an_issue(
        self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig
    ) -> None:
        probes, _ = _probes(guest_with(storage=TRANSIENT), fast_config)
        check = await probes.detect_guest_storage_issue(make_workspace(), CancelToken())
        assert not check.has_issue


class TestWaitRuntimeEnvReady:
    async def test_ready(self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig) -> None:
        probes, _ = _probes(guest_with(), fast_config)
        outcome = await probes.wait_runtime_env_ready(make_workspace(), CancelToken())
        assert outcome == StartOutcome.ok("Runtime .env is ready.")

    async def test_placeholder_auto_healed(
        self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig, sink: RecordingSink
    ) -> None:
        healed = False
        base = guest_with()

        def handler(command: str) -> StartOutcome:
            nonlocal healed
            if "env-healed" in command:
                healed = True
                return StartOutcome.ok("env-healed")
            if "env-ok" in command and not healed:
                return StartOutcome.fail("status=placeholder-secret key=API_KEY")
            return base(command)

        probes, runner = _probes(handler, fast_config)
        outcome = await probes.wait_runtime_env_ready(
            make_workspace(), CancelToken(), StartupProgressReporter(sink)
        )

        assert outcome.success
        assert runner.count("env-healed") == 1
        assert "Env warmup: auto-healed API_KEY/API_TOKEN in runtime .env." in sink.logs

    async def test_ineffective_heal_still_times_out(
        self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig
    ) -> None:
        """A heal that reports success without fixing the file must not keep the wait alive."""
        probes, runner = _probes(
            guest_with(
                heal=StartOutcome.ok("env-healed"),
                env=StartOutcome.fail("status=placeholder-secret key=API_KEY"),
            ),
            fast_config,
        )

        outcome = await asyncio.wait_for(probes.wait_runtime_env_ready(make_workspace(), CancelToken()), timeout=2)

        assert outcome.message.startswith("Runtime .env missing or incomplete after wait window:")
        assert "status=placeholder-secret key=API_KEY" in outcome.message
        assert runner.count("env-healed") >= 1

    async def test_heal_not_ready_is_reported(
        self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig
    ) -> None:
        probes, _ = _probes(
            guest_with(
                heal=StartOutcome.fail("not-ready"),
                env=StartOutcome.fail("status=placeholder-secret key=API_TOKEN"),
            ),
            fast_config,
        )

        outcome = await probes.wait_runtime_env_ready(make_workspace(), CancelToken())

        assert not outcome.success
        assert "auto-heal failed: not-ready" in outcome.message

    async def test_storage_issue_ends_wait(
        self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig
    ) -> None:
        probes, runner = _probes(guest_with(storage=StartOutcome.ok(READ_ONLY_STORAGE)), fast_config)
        outcome = await probes.wait_runtime_env_ready(make_workspace(), CancelToken())
        assert outcome.message.startswith("Guest filesystem issue detected: Read-only file system")
        assert runner.count("env-ok") == 0

    async def test_missing_file_until_deadline(
        self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig
    ) -> None:
        probes, _ = _probes(guest_with(env=StartOutcome.fail("status=missing-file")), fast_config)
        outcome = await probes.wait_runtime_env_ready(make_workspace(), CancelToken())
        assert outcome.message == (
            "Runtime .env missing or incomplete after wait window: "
            "runtime .env file not created yet (repository setup may still be running) (status=missing-file)"
        )


class TestWaitContainerStack:
    async def test_becomes_healthy(self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig) -> None:
        calls = 0
        base = guest_with()

        def handler(command: str) -> StartOutcome:
            nonlocal calls
            if "docker version" in command:
                calls += 1
                if calls == 1:
                    return StartOutcome.fail("docker-unavailable")
            return base(command)

        probes, _ = _probes(handler, fast_config)
        outcome = await probes.wait_container_stack_ready(make_workspace(), CancelToken())
        assert outcome.success
        assert calls == 2

    async def test_timeout(self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig) -> None:
        stopped = StartOutcome.ok("workspace-api|Exited (137) 1 second ago")
        probes, _ = _probes(guest_with(docker=stopped), fast_config)
        outcome = await probes.wait_container_stack_ready(make_workspace(), CancelToken())
        assert outcome.message.startswith("Docker stack did not become healthy in time: Docker missing containers:")


class TestTcpProbes:
    async def test_web_ui_falls_back_to_ui_v2(
        self,
        make_workspace: Callable[..., Workspace],
        fast_config: StartupConfig,
        listener: Callable[[], Awaitable[int]],
    ) -> None:
        ui_v2 = await listener()
        ws = make_workspace(ports=PortSet(web=free_port(), ui_v2=ui_v2))
        probes, _ = _probes(guest_with(), fast_config)

        outcome = await probes.wait_web_ui(ws, CancelToken())

        assert outcome == StartOutcome.ok(f"WebUI-v2 is reachable on 127.0.0.1:{ui_v2}.")

    async def test_web_ui_unreachable(self, make_workspace: Callable[..., Workspace], fast_config: StartupConfig) -> None:
        web, ui_v2 = free_port(), free_port()
        ws = make_workspace(ports=PortSet(web=web, ui_v2=ui_v2))
        probes, _ = _probes(guest_with(), fast_config)

        outcome = await probes.wait_web_ui(ws, CancelToken())

        assert outcome == StartOutcome.fail(f"WebUI ports did not become reachable ({web}, {ui_v2}).")

    async def test_api(
        self,
        make_workspace: Callable[..., Workspace],
        fast_config: StartupConfig,
        listener: Callable[[], Awaitable[int]],
    ) -> None:
        api = await listener()
        probes, _ = _probes(guest_with(), fast_config)
        outcome = await probes.wait_api(make_workspace(ports=PortSet(api=api)), CancelToken())
        assert outcome == StartOutcome.ok(f"API is reachable on 127.0.0.1:{api}.")
