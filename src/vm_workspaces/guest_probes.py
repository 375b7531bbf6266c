"""Guest readiness probes built on the SSH command runner and TCP waits.

Every polling probe computes its deadline once per call, checks the cancel
token at the top of each iteration and sleeps through the token, so running
out of time (a failed StartOutcome) stays distinct from being cancelled
(StartCancelledError).

Pure helpers (parse_storage_probe, match_expected_containers,
classify_container_stack, runtime_env_failure_hint) carry the
interpretation logic and are tested without a guest.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Final

from vm_workspaces import constants
from vm_workspaces._logging import get_logger
from vm_workspaces.cancellation import CancelToken
from vm_workspaces.config import StartupConfig
from vm_workspaces.exceptions import NetworkUnreachableError
from vm_workspaces.models import CloudInitStatus, StartOutcome, Workspace
from vm_workspaces.progress import StartupProgressReporter
from vm_workspaces.ssh_runner import SshCommandRunner, escape_single_quotes, is_transient_connection_issue
from vm_workspaces.tcp_probe import wait_tcp

logger = get_logger(__name__)

# ============================================================================
# Guest commands
# ============================================================================

SSH_READY_COMMAND: Final[str] = "echo ssh-ready"

CLOUD_INIT_TAIL_COMMAND: Final[str] = (
    "tail -n 80 /var/log/cloud-init-output.log 2>/dev/null"
    " || tail -n 80 /var/log/cloud-init.log 2>/dev/null"
    " || journalctl -u cloud-final --no-pager -n 80 2>/dev/null"
    " || true"
)

CLOUD_INIT_STATUS_COMMAND: Final[str] = "cloud-init status --long 2>/dev/null || cloud-init status 2>/dev/null || true"

STORAGE_PROBE_COMMAND: Final[str] = (
    "root_opts=$(awk '$2==\"/\" {print $4; exit}' /proc/mounts 2>/dev/null); "
    'case ",$root_opts," in *,ro,*) echo "root_mode=ro opts=$root_opts";; '
    '*) echo "root_mode=rw opts=$root_opts";; esac; '
    "probe=/var/tmp/.workspace-write-probe-$$; "
    'if err=$( (echo ok > "$probe") 2>&1 ); then rm -f "$probe"; echo "write_probe=ok"; '
    'else echo "write_probe=fail err=$err"; fi; '
    "echo \"df_k=$(df -Pk / 2>/dev/null | awk 'NR==2 {print $4 \"K free (\" $5 \" used)\"}')\"; "
    "echo \"df_i=$(df -Pi / 2>/dev/null | awk 'NR==2 {print $4 \" inodes free (\" $5 \" used)\"}')\""
)

DOCKER_PS_COMMAND: Final[str] = (
    "if docker version --format '{{.Server.Version}}' >/dev/null 2>&1; then DOCKER='docker'; "
    "elif sudo -n docker version --format '{{.Server.Version}}' >/dev/null 2>&1; then DOCKER='sudo -n docker'; "
    "else echo 'docker-unavailable'; exit 19; fi; "
    "$DOCKER ps -a --format '{{.Names}}|{{.Status}}'"
)

REPO_MISSING_EXIT_CODE: Final[int] = 7
"""Exit code of the repository probe while the directory does not exist yet."""

_CONTAINER_NAME_SEPARATORS: Final[tuple[str, ...]] = ("-", "_")


def repository_probe_command(repo_dir: str) -> str:
    repo = escape_single_quotes(repo_dir)
    return f"if [ -d '{repo}/.git' ] || [ -d '{repo}' ]; then echo repo-ok; else exit {REPO_MISSING_EXIT_CODE}; fi"


def _secret_case_pattern() -> str:
    return "|".join(constants.PLACEHOLDER_SECRETS)


def runtime_env_probe_command(env_path: str) -> str:
    path = escape_single_quotes(env_path)
    keys = " ".join(constants.RUNTIME_SECRET_KEYS)
    return (
        f"f='{path}'; "
        "if [ ! -f \"$f\" ]; then echo 'status=missing-file'; exit 9; fi; "
        f"for k in {keys}; do "
        "v=$(grep -E \"^${k}=\" \"$f\" | tail -n 1 | cut -d= -f2- | tr -d '\\r' "
        "| sed -e \"s/^[\\\"']//\" -e \"s/[\\\"']$//\"); "
        'if [ -z "$v" ]; then echo "status=missing-secret key=$k"; exit 9; fi; '
        f'case "$v" in {_secret_case_pattern()}) echo "status=placeholder-secret key=$k"; exit 9;; esac; '
        "done; echo env-ok"
    )


def runtime_env_heal_command(env_path: str) -> str:
    """Shell script that replaces missing/placeholder API secrets in place.

    Idempotent: a valid API_KEY is kept, and API_TOKEN is only replaced
    (with API_KEY) when it is empty or a placeholder. Values are read the
    way the probe reads them, so a quoted placeholder is still replaced.
    Prints `not-ready` and exits 9 when a re-read still finds a placeholder.
    Entropy falls back from openssl to /dev/urandom to a hashed timestamp.
    """
    path = escape_single_quotes(env_path)
    key, token = constants.RUNTIME_SECRET_KEYS
    return f"""f='{path}'
[ -f "$f" ] || {{ echo 'status=missing-file'; exit 9; }}
random_hex_32() {{
  if command -v openssl >/dev/null 2>&1; then openssl rand -hex 32; return; fi
  if [ -r /dev/urandom ]; then od -An -N32 -tx1 /dev/urandom | tr -d ' \\n'; echo; return; fi
  date +%s%N | sha256sum | cut -c1-64
}}
get_env_var() {{
  grep -E "^$1=" "$f" | tail -n 1 | cut -d= -f2- | tr -d '\\r' \\
    | sed -e 's/^[[:space:]]*//' -e 's/[[:space:]]*$//' -e "s/^[\\"']//" -e "s/[\\"']$//"
}}
set_env_var() {{
  if grep -qE "^$1=" "$f"; then sed -i "s|^$1=.*|$1=$2|" "$f"; else printf '%s=%s\\n' "$1" "$2" >> "$f"; fi
}}
is_placeholder() {{ case "$1" in ''|{_secret_case_pattern()}) return 0;; esac; return 1; }}
key=$(get_env_var {key})
if is_placeholder "$key"; then key=$(random_hex_32); set_env_var {key} "$key" || exit 10; fi
if is_placeholder "$(get_env_var {token})"; then set_env_var {token} "$key" || exit 10; fi
if is_placeholder "$(get_env_var {key})" || is_placeholder "$(get_env_var {token})"; then echo not-ready; exit 9; fi
echo env-healed
"""


# ============================================================================
# Storage
# ============================================================================


@dataclass(frozen=True, slots=True)
class StorageCheck:
    has_issue: bool
    message: str


def parse_storage_probe(output: str) -> StorageCheck:
    """Interpret STORAGE_PROBE_COMMAND output.

    The reason is "No space left on device" or "Read-only file system" when
    the write probe (or root mount mode) says so, else a generic failure.
    """
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines:
        return StorageCheck(False, "storage probe returned no output")

    root_line = next((line for line in lines if line.startswith("root_mode=")), "")
    write_line = next((line for line in lines if line.startswith("write_probe=")), "")
    root_ro = root_line.startswith("root_mode=ro")
    write_failed = write_line.startswith("write_probe=fail")
    if not root_ro and not write_failed:
        return StorageCheck(False, "guest filesystem writable")

    lowered = write_line.lower()
    if "no space left on device" in lowered:
        reason = "No space left on device"
    elif "read-only file system" in lowered or root_ro:
        reason = "Read-only file system"
    else:
        reason = "filesystem write failure"
    return StorageCheck(True, " | ".join([reason, *lines]))


# ============================================================================
# Runtime env
# ============================================================================


class EnvStatus(str, Enum):
    MISSING_FILE = "missing-file"
    MISSING_SECRET = "missing-secret"
    PLACEHOLDER_SECRET = "placeholder-secret"
    PERMISSION_DENIED = "permission-denied"
    GENERIC = "generic"


_ENV_HINTS: Final[dict[EnvStatus, str]] = {
    EnvStatus.MISSING_FILE: "runtime .env file not created yet (repository setup may still be running)",
    EnvStatus.MISSING_SECRET: "API_KEY/API_TOKEN missing from runtime .env",
    EnvStatus.PLACEHOLDER_SECRET: "API_KEY/API_TOKEN still hold placeholder values",
    EnvStatus.PERMISSION_DENIED: "runtime .env is not readable by the SSH user (permission denied)",
    EnvStatus.GENERIC: "runtime .env check has not passed yet",
}


def classify_env_status(message: str) -> EnvStatus:
    lowered = (message or "").lower()
    if "status=missing-file" in lowered:
        return EnvStatus.MISSING_FILE
    if "status=missing-secret" in lowered:
        return EnvStatus.MISSING_SECRET
    if "status=placeholder-secret" in lowered:
        return EnvStatus.PLACEHOLDER_SECRET
    if "permission denied" in lowered:
        return EnvStatus.PERMISSION_DENIED
    return EnvStatus.GENERIC


def runtime_env_failure_hint(message: str) -> str:
    return _ENV_HINTS[classify_env_status(message)]


# ============================================================================
# Container stack
# ============================================================================


def _parse_container_lines(output: str) -> list[tuple[str, str]]:
    entries: list[tuple[str, str]] = []
    for raw in output.splitlines():
        name, sep, status = raw.strip().partition("|")
        if sep and name.strip():
            entries.append((name.strip(), status.strip()))
    return entries


def _match_tier(expected: str, name: str) -> int | None:
    """Match quality of container `name` for `expected`; lower is better."""
    exp = expected.lower()
    candidate = name.lower()
    if candidate == exp:
        return 0
    if any(candidate.startswith(f"{exp}{sep}") or candidate.endswith(f"{sep}{exp}") for sep in _CONTAINER_NAME_SEPARATORS):
        return 1
    if any(f"{left}{exp}{right}" in candidate for left in _CONTAINER_NAME_SEPARATORS for right in _CONTAINER_NAME_SEPARATORS):
        return 2
    if exp in candidate:
        return 3
    return None


def match_expected_containers(
    expected: tuple[str, ...] | list[str],
    entries: list[tuple[str, str]],
) -> dict[str, tuple[str, str] | None]:
    """Map each expected name to the best (name, status) entry, or None.

    Priority: exact, then prefix/suffix with a separator, then
    separator-bounded substring, then bare substring. Ties go to the first
    entry in `docker ps` order. A container matched exactly by one expected
    name is not offered to the fuzzy tiers of another (so "ui" never
    claims "ui-v2" when both exist).
    """
    exact_claimed = {
        name.lower()
        for name, _ in entries
        if any(name.lower() == exp.lower() for exp in expected)
    }
    result: dict[str, tuple[str, str] | None] = {}
    for exp in expected:
        best: tuple[int, tuple[str, str]] | None = None
        for entry in entries:
            tier = _match_tier(exp, entry[0])
            if tier is None or (tier > 0 and entry[0].lower() in exact_claimed):
                continue
            if best is None or tier < best[0]:
                best = (tier, entry)
        result[exp] = best[1] if best else None
    return result


def classify_container_stack(output: str, expected: tuple[str, ...] | list[str]) -> StartOutcome:
    """Bucket expected containers and report the first non-empty bucket.

    Bucket priority: missing > not running > unhealthy > health starting.
    """
    if "docker-unavailable" in output:
        return StartOutcome.fail("Docker daemon is not ready yet.")

    matches = match_expected_containers(expected, _parse_container_lines(output))
    missing: list[str] = []
    not_running: list[str] = []
    unhealthy: list[str] = []
    starting: list[str] = []
    for exp in expected:
        entry = matches[exp]
        if entry is None:
            missing.append(exp)
            continue
        name, status = entry
        lowered = status.lower()
        if not lowered.startswith("up"):
            not_running.append(f"{name} ({status})")
        elif "unhealthy" in lowered:
            unhealthy.append(f"{name} ({status})")
        elif "health: starting" in lowered or "(starting)" in lowered:
            starting.append(f"{name} ({status})")

    if missing:
        return StartOutcome.fail(f"Docker missing containers: {', '.join(missing)}.")
    if not_running:
        return StartOutcome.fail(f"Docker containers not running: {', '.join(not_running)}.")
    if unhealthy:
        return StartOutcome.fail(f"Docker unhealthy containers: {', '.join(unhealthy)}.")
    if starting:
        return StartOutcome.fail(f"Docker health checks still starting: {', '.join(starting)}.")
    return StartOutcome.ok(
        f"Docker stack is running and healthy ({len(expected)}/{len(expected)} expected containers)."
    )


# ============================================================================
# Probes
# ============================================================================


@dataclass(frozen=True, slots=True)
class CloudInitReport:
    status: CloudInitStatus
    message: str


class GuestReadinessProbes:
    """Polling readiness checks for one workspace guest."""

    def __init__(self, runner: SshCommandRunner, config: StartupConfig | None = None) -> None:
        self._runner = runner
        self._config = config or StartupConfig()

    @property
    def runner(self) -> SshCommandRunner:
        return self._runner

    # ------------------------------------------------------------------
    # SSH
    # ------------------------------------------------------------------

    async def wait_ssh_ready(self, workspace: Workspace, token: CancelToken) -> StartOutcome:
        """Wait until SSH commands run reliably, not just until the port accepts.

        A host-key mismatch is returned at once. Otherwise the last error is
        reported after the deadline.
        """
        cfg = self._config
        await token.sleep(cfg.ssh_ready_initial_delay_seconds)
        deadline = time.monotonic() + cfg.ssh_ready_deadline_seconds
        attempt = 0
        last = "no attempt completed"
        while True:
            token.raise_if_cancelled()
            attempt += 1
            result = await self._runner.run(workspace, SSH_READY_COMMAND, token)
            if result.success and "ssh-ready" in result.message:
                return StartOutcome.ok(f"SSH command channel ready after {attempt} attempt(s).")
            last = result.message
            if "hostkey_mismatch" in last:
                return StartOutcome.fail(last)
            if time.monotonic() >= deadline:
                break
            delay = min(
                cfg.ssh_ready_backoff_max_seconds,
                cfg.ssh_ready_backoff_base_seconds + attempt * cfg.ssh_ready_backoff_step_seconds,
            )
            await token.sleep(min(delay, max(0.0, deadline - time.monotonic())))
        return StartOutcome.fail(f"SSH became reachable but command channel did not stabilize: {last}")

    # ------------------------------------------------------------------
    # Repository / cloud-init
    # ------------------------------------------------------------------

    async def wait_repository_ready(
        self,
        workspace: Workspace,
        token: CancelToken,
        reporter: StartupProgressReporter | None = None,
    ) -> StartOutcome:
        """Wait for the guest repository directory to exist.

        "exit 7" means not there yet and keeps polling, as does any other
        command failure except a host-key mismatch, which is returned at
        once. Every third attempt records a cloud-init status line for the
        final message.
        """
        cfg = self._config
        command = repository_probe_command(workspace.repo_dir)
        deadline = time.monotonic() + cfg.repo_deadline_seconds
        attempt = 0
        last = "no attempt completed"
        cloud_init = "unknown"
        while True:
            token.raise_if_cancelled()
            attempt += 1
            result = await self._runner.run(workspace, command, token)
            if result.success and "repo-ok" in result.message:
                return StartOutcome.ok(f"Repository ready at {workspace.repo_dir}.")
            last = result.message
            if "hostkey_mismatch" in last:
                return StartOutcome.fail(last)
            if attempt % 3 == 0:
                status = await self._runner.run(workspace, CLOUD_INIT_STATUS_COMMAND, token)
                cloud_init = " ".join(status.message.split()) or "no status output"
                if reporter is not None:
                    reporter.log(f"Repository wait: {last} | cloud-init: {cloud_init}")
            if time.monotonic() >= deadline:
                break
            delay = min(
                cfg.ssh_ready_backoff_max_seconds,
                cfg.ssh_ready_backoff_base_seconds + attempt * cfg.repo_backoff_step_seconds,
            )
            await token.sleep(min(delay, max(0.0, deadline - time.monotonic())))
        return StartOutcome.fail(f"Repository not ready after wait window: {last} | cloud-init: {cloud_init}")

    async def check_cloud_init(self, workspace: Workspace, token: CancelToken) -> CloudInitReport:
        """One best-effort `cloud-init status --wait`, bounded by the configured timeout.

        Never raises for guest-side problems; the caller decides severity.
        """
        seconds = max(1, int(self._config.cloud_init_timeout_seconds))
        command = f"timeout {seconds} cloud-init status --wait --long 2>/dev/null; {CLOUD_INIT_STATUS_COMMAND}"
        result = await self._runner.run(workspace, command, token)
        if not result.success:
            if is_transient_connection_issue(result.message):
                return CloudInitReport(CloudInitStatus.UNKNOWN, f"cloud-init probe hit SSH loss: {result.message}")
            return CloudInitReport(CloudInitStatus.UNKNOWN, f"cloud-init status probe failed: {result.message}")

        # Last status line wins: the trailing non-wait status reflects the end state.
        status_lines = [line.strip() for line in result.message.splitlines() if line.strip().startswith("status:")]
        status_line = status_lines[-1].lower() if status_lines else ""
        if "done" in status_line:
            return CloudInitReport(CloudInitStatus.DONE, "cloud-init final stage completed.")
        if "running" in status_line or "not run" in status_line or "not started" in status_line:
            return CloudInitReport(
                CloudInitStatus.RUNNING,
                f"cloud-init still running after {seconds}s: {status_line}",
            )
        return CloudInitReport(
            CloudInitStatus.UNKNOWN,
            f"cloud-init status probe completed: {status_line or 'no status line'}",
        )

    async def fetch_cloud_init_tail(self, workspace: Workspace, token: CancelToken) -> str:
        result = await self._runner.run(workspace, CLOUD_INIT_TAIL_COMMAND, token)
        return result.message if result.success else f"cloud-init log unavailable: {result.message}"

    # ------------------------------------------------------------------
    # Storage / env
    # ------------------------------------------------------------------

    async def detect_guest_storage_issue(self, workspace: Workspace, token: CancelToken) -> StorageCheck:
        """Probe root mount options and a real write to /var/tmp.

        A failed probe (e.g. SSH loss) is not reported as a storage issue.
        """
        result = await self._runner.run(workspace, STORAGE_PROBE_COMMAND, token)
        if not result.success:
            return StorageCheck(False, f"storage probe failed: {result.message}")
        check = parse_storage_probe(result.message)
        if check.has_issue:
            logger.warning("Guest storage issue", extra={"workspace_id": workspace.id, "detail": check.message})
        return check

    def _env_path(self, workspace: Workspace) -> str:
        return f"{workspace.repo_dir.rstrip('/')}/{self._config.runtime_env_file}"

    async def ensure_runtime_api_tokens(self, workspace: Workspace, token: CancelToken) -> StartOutcome:
        """Generate and upsert API secrets in the guest runtime .env."""
        result = await self._runner.run(workspace, runtime_env_heal_command(self._env_path(workspace)), token)
        if result.success and "env-healed" in result.message:
            return StartOutcome.ok("Runtime .env secrets healed.")
        return StartOutcome.fail(result.message or "env heal produced no output")

    async def wait_runtime_env_ready(
        self,
        workspace: Workspace,
        token: CancelToken,
        reporter: StartupProgressReporter | None = None,
    ) -> StartOutcome:
        """Wait until the runtime .env holds real API secrets, auto-healing placeholders.

        Storage is checked on the first and every fourth attempt; a
        read-only or full filesystem ends the wait early.
        """
        cfg = self._config
        command = runtime_env_probe_command(self._env_path(workspace))
        deadline = time.monotonic() + cfg.env_deadline_seconds
        attempt = 0
        last = "no attempt completed"
        while time.monotonic() < deadline:
            token.raise_if_cancelled()
            attempt += 1
            escalate = attempt == 1 or attempt % 4 == 0
            if escalate:
                storage = await self.detect_guest_storage_issue(workspace, token)
                if storage.has_issue:
                    return StartOutcome.fail(f"Guest filesystem issue detected: {storage.message}")

            result = await self._runner.run(workspace, command, token)
            if result.success and "env-ok" in result.message:
                return StartOutcome.ok("Runtime .env is ready.")
            last = result.message

            if classify_env_status(last) in (EnvStatus.MISSING_SECRET, EnvStatus.PLACEHOLDER_SECRET):
                healed = await self.ensure_runtime_api_tokens(workspace, token)
                if healed.success:
                    if reporter is not None:
                        reporter.log("Env warmup: auto-healed API_KEY/API_TOKEN in runtime .env.")
                    await token.sleep(cfg.env_heal_settle_seconds)
                    continue
                last = f"{last} | auto-heal failed: {healed.message}"

            if escalate and reporter is not None:
                reporter.log(f"Env warmup: {runtime_env_failure_hint(last)} ({last})")
            await token.sleep(min(cfg.env_poll_seconds, max(0.0, deadline - time.monotonic())))
        return StartOutcome.fail(
            f"Runtime .env missing or incomplete after wait window: {runtime_env_failure_hint(last)} ({last})"
        )

    # ------------------------------------------------------------------
    # Container stack
    # ------------------------------------------------------------------

    async def check_container_stack(self, workspace: Workspace, token: CancelToken) -> StartOutcome:
        result = await self._runner.run(workspace, DOCKER_PS_COMMAND, token)
        if result.success:
            return classify_container_stack(result.message, self._config.expected_containers)
        if "docker-unavailable" in result.message:
            return StartOutcome.fail("Docker daemon is not ready yet.")
        return StartOutcome.fail(f"Docker stack check failed: {result.message}")

    async def wait_container_stack_ready(
        self,
        workspace: Workspace,
        token: CancelToken,
        reporter: StartupProgressReporter | None = None,
    ) -> StartOutcome:
        cfg = self._config
        deadline = time.monotonic() + cfg.docker_deadline_seconds
        attempt = 0
        last = "no attempt completed"
        while True:
            token.raise_if_cancelled()
            attempt += 1
            result = await self.check_container_stack(workspace, token)
            if result.success:
                return result
            last = result.message
            if (attempt == 1 or attempt % 3 == 0) and reporter is not None:
                reporter.log(f"Docker warmup: {last}")
            if time.monotonic() >= deadline:
                break
            await token.sleep(min(cfg.docker_poll_seconds, max(0.0, deadline - time.monotonic())))
        return StartOutcome.fail(f"Docker stack did not become healthy in time: {last}")

    # ------------------------------------------------------------------
    # TCP
    # ------------------------------------------------------------------

    async def _reachable(self, port: int, timeout: float, token: CancelToken) -> bool:
        try:
            await wait_tcp(
                constants.LOOPBACK_HOST,
                port,
                timeout,
                token,
                attempt_seconds=self._config.tcp_attempt_seconds,
                retry_delay=self._config.tcp_retry_delay_seconds,
            )
        except NetworkUnreachableError:
            return False
        return True

    async def wait_api(self, workspace: Workspace, token: CancelToken) -> StartOutcome:
        port = workspace.ports.api
        if await self._reachable(port, self._config.api_wait_seconds, token):
            return StartOutcome.ok(f"API is reachable on {constants.LOOPBACK_HOST}:{port}.")
        return StartOutcome.fail(f"API port did not become reachable ({constants.LOOPBACK_HOST}:{port}).")

    async def wait_web_ui(self, workspace: Workspace, token: CancelToken) -> StartOutcome:
        """Primary web port first, then the UI-v2 port, each with the full wait."""
        web, ui_v2 = workspace.ports.web, workspace.ports.ui_v2
        if await self._reachable(web, self._config.webui_wait_seconds, token):
            return StartOutcome.ok(f"WebUI is reachable on {constants.LOOPBACK_HOST}:{web}.")
        if await self._reachable(ui_v2, self._config.webui_wait_seconds, token):
            return StartOutcome.ok(f"WebUI-v2 is reachable on {constants.LOOPBACK_HOST}:{ui_v2}.")
        return StartOutcome.fail(f"WebUI ports did not become reachable ({web}, {ui_v2}).")
