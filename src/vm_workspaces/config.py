"""Startup timing and guest-layout configuration for vm-workspaces.

StartupConfig carries every deadline, poll interval and attempt count used
by a start attempt. Defaults match a cold boot of the stock guest image on
a laptop; tests pass tiny values to run whole flows in milliseconds.

Example:
    ```python
    from vm_workspaces import StartupConfig, WorkspaceStartupOrchestrator

    config = StartupConfig(docker_deadline_seconds=300, warmup_max_attempts=30)
    orchestrator = WorkspaceStartupOrchestrator.create(config=config)
    ```
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from vm_workspaces import constants


class StartupConfig(BaseModel):
    """Configuration for WorkspaceStartupOrchestrator and its probes.

    Attributes:
        qemu_grace_seconds: Delay after launch before checking for an immediate exit.
        serial_wait_seconds: How long to wait for the serial TCP port.
        ssh_port_wait_seconds: How long to wait for the forwarded SSH port.
        ssh_ready_initial_delay_seconds: Pause before the first SSH stability probe.
        ssh_ready_deadline_seconds: Deadline for the SSH stability probe.
        repo_deadline_seconds: Deadline for the guest repository to appear.
        cloud_init_timeout_seconds: Upper bound for the cloud-init status probe.
        env_deadline_seconds: Deadline for the runtime .env to become valid.
        docker_deadline_seconds: Deadline for the container stack to become healthy.
        api_wait_seconds: TCP wait for the API port.
        webui_wait_seconds: TCP wait for each web UI port (primary, then v2).
        warmup_max_attempts: Background SSH probes after a degraded start.
        warmup_interval_seconds: Delay before each warmup probe.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    # Process launch
    qemu_grace_seconds: float = Field(default=0.6, ge=0, le=10, description="Immediate-exit detection window")
    stop_grace_seconds: float = Field(
        default=constants.STOP_GRACE_SECONDS,
        ge=0,
        le=60,
        description="Wait for QEMU exit after QMP quit before killing the tree",
    )

    # TCP waits
    serial_wait_seconds: float = Field(default=30, ge=0, le=600)
    ssh_port_wait_seconds: float = Field(default=120, ge=0, le=1800)
    api_wait_seconds: float = Field(default=40, ge=0, le=600)
    webui_wait_seconds: float = Field(default=75, ge=0, le=600)
    tcp_attempt_seconds: float = Field(default=constants.TCP_CONNECT_ATTEMPT_SECONDS, gt=0, le=30)
    tcp_retry_delay_seconds: float = Field(default=constants.TCP_RETRY_DELAY_SECONDS, ge=0, le=30)

    # SSH runner
    ssh_max_attempts: int = Field(default=constants.SSH_MAX_ATTEMPTS, ge=1, le=10)
    ssh_backoff_seconds: float = Field(
        default=constants.SSH_BACKOFF_SECONDS,
        ge=0,
        le=10,
        description="Linear backoff unit between SSH attempts",
    )
    ssh_connect_timeout_seconds: float = Field(default=constants.SSH_CONNECT_TIMEOUT_SECONDS, gt=0, le=120)
    ssh_command_timeout_seconds: float = Field(default=constants.SSH_COMMAND_TIMEOUT_SECONDS, gt=0, le=1800)

    # SSH stability
    ssh_ready_initial_delay_seconds: float = Field(default=2.5, ge=0, le=60)
    ssh_ready_deadline_seconds: float = Field(default=35, ge=0, le=600)
    ssh_ready_backoff_base_seconds: float = Field(default=1.2, ge=0, le=60)
    ssh_ready_backoff_step_seconds: float = Field(default=0.4, ge=0, le=60)
    ssh_ready_backoff_max_seconds: float = Field(default=5.0, ge=0, le=60)

    # Guest probes
    repo_deadline_seconds: float = Field(default=180, ge=0, le=3600)
    repo_backoff_step_seconds: float = Field(default=0.35, ge=0, le=60)
    cloud_init_timeout_seconds: float = Field(default=180, ge=0, le=3600)
    env_deadline_seconds: float = Field(default=150, ge=0, le=3600)
    env_poll_seconds: float = Field(default=3, ge=0, le=60)
    env_heal_settle_seconds: float = Field(default=0.4, ge=0, le=60)
    docker_deadline_seconds: float = Field(default=180, ge=0, le=3600)
    docker_poll_seconds: float = Field(default=3, ge=0, le=60)

    # Warmup after a degraded start
    warmup_max_attempts: int = Field(default=18, ge=1, le=1000)
    warmup_interval_seconds: float = Field(default=12, ge=0, le=600)

    # Guest layout
    expected_containers: tuple[str, ...] = Field(
        default=constants.DEFAULT_EXPECTED_CONTAINERS,
        min_length=1,
        description="Container names (or name stems) the stack must run",
    )
    runtime_env_file: str = Field(default=constants.RUNTIME_ENV_FILE, description="Relative to the repo dir")
