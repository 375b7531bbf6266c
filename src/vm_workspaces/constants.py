"""Constants for vm-workspaces ports, guest layout and probe limits."""

from typing import Final

# ============================================================================
# Host ports
# ============================================================================

LOOPBACK_HOST: Final[str] = "127.0.0.1"
"""All forwarded ports, QMP and serial bind on loopback only."""

DEFAULT_SSH_PORT: Final[int] = 2222
DEFAULT_WEB_PORT: Final[int] = 8080
DEFAULT_API_PORT: Final[int] = 3011
DEFAULT_UI_V1_PORT: Final[int] = 3012
DEFAULT_UI_V2_PORT: Final[int] = 3013
DEFAULT_QMP_PORT: Final[int] = 4444
DEFAULT_SERIAL_PORT: Final[int] = 5555

AUX_PROXY_PORT_OFFSET: Final[int] = 5088
"""Host aux-1 port = api port + offset (forwarded to the guest secret proxy)."""

AUX_SECRETS_UI_PORT_OFFSET: Final[int] = 5077
"""Host aux-2 port = api port + offset (forwarded to the guest secrets UI)."""

MIN_PORT: Final[int] = 1
MAX_PORT: Final[int] = 65535

PORT_SCAN_FLOOR: Final[int] = 1024
"""Lowest port considered when searching for a free replacement port."""

# ============================================================================
# Guest ports (fixed by the guest image)
# ============================================================================

GUEST_SSH_PORT: Final[int] = 22
GUEST_WEB_PORT: Final[int] = 80
GUEST_API_PORT: Final[int] = 3001
GUEST_UI_V1_PORT: Final[int] = 3002
GUEST_UI_V2_PORT: Final[int] = 3003
GUEST_AUX_PROXY_PORT: Final[int] = 8099
GUEST_AUX_SECRETS_UI_PORT: Final[int] = 8088

# ============================================================================
# Guest layout
# ============================================================================

DEFAULT_GUEST_USER: Final[str] = "workspace"
DEFAULT_REPO_DIR: Final[str] = "/opt/workspace"

DEFAULT_EXPECTED_CONTAINERS: Final[tuple[str, ...]] = (
    "workspace-api",
    "workspace-worker",
    "workspace-ollama",
    "workspace-ui-v2",
    "workspace-ui",
)
"""Containers that must be Up and healthy for the stack to count as ready."""

RUNTIME_ENV_FILE: Final[str] = ".env"
"""Runtime env file name, relative to the guest repository directory."""

RUNTIME_SECRET_KEYS: Final[tuple[str, str]] = ("API_KEY", "API_TOKEN")
"""Required secret entries; the second mirrors the first after auto-heal."""

PLACEHOLDER_SECRETS: Final[tuple[str, ...]] = (
    "change-me-please",
    "your_api_key_here",
    "replace-me",
    "placeholder",
)
"""Template values that count as 'not configured' (empty values count too)."""

# ============================================================================
# SSH
# ============================================================================

SSH_MAX_ATTEMPTS: Final[int] = 3
SSH_BACKOFF_SECONDS: Final[float] = 0.4
"""Linear backoff unit: the wait before attempt n+1 is n * unit."""

SSH_CONNECT_TIMEOUT_SECONDS: Final[float] = 10.0
SSH_COMMAND_TIMEOUT_SECONDS: Final[float] = 60.0

# ============================================================================
# TCP probes
# ============================================================================

TCP_CONNECT_ATTEMPT_SECONDS: Final[float] = 0.5
TCP_RETRY_DELAY_SECONDS: Final[float] = 0.3

# ============================================================================
# Serial diagnostics
# ============================================================================

SERIAL_READ_CHUNK: Final[int] = 1024
SERIAL_PARTIAL_FLUSH_CHARS: Final[int] = 320
SERIAL_PARTIAL_FLUSH_SECONDS: Final[float] = 2.0
"""Flush an undelimited buffer of at least PARTIAL_FLUSH_CHARS after this long."""

SERIAL_MAX_LINE_CHARS: Final[int] = 360
SERIAL_LINE_PREFIX: Final[str] = "[serial] "

# ============================================================================
# Process control
# ============================================================================

QMP_CONNECT_TIMEOUT_SECONDS: Final[float] = 5.0
QMP_COMMAND_TIMEOUT_SECONDS: Final[float] = 5.0
STOP_GRACE_SECONDS: Final[float] = 2.5
"""How long a non-forced kill waits for QEMU to exit before killing the tree."""
