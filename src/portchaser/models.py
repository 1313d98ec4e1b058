"""Data models for portchaser."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

COMMON_PORTS = frozenset({80, 443, 3000, 5000, 8000, 8080})

# Kill-count threshold over the history window for a port to be recommended
RECOMMEND_KILL_COUNT = 3

# Processes below this pid are treated as system processes
LOW_PID_THRESHOLD = 100


@dataclass(slots=True, frozen=True)
class PortEntry:
    """Immutable description of one listening port and its owning process."""

    port: int
    process_name: str = "unknown"
    pid: int = 0  # 0 = owner unknown
    user: str = "unknown"
    command: str = "unknown"
    is_docker: bool = False
    container_id: str = ""
    container_name: str = ""
    image_name: str = ""
    is_system: bool = False
    kill_count: int = 0
    last_killed: datetime | None = None

    @property
    def is_common_port(self) -> bool:
        """Well-known web development port."""
        return self.port in COMMON_PORTS

    @property
    def is_recommended(self) -> bool:
        """Frequently killed ports are suggested first."""
        return self.kill_count >= RECOMMEND_KILL_COUNT

    @property
    def should_display_warning(self) -> bool:
        """System-owned or low-pid process, shown highlighted."""
        return self.is_system or self.pid < LOW_PID_THRESHOLD

    @property
    def is_system_port(self) -> bool:
        """Privileged port below 1024."""
        return 0 <= self.port <= 1023


@dataclass(slots=True, frozen=True)
class ContainerInfo:
    """Container attribution for a published port."""

    container_id: str
    container_name: str
    image_name: str


class KillMethod(Enum):
    """How a termination attempt ended."""

    GRACEFUL = "graceful"
    FORCED = "forced"
    FAILED = "failed"


@dataclass(slots=True)
class KillResult:
    """Outcome of a termination attempt."""

    success: bool
    method: KillMethod
    message: str
    duration: float = 0.0  # Seconds
    error: Exception | None = None
    exact_method: bool = True  # False when graceful and forced share one primitive


@dataclass(slots=True, frozen=True)
class HistoryEntry:
    """A recorded successful termination."""

    port: int
    process_name: str
    pid: int
    command: str
    killed_at: datetime
    id: int | None = None
