"""Platform process-control handles.

Each handle is a self-contained variant exposing the same two capabilities,
``signal(kind)`` and ``release()``. ``open_process`` picks the variant for the
running platform.

Errors follow the ``os.kill`` convention so callers handle every variant the
same way: ``ProcessLookupError`` when the process is gone, ``PermissionError``
when it exists but may not be signalled, other ``OSError`` subclasses for
anything else.
"""

import logging
import os
import signal
from enum import Enum
from typing import Callable, Protocol

import psutil

logger = logging.getLogger(__name__)


class SignalKind(Enum):
    """Signals the termination engine needs."""

    PROBE = "probe"  # Existence check, no effect on the target
    GRACEFUL = "graceful"
    FORCED = "forced"


class ProcessHandle(Protocol):
    """Capability to signal one process."""

    pid: int
    distinguishes_signals: bool

    def signal(self, kind: SignalKind) -> None:
        """Send ``kind``. Raises ProcessLookupError if the process is gone."""
        ...

    def release(self) -> None:
        """Drop any OS resource held for the process."""
        ...


def _check_pid(pid: int) -> None:
    # os.kill treats 0 and negative pids as process groups
    if pid <= 0:
        raise ValueError(f"invalid pid {pid}")


def _raise_if_zombie(pid: int) -> None:
    """Treat an exited-but-unreaped process as gone."""
    try:
        if psutil.Process(pid).status() == psutil.STATUS_ZOMBIE:
            raise ProcessLookupError(pid)
    except psutil.NoSuchProcess as exc:
        raise ProcessLookupError(pid) from exc
    except psutil.AccessDenied:
        pass  # Exists, status unreadable


class PosixProcessHandle:
    """Real POSIX signals: SIGTERM for graceful, SIGKILL for forced."""

    distinguishes_signals = True

    def __init__(self, pid: int) -> None:
        _check_pid(pid)
        self.pid = pid

    def signal(self, kind: SignalKind) -> None:
        """Deliver ``kind`` with os.kill; a zombie probes as gone."""
        if kind is SignalKind.PROBE:
            os.kill(self.pid, 0)
            _raise_if_zombie(self.pid)
        elif kind is SignalKind.GRACEFUL:
            os.kill(self.pid, signal.SIGTERM)
        else:
            os.kill(self.pid, signal.SIGKILL)

    def release(self) -> None:
        """Nothing is held between calls."""


class TerminateOnlyProcessHandle:
    """Platforms with a single terminate primitive (Windows).

    Graceful and forced both call ``psutil.Process.terminate``, so the
    outcome method cannot be told apart.
    """

    distinguishes_signals = False

    def __init__(self, pid: int) -> None:
        _check_pid(pid)
        self.pid = pid
        try:
            self._process: psutil.Process | None = psutil.Process(pid)
        except psutil.NoSuchProcess:
            self._process = None

    def signal(self, kind: SignalKind) -> None:
        """Deliver ``kind`` through psutil, which has one way to stop a process."""
        if self._process is None:
            raise ProcessLookupError(self.pid)
        try:
            if kind is SignalKind.PROBE:
                if not self._process.is_running():
                    raise ProcessLookupError(self.pid)
                if self._process.status() == psutil.STATUS_ZOMBIE:
                    raise ProcessLookupError(self.pid)
            else:
                self._process.terminate()
        except psutil.NoSuchProcess as exc:
            raise ProcessLookupError(self.pid) from exc
        except psutil.AccessDenied as exc:
            if kind is SignalKind.PROBE:
                return
            raise PermissionError(f"access denied to pid {self.pid}") from exc

    def release(self) -> None:
        """Forget the psutil handle."""
        self._process = None


HandleFactory = Callable[[int], ProcessHandle]


def open_process(pid: int) -> ProcessHandle:
    """Return the handle variant for the current platform."""
    if os.name == "posix":
        return PosixProcessHandle(pid)
    logger.debug("Using terminate-only process handle for pid %d", pid)
    return TerminateOnlyProcessHandle(pid)
