"""Process termination engine for portchaser."""

import logging
import threading
import time

from portchaser.config import KillerConfig
from portchaser.errors import (
    InvalidPidError,
    NotRunningError,
    ProtectedProcessError,
    SignalSendError,
    TerminationCancelled,
    TerminationError,
)
from portchaser.models import LOW_PID_THRESHOLD, KillMethod, KillResult, PortEntry
from portchaser.process import HandleFactory, ProcessHandle, SignalKind, open_process

logger = logging.getLogger(__name__)

_SINGLE_PRIMITIVE_NOTE = " (platform has a single terminate primitive; method is nominal)"


class TerminationEngine:
    """
    Terminates processes with a graceful signal, escalating to a forced one.

    Every call returns a populated KillResult; nothing is raised. Failures
    carry their cause in ``KillResult.error``. Calls for different pids
    share no mutable state and may run concurrently.
    """

    def __init__(
        self,
        grace_period: float = 3.0,
        system_protection: bool = True,
        poll_interval: float = 0.1,
        settle_time: float = 0.05,
        low_pid_threshold: int = LOW_PID_THRESHOLD,
        handle_factory: HandleFactory = open_process,
    ) -> None:
        """
        Initialize the TerminationEngine.

        Args:
            grace_period: Seconds to wait after the graceful signal before escalating.
            system_protection: Refuse to touch system processes when True.
            poll_interval: How often to check whether the target has exited.
            settle_time: Wait after the forced signal before the final check.
            low_pid_threshold: Pids below this are protected.
            handle_factory: Opens a ProcessHandle for a pid.
        """
        self.grace_period = grace_period
        self.system_protection = system_protection
        self.poll_interval = poll_interval
        self.settle_time = settle_time
        self.low_pid_threshold = low_pid_threshold
        self._handle_factory = handle_factory

    @classmethod
    def from_config(cls, config: KillerConfig) -> "TerminationEngine":
        """Build an engine from loaded settings."""
        return cls(
            grace_period=config.grace_period,
            system_protection=config.system_protection,
            poll_interval=config.poll_interval,
            settle_time=config.settle_time,
        )

    def is_protected(self, pid: int, entry: PortEntry | None = None) -> bool:
        """Check whether the protection policy covers the target."""
        if entry is not None and entry.is_system:
            return True
        return pid < self.low_pid_threshold

    def is_running(self, pid: int) -> bool:
        """Zero-effect existence check. Invalid pids are never running."""
        if pid <= 0:
            return False
        handle = self._handle_factory(pid)
        try:
            return self._probe(handle)
        finally:
            handle.release()

    def terminate(
        self,
        pid: int,
        entry: PortEntry | None = None,
        cancel: threading.Event | None = None,
    ) -> KillResult:
        """Terminate ``pid`` using the configured grace period."""
        return self.kill_with_timeout(pid, self.grace_period, entry, cancel)

    def kill_with_timeout(
        self,
        pid: int,
        timeout: float,
        entry: PortEntry | None = None,
        cancel: threading.Event | None = None,
    ) -> KillResult:
        """
        Terminate ``pid``, waiting up to ``timeout`` seconds before escalating.

        Args:
            pid: Target process id.
            timeout: Grace period between the graceful and forced signals.
            entry: The scanned entry for the target, used for the protection policy.
            cancel: Set by the caller to abandon the wait. Observed within one
                poll interval.
        """
        start = time.monotonic()

        if self.system_protection and self.is_protected(pid, entry):
            logger.warning("Refusing to terminate protected process %d", pid)
            return self._failed(
                ProtectedProcessError(pid, f"PID {pid} is a protected system process"),
                start,
            )

        if pid <= 0:
            return self._failed(InvalidPidError(pid, f"invalid PID {pid}"), start)

        if cancel is None:
            cancel = threading.Event()

        try:
            handle = self._handle_factory(pid)
        except (OSError, ValueError) as exc:
            return self._failed(
                self._chain(SignalSendError(pid, f"could not open PID {pid}: {exc}"), exc),
                start,
            )

        try:
            return self._run(handle, pid, timeout, cancel, start)
        finally:
            handle.release()

    def _run(
        self,
        handle: ProcessHandle,
        pid: int,
        timeout: float,
        cancel: threading.Event,
        start: float,
    ) -> KillResult:
        try:
            alive = self._probe(handle)
        except OSError as exc:
            return self._failed(
                self._chain(SignalSendError(pid, f"could not check PID {pid}: {exc}"), exc),
                start,
            )
        if not alive:
            return self._failed(NotRunningError(pid, f"PID {pid} is not running"), start)

        if cancel.is_set():
            return self._cancelled(pid, start)

        exact = handle.distinguishes_signals
        try:
            handle.signal(SignalKind.GRACEFUL)
        except ProcessLookupError:
            return self._exited(pid, start, exact, "exited before the graceful signal")
        except OSError as exc:
            logger.error("Graceful signal to %d rejected: %s", pid, exc)
            return self._failed(
                self._chain(SignalSendError(pid, f"graceful signal to PID {pid} failed: {exc}"), exc),
                start,
            )

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return self._escalate(handle, pid, start, exact)
            if cancel.wait(min(self.poll_interval, remaining)):
                return self._cancelled(pid, start)
            if not self._probe_quiet(handle):
                return self._exited(pid, start, exact, "exited gracefully")

    def _escalate(self, handle: ProcessHandle, pid: int, start: float, exact: bool) -> KillResult:
        # The target may have exited between the last poll and the deadline
        if not self._probe_quiet(handle):
            return self._exited(pid, start, exact, "exited at the grace deadline")

        logger.info("PID %d ignored the graceful signal, forcing", pid)
        try:
            handle.signal(SignalKind.FORCED)
        except ProcessLookupError:
            return self._exited(pid, start, exact, "exited before the forced signal")
        except OSError as exc:
            logger.error("Forced signal to %d rejected: %s", pid, exc)
            return self._failed(
                self._chain(SignalSendError(pid, f"forced signal to PID {pid} failed: {exc}"), exc),
                start,
                exact,
            )

        time.sleep(self.settle_time)
        if self._probe_quiet(handle):
            message = f"PID {pid} is still running after the forced signal"
            logger.error(message)
            return self._result(False, KillMethod.FORCED, message, start, exact)

        logger.info("PID %d force-terminated", pid)
        return self._result(True, KillMethod.FORCED, f"PID {pid} was force-terminated", start, exact)

    @staticmethod
    def _probe(handle: ProcessHandle) -> bool:
        try:
            handle.signal(SignalKind.PROBE)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True  # Exists but owned by someone else
        return True

    def _probe_quiet(self, handle: ProcessHandle) -> bool:
        """Probe that reads any unexpected error as still running."""
        try:
            return self._probe(handle)
        except OSError as exc:
            logger.debug("Liveness probe for %d failed: %s", handle.pid, exc)
            return True

    @staticmethod
    def _chain(error: TerminationError, cause: BaseException) -> TerminationError:
        error.__cause__ = cause
        return error

    def _exited(self, pid: int, start: float, exact: bool, how: str) -> KillResult:
        logger.info("PID %d %s", pid, how)
        return self._result(True, KillMethod.GRACEFUL, f"PID {pid} {how}", start, exact)

    def _cancelled(self, pid: int, start: float) -> KillResult:
        logger.info("Termination of PID %d cancelled", pid)
        return self._failed(TerminationCancelled(pid, "operation cancelled"), start)

    def _failed(self, error: TerminationError, start: float, exact: bool = True) -> KillResult:
        return self._result(False, KillMethod.FAILED, str(error), start, exact, error)

    @staticmethod
    def _result(
        success: bool,
        method: KillMethod,
        message: str,
        start: float,
        exact: bool = True,
        error: Exception | None = None,
    ) -> KillResult:
        if not exact and method is not KillMethod.FAILED:
            message += _SINGLE_PRIMITIVE_NOTE
        return KillResult(
            success=success,
            method=method,
            message=message,
            duration=time.monotonic() - start,
            error=error,
            exact_method=exact,
        )
