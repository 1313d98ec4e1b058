"""Exception hierarchy for portchaser."""


class PortChaserError(Exception):
    """Base class for all portchaser errors."""


class TerminationError(PortChaserError):
    """A termination attempt did not proceed."""

    def __init__(self, pid: int, message: str) -> None:
        super().__init__(message)
        self.pid = pid


class ProtectedProcessError(TerminationError):
    """Refused by the system-process protection policy. No signal was sent."""


class InvalidPidError(TerminationError):
    """The pid cannot name a real process (zero or negative)."""


class NotRunningError(TerminationError):
    """The target was not running when checked."""


class SignalSendError(TerminationError):
    """The operating system rejected a signal."""


class TerminationCancelled(TerminationError):
    """The caller cancelled while waiting for the process to exit."""


class PortNotFoundError(PortChaserError):
    """No listening entry exists for the requested port."""

    def __init__(self, port: int) -> None:
        super().__init__(f"port {port} not found")
        self.port = port


class HistoryError(PortChaserError):
    """The kill-history store could not be opened or queried."""
