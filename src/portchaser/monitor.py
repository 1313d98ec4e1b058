"""Background scan loop for portchaser."""

import logging
import threading
from queue import Queue

from portchaser.models import PortEntry
from portchaser.scanner import ProgressiveScanner

logger = logging.getLogger(__name__)


class PortMonitor:
    """
    Drives a ProgressiveScanner from a daemon thread.

    Scans whenever the scanner says a rescan is due, or when ``refresh()``
    asks for one, and pushes each port list to a thread-safe Queue. A failed
    scan is logged and the loop keeps running.
    """

    def __init__(
        self,
        update_queue: Queue[list[PortEntry]],
        scanner: ProgressiveScanner,
        poll_rate: float = 0.5,
    ) -> None:
        """
        Initialize the PortMonitor.

        Args:
            update_queue: Thread-safe queue to push port lists to.
            scanner: Scanner to drive.
            poll_rate: How often to ask the scanner whether a rescan is due (seconds).
        """
        self._queue = update_queue
        self._scanner = scanner
        self._poll_rate = poll_rate
        self._stop_event = threading.Event()
        self._refresh_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def poll_rate(self) -> float:
        """Get the current poll rate in seconds."""
        return self._poll_rate

    @poll_rate.setter
    def poll_rate(self, value: float) -> None:
        """Set the poll rate in seconds."""
        self._poll_rate = max(0.1, value)  # Minimum 0.1 seconds

    @property
    def is_running(self) -> bool:
        """Check if the monitor thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the monitoring thread."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="PortMonitor",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop the monitoring thread and wait for it to exit."""
        self._stop_event.set()
        self._refresh_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def refresh(self) -> None:
        """Scan on the next loop iteration regardless of the rescan interval."""
        self._refresh_event.set()

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            if self._refresh_event.is_set() or self._scanner.should_rescan():
                self._refresh_event.clear()
                try:
                    self._queue.put(self._scanner.scan())
                except Exception:
                    logger.exception("Port scan failed")

            # Wake early on refresh or stop
            self._refresh_event.wait(timeout=self._poll_rate)
