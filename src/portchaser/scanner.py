"""Port discovery: a quick synchronous scan refined by background enrichment."""

import logging
import socket
import subprocess
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Iterable

from portchaser.config import ScanConfig
from portchaser.enrichment import ContainerResolver, EnrichmentWorker, ScanCache
from portchaser.errors import PortNotFoundError
from portchaser.models import PortEntry

logger = logging.getLogger(__name__)

LSOF_COMMAND = ("lsof", "-i", "-P", "-n", "-sTCP:LISTEN")

# Common development and service ports probed when lsof is unavailable
FALLBACK_PORTS = (
    # Web and app servers
    80, 443, 8080, 8081, 8000, 8001, 8443,
    3000, 3001, 3002, 4200, 4201, 5173, 5174, 4173,
    5000, 5001, 5002, 4000, 4001, 9000, 9001, 8888, 8889,
    # Databases
    3306, 5432, 5433, 1433, 1434, 1521,
    27017, 27018, 27019, 6379, 6380, 9042, 7474,
    # Search and tracing
    9200, 9300, 8983, 6831, 6832,
    # Message brokers
    5672, 15672, 9092, 9093, 9094, 1883, 8883, 61616,
    # Infrastructure
    2375, 2376, 6443, 6444, 8200, 8500, 8501, 8600,
    5050, 8300, 4002, 4222, 8201,
    # Observability and RPC
    9090, 9091, 4318, 4319, 9418, 16686,
    50051, 50052, 7000, 7001, 8761,
    5858, 8989, 4040, 15601, 9876, 8082, 8083, 8084,
)

BACKGROUND_PROCESS_FRAGMENTS = (
    "rapportd", "identitysd", "controlcenter", "controlce",
    "google", "chrome", "safari", "firefox",
    "spotlight", "helper", "daemon",
    "mdnsresponder", "netbiosd", "distnoted",
    "launchd", "kernel_task", "syslogd",
    "com.apple.", "_",
)

SYSTEM_USERS = frozenset({
    "root", "daemon", "_spotlight", "nobody", "_mDNSResponder",
    "sys", "bin", "_uucp", "_lp", "_softwareupdate",
})

DEVELOPER_PORTS = frozenset({80, 443, 3000, 4200, 5000, 5432, 6379, 8000, 8080, 9090, 27017})


def parse_lsof_line(line: str) -> PortEntry | None:
    """Parse one line of ``lsof -i -P -n`` output. Returns None for lines to skip."""
    if line.startswith("COMMAND"):
        return None
    fields = line.split()
    if len(fields) < 9:
        return None

    host, sep, port_text = fields[8].rpartition(":")
    if not sep or not host or port_text == "*":
        return None
    port_text = port_text.removesuffix("(LISTEN)").strip()
    try:
        port = int(port_text)
    except ValueError:
        return None

    try:
        pid = int(fields[1])
    except ValueError:
        pid = 0

    return PortEntry(
        port=port,
        process_name=fields[0],
        pid=pid,
        user=fields[2],
        command=fields[0],
        is_system=port < 1024,
    )


def is_noise(entry: PortEntry) -> bool:
    """
    Heuristic filter for background and system listeners.

    Developer ports and unprivileged ports are always kept; otherwise an
    entry is noise when its process name, user or numeric user marks it as
    a system service.
    """
    if entry.port in DEVELOPER_PORTS or entry.port >= 1024:
        return False

    name = entry.process_name.lower()
    if any(fragment in name for fragment in BACKGROUND_PROCESS_FRAGMENTS):
        return True
    if entry.user in SYSTEM_USERS:
        return True
    return entry.user[:1].isdigit()


def sort_by_port(entries: Iterable[PortEntry]) -> list[PortEntry]:
    """Ascending port order."""
    return sorted(entries, key=lambda e: e.port)


def sort_by_common_port(entries: Iterable[PortEntry]) -> list[PortEntry]:
    """Common web ports first, each group in port order."""
    return sorted(entries, key=lambda e: (not e.is_common_port, e.port))


@dataclass(slots=True)
class ScanResult:
    """A scan snapshot with convenience views."""

    ports: list[PortEntry]
    duration: float = 0.0

    @property
    def count(self) -> int:
        """Number of ports in the snapshot."""
        return len(self.ports)

    @property
    def has_docker(self) -> bool:
        """True if any port belongs to a container runtime."""
        return any(p.is_docker for p in self.ports)

    def filtered(self, predicate: Callable[[PortEntry], bool]) -> list[PortEntry]:
        """Ports matching ``predicate``, in snapshot order."""
        return [p for p in self.ports if predicate(p)]

    def common_ports(self) -> list[PortEntry]:
        """Well-known web ports."""
        return self.filtered(lambda p: p.is_common_port)

    def docker_ports(self) -> list[PortEntry]:
        """Ports owned by container processes."""
        return self.filtered(lambda p: p.is_docker)

    def recommended_ports(self) -> list[PortEntry]:
        """Ports killed often enough to suggest first."""
        return self.filtered(lambda p: p.is_recommended)

    def system_ports(self) -> list[PortEntry]:
        """Privileged ports below 1024."""
        return self.filtered(lambda p: p.is_system_port)


class QuickScanner:
    """
    Synchronous, low-latency enumeration of listening ports.

    Runs lsof and parses its table. When lsof is missing or fails, probes a
    fixed catalog of ports over TCP instead, bounded by an overall deadline.
    """

    def __init__(
        self,
        command: tuple[str, ...] | None = LSOF_COMMAND,
        catalog: Iterable[int] = FALLBACK_PORTS,
        host: str = "127.0.0.1",
        command_timeout: float = 5.0,
        probe_timeout: float = 0.02,
        fallback_deadline: float = 1.0,
    ) -> None:
        self.command = command
        self.catalog = tuple(dict.fromkeys(catalog))
        self.host = host
        self.command_timeout = command_timeout
        self.probe_timeout = probe_timeout
        self.fallback_deadline = fallback_deadline

    def scan(self) -> list[PortEntry]:
        try:
            output = self._run_command()
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("Listing command unavailable (%s), probing port catalog", exc)
            return self.probe_catalog()
        return self.parse_output(output)

    def _run_command(self) -> str:
        if not self.command:
            raise FileNotFoundError("no listing command configured")
        result = subprocess.run(
            self.command,
            capture_output=True,
            text=True,
            timeout=self.command_timeout,
            check=True,
        )
        return result.stdout

    def parse_output(self, output: str) -> list[PortEntry]:
        """Parse lsof output, dropping noise and duplicate ports."""
        entries: list[PortEntry] = []
        seen: set[int] = set()
        for line in output.splitlines():
            entry = parse_lsof_line(line)
            if entry is None or is_noise(entry) or entry.port in seen:
                continue
            seen.add(entry.port)
            entries.append(entry)
        return entries

    def probe_catalog(self) -> list[PortEntry]:
        """TCP-connect to each catalog port until the overall deadline."""
        entries: list[PortEntry] = []
        deadline = time.monotonic() + self.fallback_deadline
        for port in self.catalog:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.debug("Fallback probe deadline reached before port %d", port)
                break
            if self._accepts(port, min(self.probe_timeout, remaining)):
                entries.append(PortEntry(port=port, is_system=port < 1024))
        return entries

    def _accepts(self, port: int, timeout: float) -> bool:
        try:
            with socket.create_connection((self.host, port), timeout=timeout):
                return True
        except OSError:
            return False


@dataclass
class ScanState:
    """Scan state shared between a ProgressiveScanner and its enrichment tasks."""

    cache: ScanCache = field(default_factory=ScanCache)
    last_scan_time: float | None = None  # time.monotonic() of the last scan
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def mark_scanned(self) -> None:
        """Record that a scan just completed."""
        with self._lock:
            self.last_scan_time = time.monotonic()

    def seconds_since_scan(self) -> float | None:
        """Seconds since the last scan, or None before the first one."""
        with self._lock:
            if self.last_scan_time is None:
                return None
            return time.monotonic() - self.last_scan_time


class ProgressiveScanner:
    """
    Quick scan now, better data on the next scan.

    ``scan()`` returns quick-scan results immediately and enriches the same
    batch in the background. Enriched entries land in the ScanCache and
    replace bare ones on later scans.
    """

    def __init__(
        self,
        quick_scanner: QuickScanner | None = None,
        worker: EnrichmentWorker | None = None,
        state: ScanState | None = None,
        scan_interval: float = 3.0,
        max_workers: int = 2,
    ) -> None:
        """
        Initialize the ProgressiveScanner.

        Args:
            quick_scanner: Source of bare entries.
            worker: Enriches entries in the background.
            state: Last-scan timestamp and enrichment cache.
            scan_interval: Minimum seconds between scans for ``should_rescan``.
            max_workers: Enrichment passes that may run at once.
        """
        self._quick = quick_scanner or QuickScanner()
        self._worker = worker or EnrichmentWorker()
        self.state = state or ScanState()
        self.scan_interval = scan_interval
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="portchaser-enrich")
        self._stop = threading.Event()
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_config(cls, config: ScanConfig) -> "ProgressiveScanner":
        """Build a scanner with lsof, process and container lookups wired from ``config``."""
        quick = QuickScanner(
            command_timeout=config.command_timeout,
            probe_timeout=config.probe_timeout,
            fallback_deadline=config.fallback_deadline,
        )
        resolver = ContainerResolver() if config.resolve_containers else None
        return cls(
            quick_scanner=quick,
            worker=EnrichmentWorker(resolver=resolver),
            state=ScanState(cache=ScanCache(ttl=config.cache_ttl)),
            scan_interval=config.scan_interval,
        )

    def scan(self) -> list[PortEntry]:
        """
        Quick-scan now and return the batch merged with cached details.

        Enrichment of this batch starts in the background; its results show
        up on the next call.
        """
        bare = self._quick.scan()
        merged = self.state.cache.merge(bare)
        self.state.mark_scanned()
        self.state.cache.prune()
        self._launch_enrichment(bare)
        return merged

    def scan_result(self) -> ScanResult:
        """Scan and wrap the result with its duration."""
        start = time.monotonic()
        ports = self.scan()
        return ScanResult(ports=ports, duration=time.monotonic() - start)

    def scan_by_port(self, port: int) -> PortEntry:
        """Scan and return the entry for ``port``. Raises PortNotFoundError."""
        for entry in self.scan():
            if entry.port == port:
                return entry
        raise PortNotFoundError(port)

    def should_rescan(self) -> bool:
        """True before the first scan or once ``scan_interval`` has elapsed."""
        elapsed = self.state.seconds_since_scan()
        return elapsed is None or elapsed >= self.scan_interval

    def _launch_enrichment(self, batch: list[PortEntry]) -> None:
        with self._pending_lock:
            if self._closed:
                logger.debug("Scanner shut down, skipping enrichment")
                return
            future = self._executor.submit(self._worker.enrich, batch, self.state.cache, self._stop)
            self._pending.add(future)
        future.add_done_callback(self._enrichment_done)

    def _enrichment_done(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Enrichment pass failed: %s", exc, exc_info=exc)

    def wait_for_enrichment(self, timeout: float | None = None) -> bool:
        """Block until in-flight enrichment finishes. False on timeout."""
        with self._pending_lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, timeout: float | None = 5.0) -> None:
        """Stop enrichment and release worker threads."""
        with self._pending_lock:
            if self._closed:
                return
            self._closed = True
            pending = set(self._pending)
        self._stop.set()
        self._executor.shutdown(wait=False, cancel_futures=True)
        if pending:
            wait(pending, timeout=timeout)
