"""Background enrichment of scanned ports and the cache that carries it between scans."""

import logging
import re
import subprocess
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Iterable

import psutil

from portchaser.models import ContainerInfo, PortEntry

logger = logging.getLogger(__name__)

# Case-insensitive fragments that mark a container-runtime command line
CONTAINER_KEYWORDS = ("docker", "containerd", "kubectl", "k8s", "/docker/", "/containerd/")

DOCKER_PS_COMMAND = (
    "docker",
    "ps",
    "--format",
    "{{.ID}}\t{{.Names}}\t{{.Image}}\t{{.Ports}}",
)

# "0.0.0.0:8080->80/tcp", ":::8080->80/tcp", "0.0.0.0:8000-8001->8000-8001/tcp"
_PUBLISHED_PORT = re.compile(r":(\d+)(?:-(\d+))?->")


def is_container_command(command: str) -> bool:
    """Best-effort guess that a command line belongs to a container runtime."""
    lowered = command.lower()
    return any(keyword in lowered for keyword in CONTAINER_KEYWORDS)


@dataclass(slots=True, frozen=True)
class ProcessDetails:
    """What the process table knows about one pid."""

    command: str
    username: str


def read_process(pid: int) -> ProcessDetails:
    """
    Read the full command line and owner of ``pid`` from the process table.

    Raises psutil.NoSuchProcess, psutil.AccessDenied or psutil.ZombieProcess
    when the process cannot be inspected.
    """
    proc = psutil.Process(pid)
    with proc.oneshot():
        cmdline = proc.cmdline()
        command = " ".join(cmdline) if cmdline else proc.exe()
        try:
            username = proc.username()
        except psutil.AccessDenied:
            username = ""
    return ProcessDetails(command=command, username=username)


@dataclass(slots=True, frozen=True)
class _CacheSlot:
    entry: PortEntry
    stored_at: float


class ScanCache:
    """
    Enriched entries keyed by port number.

    The lock covers a single dict operation, so a long enrichment pass never
    blocks a concurrent scan and a reader never sees a half-written slot.
    Entries older than ``ttl`` seconds are ignored and removed by ``prune``.
    """

    def __init__(self, ttl: float | None = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._slots: dict[int, _CacheSlot] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)

    def __contains__(self, port: object) -> bool:
        return isinstance(port, int) and self.get(port) is not None

    def put(self, entry: PortEntry) -> None:
        """Store ``entry`` under its port, replacing any older slot."""
        slot = _CacheSlot(entry=entry, stored_at=self._clock())
        with self._lock:
            self._slots[entry.port] = slot

    def get(self, port: int) -> PortEntry | None:
        """Cached entry for ``port`` unless missing or expired."""
        with self._lock:
            slot = self._slots.get(port)
        if slot is None or self._expired(slot):
            return None
        return slot.entry

    def merge(self, entries: Iterable[PortEntry]) -> list[PortEntry]:
        """
        Substitute cached enriched entries for fresh bare ones.

        A cached entry is used only while the same pid still owns the port;
        after a restart the fresh bare entry wins until it is enriched again.
        """
        merged = []
        for entry in entries:
            cached = self.get(entry.port)
            if cached is not None and cached.pid == entry.pid:
                merged.append(cached)
            else:
                merged.append(entry)
        return merged

    def prune(self) -> int:
        """Drop expired slots. Returns how many were removed."""
        if self.ttl is None:
            return 0
        with self._lock:
            stale = [port for port, slot in self._slots.items() if self._expired(slot)]
            for port in stale:
                del self._slots[port]
        if stale:
            logger.debug("Evicted %d stale cache entries", len(stale))
        return len(stale)

    def clear(self) -> None:
        """Drop every slot."""
        with self._lock:
            self._slots.clear()

    def _expired(self, slot: _CacheSlot) -> bool:
        return self.ttl is not None and self._clock() - slot.stored_at > self.ttl


class ContainerResolver:
    """Maps published host ports to containers using ``docker ps``."""

    def __init__(self, command: tuple[str, ...] = DOCKER_PS_COMMAND, timeout: float = 3.0) -> None:
        self.command = command
        self.timeout = timeout

    def published_ports(self) -> dict[int, ContainerInfo]:
        """Return host port -> container. Empty when docker is unavailable."""
        try:
            result = subprocess.run(
                self.command,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=True,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("Container lookup unavailable: %s", exc)
            return {}
        return parse_docker_ps(result.stdout)


def parse_docker_ps(output: str) -> dict[int, ContainerInfo]:
    """Map published host ports to containers from ``docker ps --format`` output."""
    ports: dict[int, ContainerInfo] = {}
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 4:
            continue
        container_id, name, image, published = parts[:4]
        info = ContainerInfo(container_id=container_id, container_name=name, image_name=image)
        for match in _PUBLISHED_PORT.finditer(published):
            first = int(match.group(1))
            last = int(match.group(2)) if match.group(2) else first
            for port in range(first, last + 1):
                ports.setdefault(port, info)
    return ports


class EnrichmentWorker:
    """Attributes process and container metadata to quick-scan entries."""

    def __init__(
        self,
        lookup: Callable[[int], ProcessDetails] = read_process,
        resolver: ContainerResolver | None = None,
    ) -> None:
        self._lookup = lookup
        self._resolver = resolver

    def enrich(
        self,
        entries: Iterable[PortEntry],
        cache: ScanCache,
        stop: threading.Event | None = None,
    ) -> int:
        """
        Enrich every entry with a known pid and write it to ``cache``.

        A failed lookup skips that entry only. Returns the number of entries
        written.
        """
        containers: dict[int, ContainerInfo] | None = None
        written = 0

        for entry in entries:
            if stop is not None and stop.is_set():
                logger.debug("Enrichment stopped after %d entries", written)
                break
            if entry.pid <= 0:
                continue

            try:
                details = self._lookup(entry.pid)
            except (psutil.Error, OSError) as exc:
                logger.debug("Skipping enrichment of port %d (pid %d): %s", entry.port, entry.pid, exc)
                continue

            enriched = self.apply(entry, details)
            if enriched.is_docker and self._resolver is not None:
                if containers is None:
                    containers = self._resolver.published_ports()
                info = containers.get(entry.port)
                if info is not None:
                    enriched = replace(
                        enriched,
                        container_id=info.container_id,
                        container_name=info.container_name,
                        image_name=info.image_name,
                    )

            cache.put(enriched)
            written += 1

        return written

    @staticmethod
    def apply(entry: PortEntry, details: ProcessDetails) -> PortEntry:
        """Return a copy of ``entry`` carrying the looked-up details."""
        command = details.command or entry.command
        user = entry.user
        if user in ("", "unknown") and details.username:
            user = details.username
        return replace(
            entry,
            command=command,
            user=user,
            is_docker=is_container_command(command),
        )
