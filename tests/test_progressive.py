"""Tests for the ProgressiveScanner: quick scan, background enrichment, cache merge."""

import logging
import subprocess
import sys
import threading
import time

import pytest

from portchaser.config import ScanConfig
from portchaser.enrichment import EnrichmentWorker, ProcessDetails
from portchaser.errors import PortNotFoundError
from portchaser.models import PortEntry
from portchaser.scanner import ProgressiveScanner, ScanResult, ScanState


class StubQuickScanner:
    """Returns a fixed batch of bare entries."""

    def __init__(self, entries: list[PortEntry]) -> None:
        self.entries = entries
        self.calls = 0

    def scan(self) -> list[PortEntry]:
        self.calls += 1
        return list(self.entries)


@pytest.fixture
def container_like_process():
    # The extra argv makes the command line look like a container shim
    child = subprocess.Popen(
        [sys.executable, "-c", "import time; time.sleep(30)", "containerd-shim", "-namespace", "moby"]
    )
    yield child
    child.kill()
    child.wait(timeout=5)


def make_scanner(entries, lookup=None, **kwargs) -> ProgressiveScanner:
    worker = EnrichmentWorker(lookup=lookup) if lookup else EnrichmentWorker()
    return ProgressiveScanner(quick_scanner=StubQuickScanner(entries), worker=worker, **kwargs)


class TestProgressiveRefinement:
    def test_next_scan_returns_enriched_entry(self, container_like_process):
        bare = PortEntry(port=18080, pid=container_like_process.pid, process_name="python", command="python")
        scanner = make_scanner([bare])
        try:
            first = scanner.scan()
            assert first == [bare]
            assert first[0].is_docker is False

            assert scanner.wait_for_enrichment(timeout=5.0)

            second = scanner.scan()
            assert second[0].is_docker is True
            assert "containerd-shim" in second[0].command
        finally:
            scanner.shutdown()

    def test_triggering_scan_returns_bare_entries(self):
        release = threading.Event()

        def slow_lookup(pid: int) -> ProcessDetails:
            release.wait(5.0)
            return ProcessDetails(command="/usr/bin/docker-proxy", username="root")

        scanner = make_scanner([PortEntry(port=8080, pid=4242)], lookup=slow_lookup)
        try:
            start = time.monotonic()
            first = scanner.scan()
            assert time.monotonic() - start < 0.5
            assert first[0].is_docker is False

            # A scan while enrichment is still running is not blocked by it
            assert scanner.scan()[0].is_docker is False

            release.set()
            assert scanner.wait_for_enrichment(timeout=5.0)
            assert scanner.scan()[0].is_docker is True
        finally:
            release.set()
            scanner.shutdown()

    def test_failed_lookups_keep_bare_entries(self):
        def lookup(pid: int) -> ProcessDetails:
            if pid == 1001:
                raise PermissionError("denied")
            return ProcessDetails(command="node server.js", username="dev")

        entries = [PortEntry(port=3000, pid=1001), PortEntry(port=3001, pid=1002)]
        scanner = make_scanner(entries, lookup=lookup)
        try:
            scanner.scan()
            assert scanner.wait_for_enrichment(timeout=5.0)
            merged = {e.port: e for e in scanner.scan()}

            assert merged[3000] == entries[0]
            assert merged[3001].command == "node server.js"
        finally:
            scanner.shutdown()

    def test_restarted_process_is_not_masked_by_cache(self):
        """A new pid on a cached port reports the new owner, then its own details."""
        quick = StubQuickScanner([PortEntry(port=3000, pid=1111)])
        scanner = ProgressiveScanner(
            quick_scanner=quick,
            worker=EnrichmentWorker(lookup=lambda pid: ProcessDetails(f"node server {pid}", "dev")),
        )
        try:
            scanner.scan()
            assert scanner.wait_for_enrichment(timeout=5.0)
            assert scanner.scan()[0].command == "node server 1111"
            assert scanner.wait_for_enrichment(timeout=5.0)

            quick.entries = [PortEntry(port=3000, pid=2222)]
            restarted = scanner.scan()[0]
            assert restarted.pid == 2222
            assert restarted.command == "unknown"

            assert scanner.wait_for_enrichment(timeout=5.0)
            refreshed = scanner.scan()[0]
            assert refreshed.pid == 2222
            assert refreshed.command == "node server 2222"
        finally:
            scanner.shutdown()

    def test_unexpected_enrichment_error_is_logged(self, caplog):
        def broken(pid: int) -> ProcessDetails:
            raise RuntimeError("boom")

        scanner = make_scanner([PortEntry(port=3000, pid=1001)], lookup=broken)
        try:
            with caplog.at_level(logging.ERROR, logger="portchaser.scanner"):
                scanner.scan()
                assert scanner.wait_for_enrichment(timeout=5.0)
                # Callbacks run right after the future completes
                deadline = time.monotonic() + 2.0
                while "Enrichment pass failed" not in caplog.text and time.monotonic() < deadline:
                    time.sleep(0.01)
            assert "Enrichment pass failed" in caplog.text
            assert scanner.scan() == [PortEntry(port=3000, pid=1001)]
        finally:
            scanner.shutdown()


class TestRescanThrottle:
    def test_should_rescan_before_first_scan(self):
        scanner = make_scanner([])
        try:
            assert scanner.should_rescan() is True
        finally:
            scanner.shutdown()

    def test_should_rescan_after_interval(self):
        scanner = make_scanner([], scan_interval=3.0)
        try:
            scanner.scan()
            assert scanner.should_rescan() is False

            scanner.state.last_scan_time = time.monotonic() - 3.0
            assert scanner.should_rescan() is True
        finally:
            scanner.shutdown()

    def test_independent_states(self):
        first = make_scanner([])
        second = make_scanner([])
        try:
            first.scan()
            assert first.should_rescan() is False
            assert second.should_rescan() is True
        finally:
            first.shutdown()
            second.shutdown()


class TestScanHelpers:
    def test_scan_by_port(self):
        scanner = make_scanner([PortEntry(port=3000), PortEntry(port=8080)])
        try:
            assert scanner.scan_by_port(8080).port == 8080
            with pytest.raises(PortNotFoundError):
                scanner.scan_by_port(9999)
        finally:
            scanner.shutdown()

    def test_scan_result(self):
        scanner = make_scanner([PortEntry(port=3000, is_docker=True)])
        try:
            result = scanner.scan_result()
            assert isinstance(result, ScanResult)
            assert result.count == 1
            assert result.has_docker is True
            assert result.duration >= 0.0
        finally:
            scanner.shutdown()

    def test_from_config(self):
        scanner = ProgressiveScanner.from_config(ScanConfig(scan_interval=1.5, cache_ttl=30.0))
        try:
            assert scanner.scan_interval == 1.5
            assert scanner.state.cache.ttl == 30.0
        finally:
            scanner.shutdown()

    def test_shared_state(self):
        state = ScanState()
        state.cache.put(PortEntry(port=3000, command="cached"))
        scanner = make_scanner([PortEntry(port=3000)], state=state)
        try:
            assert scanner.scan()[0].command == "cached"
            assert state.last_scan_time is not None
        finally:
            scanner.shutdown()


class TestShutdown:
    def test_shutdown_stops_enrichment_threads(self):
        release = threading.Event()

        def slow_lookup(pid: int) -> ProcessDetails:
            release.wait(0.2)
            return ProcessDetails(command="node", username="dev")

        entries = [PortEntry(port=3000 + i, pid=1000 + i) for i in range(20)]
        scanner = make_scanner(entries, lookup=slow_lookup)
        scanner.scan()

        start = time.monotonic()
        scanner.shutdown(timeout=2.0)
        assert time.monotonic() - start < 1.0

        deadline = time.monotonic() + 2.0
        while time.monotonic() < deadline:
            alive = [t for t in threading.enumerate() if t.name.startswith("portchaser-enrich")]
            if not alive:
                break
            time.sleep(0.05)
        assert not alive
        assert len(scanner.state.cache) < len(entries)

    def test_scan_after_shutdown_skips_enrichment(self):
        calls = []
        scanner = make_scanner(
            [PortEntry(port=3000, pid=1001)],
            lookup=lambda pid: calls.append(pid) or ProcessDetails("node", "dev"),
        )
        scanner.shutdown()
        scanner.shutdown()

        assert scanner.scan() == [PortEntry(port=3000, pid=1001)]
        assert scanner.wait_for_enrichment(timeout=1.0)
        assert calls == []
