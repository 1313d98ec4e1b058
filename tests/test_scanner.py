"""Tests for the QuickScanner and scan helpers."""

import socket
import sys
import time

import pytest

from portchaser.models import PortEntry
from portchaser.scanner import (
    FALLBACK_PORTS,
    QuickScanner,
    ScanResult,
    is_noise,
    parse_lsof_line,
    sort_by_common_port,
    sort_by_port,
)

LSOF_OUTPUT = """\
COMMAND     PID     USER   FD   TYPE             DEVICE SIZE/OFF NODE NAME
node      12345      dev   23u  IPv4 0x1234567890abcd      0t0  TCP *:3000 (LISTEN)
node      12345      dev   24u  IPv6 0x1234567890abce      0t0  TCP [::1]:3000 (LISTEN)
python3   23456      dev    5u  IPv4 0x1234567890abcf      0t0  TCP 127.0.0.1:8080 (LISTEN)
postgres    345 postgres    7u  IPv6 0x1234567890abd0      0t0  TCP [::1]:5432 (LISTEN)
rapportd    501      dev    4u  IPv4 0x1234567890abd1      0t0  TCP *:49152 (LISTEN)
launchd       1     root   10u  IPv4 0x1234567890abd2      0t0  TCP *:22 (LISTEN)
cupsd       200     root    7u  IPv4 0x1234567890abd3      0t0  TCP 127.0.0.1:631 (LISTEN)
httpd       150     root    4u  IPv4 0x1234567890abd4      0t0  TCP *:80 (LISTEN)
weird       300      dev    4u  IPv4 0x1234567890abd5      0t0  TCP *:* (LISTEN)
truncated line
"""


@pytest.fixture
def listening_port():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind(("127.0.0.1", 0))
    server.listen(8)
    yield server.getsockname()[1]
    server.close()


@pytest.fixture
def closed_port():
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    return port


class TestParseLsofLine:
    def test_parses_listening_entry(self):
        entry = parse_lsof_line(
            "node      12345      dev   23u  IPv4 0x1234567890abcd      0t0  TCP *:3000 (LISTEN)"
        )
        assert entry == PortEntry(
            port=3000, process_name="node", pid=12345, user="dev", command="node", is_system=False
        )

    def test_parses_ipv6_name(self):
        entry = parse_lsof_line(
            "postgres    345 postgres    7u  IPv6 0x1234567890abd0      0t0  TCP [::1]:5432 (LISTEN)"
        )
        assert entry is not None
        assert entry.port == 5432

    def test_privileged_port_flagged_system(self):
        entry = parse_lsof_line("httpd 150 root 4u IPv4 0x1 0t0 TCP *:80 (LISTEN)")
        assert entry is not None
        assert entry.is_system is True

    @pytest.mark.parametrize(
        "line",
        [
            "COMMAND     PID   USER   FD   TYPE DEVICE SIZE/OFF NODE NAME",
            "truncated line",
            "weird 300 dev 4u IPv4 0x1 0t0 TCP *:* (LISTEN)",
            "weird 300 dev 4u IPv4 0x1 0t0 TCP *:http (LISTEN)",
            "weird 300 dev 4u IPv4 0x1 0t0 TCP noport (LISTEN)",
        ],
    )
    def test_skipped_lines(self, line):
        assert parse_lsof_line(line) is None

    def test_unparseable_pid_is_unknown(self):
        entry = parse_lsof_line("node abc dev 23u IPv4 0x1 0t0 TCP *:3000 (LISTEN)")
        assert entry is not None
        assert entry.pid == 0


class TestNoiseFilter:
    def test_denylisted_privileged_port_dropped(self):
        assert is_noise(PortEntry(port=22, process_name="launchd", user="root")) is True

    def test_system_user_dropped(self):
        assert is_noise(PortEntry(port=631, process_name="cupsd", user="root")) is True

    def test_numeric_user_dropped(self):
        assert is_noise(PortEntry(port=700, process_name="svc", user="501")) is True

    def test_allow_list_overrides_denylist(self):
        assert is_noise(PortEntry(port=80, process_name="httpd", user="root")) is False
        assert is_noise(PortEntry(port=5432, process_name="postgres_helper", user="_postgres")) is False

    def test_unprivileged_port_always_kept(self):
        assert is_noise(PortEntry(port=49152, process_name="rapportd", user="501")) is False

    def test_ordinary_privileged_listener_kept(self):
        assert is_noise(PortEntry(port=999, process_name="myapp", user="dev")) is False


class TestQuickScannerPrimary:
    def test_parse_output_filters_and_dedupes(self):
        entries = QuickScanner().parse_output(LSOF_OUTPUT)
        assert [e.port for e in entries] == [3000, 8080, 5432, 49152, 80]

    def test_scan_uses_command_output(self):
        script = f"import sys; sys.stdout.write({LSOF_OUTPUT!r})"
        scanner = QuickScanner(command=(sys.executable, "-c", script), catalog=())

        entries = scanner.scan()

        assert {e.port for e in entries} == {3000, 8080, 5432, 49152, 80}
        node = next(e for e in entries if e.port == 3000)
        assert node.pid == 12345
        assert node.user == "dev"


class TestQuickScannerFallback:
    def test_missing_command_probes_catalog(self, listening_port, closed_port):
        scanner = QuickScanner(
            command=("portchaser-no-such-lister",),
            catalog=(listening_port, closed_port),
            probe_timeout=0.2,
        )

        entries = scanner.scan()

        assert len(entries) == 1
        entry = entries[0]
        assert entry.port == listening_port
        assert entry.pid == 0
        assert entry.process_name == "unknown"

    def test_failing_command_probes_catalog(self, listening_port):
        scanner = QuickScanner(
            command=(sys.executable, "-c", "import sys; sys.exit(1)"),
            catalog=(listening_port,),
            probe_timeout=0.2,
        )
        assert [e.port for e in scanner.scan()] == [listening_port]

    def test_no_command_probes_catalog(self, listening_port):
        scanner = QuickScanner(command=None, catalog=(listening_port,), probe_timeout=0.2)
        assert [e.port for e in scanner.scan()] == [listening_port]

    def test_fallback_respects_overall_deadline(self):
        scanner = QuickScanner(command=None, catalog=range(20000, 30000), fallback_deadline=0.2)

        start = time.monotonic()
        scanner.scan()
        elapsed = time.monotonic() - start

        assert elapsed < 0.2 + scanner.probe_timeout + 0.1

    def test_catalog_is_deduplicated(self):
        scanner = QuickScanner(catalog=(80, 443, 80))
        assert scanner.catalog == (80, 443)

    def test_default_catalog_size(self):
        assert 70 <= len(set(FALLBACK_PORTS)) <= 90


class TestSorting:
    def test_sort_by_port(self):
        entries = [PortEntry(port=p) for p in (8080, 22, 3000)]
        assert [e.port for e in sort_by_port(entries)] == [22, 3000, 8080]

    def test_common_ports_first(self):
        entries = [PortEntry(port=p) for p in (9000, 8080, 22, 80)]
        assert [e.port for e in sort_by_common_port(entries)] == [80, 8080, 22, 9000]


class TestScanResult:
    def test_views(self):
        result = ScanResult(
            ports=[
                PortEntry(port=80, is_system=True),
                PortEntry(port=3000, is_docker=True),
                PortEntry(port=9000, kill_count=4),
            ]
        )
        assert result.count == 3
        assert result.has_docker is True
        assert [p.port for p in result.common_ports()] == [80, 3000]
        assert [p.port for p in result.docker_ports()] == [3000]
        assert [p.port for p in result.recommended_ports()] == [9000]
        assert [p.port for p in result.system_ports()] == [80]

    def test_empty(self):
        result = ScanResult(ports=[])
        assert result.count == 0
        assert result.has_docker is False
