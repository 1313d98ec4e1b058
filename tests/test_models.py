"""Tests for portchaser data models."""

from datetime import datetime

import pytest

from portchaser.models import HistoryEntry, KillMethod, KillResult, PortEntry


def test_port_entry_defaults():
    """A bare entry has an unknown owner."""
    entry = PortEntry(port=3000)

    assert entry.pid == 0
    assert entry.process_name == "unknown"
    assert entry.user == "unknown"
    assert entry.command == "unknown"
    assert entry.is_docker is False
    assert entry.container_id == ""
    assert entry.kill_count == 0
    assert entry.last_killed is None


def test_port_entry_is_frozen():
    entry = PortEntry(port=3000, pid=123)
    with pytest.raises(AttributeError):
        entry.pid = 999


def test_port_entry_uses_slots():
    entry = PortEntry(port=3000)
    assert not hasattr(entry, "__dict__")


@pytest.mark.parametrize("port,expected", [(80, True), (443, True), (8080, True), (8081, False), (22, False)])
def test_is_common_port(port, expected):
    assert PortEntry(port=port).is_common_port is expected


def test_is_recommended():
    assert PortEntry(port=3000, kill_count=3).is_recommended is True
    assert PortEntry(port=3000, kill_count=2).is_recommended is False


def test_should_display_warning():
    assert PortEntry(port=3000, pid=50).should_display_warning is True
    assert PortEntry(port=3000, pid=5000, is_system=True).should_display_warning is True
    assert PortEntry(port=3000, pid=5000).should_display_warning is False


@pytest.mark.parametrize("port,expected", [(0, True), (1023, True), (1024, False), (65535, False)])
def test_is_system_port(port, expected):
    assert PortEntry(port=port).is_system_port is expected


def test_kill_result_defaults():
    result = KillResult(success=True, method=KillMethod.GRACEFUL, message="done")
    assert result.duration == 0.0
    assert result.error is None
    assert result.exact_method is True


def test_kill_method_values():
    assert [m.value for m in KillMethod] == ["graceful", "forced", "failed"]


def test_history_entry_creation():
    when = datetime(2026, 5, 1, 10, 30)
    entry = HistoryEntry(port=3000, process_name="node", pid=42, command="node app.js", killed_at=when)
    assert entry.id is None
    assert entry.killed_at == when
