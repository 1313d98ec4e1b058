"""SQLite-backed kill history."""

import logging
import os
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable

from portchaser.errors import HistoryError
from portchaser.models import HistoryEntry, PortEntry

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    port_number INTEGER NOT NULL,
    process_name TEXT NOT NULL,
    pid INTEGER NOT NULL,
    command TEXT,
    killed_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_history_port ON history(port_number);
CREATE INDEX IF NOT EXISTS idx_history_killed_at ON history(killed_at);
"""


class HistoryStore:
    """
    Records successful terminations and answers per-port questions about them.

    Timestamps are stored as ISO-8601 strings in local time.
    """

    def __init__(self, path: Path | str, timeout: float = 0.05) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        try:
            if str(self.path) != ":memory:":
                self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.path), timeout=timeout, check_same_thread=False)
            self._conn.executescript(_SCHEMA)
        except (OSError, sqlite3.Error) as exc:
            raise HistoryError(f"cannot open history at {self.path}: {exc}") from exc

        if str(self.path) != ":memory:":
            try:
                self._conn.execute("PRAGMA journal_mode=WAL")
            except sqlite3.Error as exc:
                logger.warning("WAL mode unavailable for %s: %s", self.path, exc)
            try:
                os.chmod(self.path, 0o600)
            except OSError as exc:
                logger.warning("Could not restrict permissions on %s: %s", self.path, exc)

    def record_kill(self, entry: PortEntry, killed_at: datetime | None = None) -> HistoryEntry:
        """Store a successful termination and return the stored row."""
        killed_at = killed_at or datetime.now()
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute(
                        "INSERT INTO history (port_number, process_name, pid, command, killed_at)"
                        " VALUES (?, ?, ?, ?, ?)",
                        (entry.port, entry.process_name, entry.pid, entry.command, killed_at.isoformat()),
                    )
            except sqlite3.Error as exc:
                raise HistoryError(f"cannot record kill of port {entry.port}: {exc}") from exc
        return HistoryEntry(
            id=cursor.lastrowid,
            port=entry.port,
            process_name=entry.process_name,
            pid=entry.pid,
            command=entry.command,
            killed_at=killed_at,
        )

    def get_history(self, limit: int = 50) -> list[HistoryEntry]:
        """Most recent kills first."""
        rows = self._query(
            "SELECT id, port_number, process_name, pid, command, killed_at"
            " FROM history ORDER BY killed_at DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [
            HistoryEntry(
                id=row[0],
                port=row[1],
                process_name=row[2],
                pid=row[3],
                command=row[4] or "",
                killed_at=datetime.fromisoformat(row[5]),
            )
            for row in rows
        ]

    def get_kill_count(self, port: int, days: int = 30) -> int:
        """Kills recorded for ``port`` in the last ``days`` days."""
        since = (datetime.now() - timedelta(days=days)).isoformat()
        rows = self._query(
            "SELECT COUNT(*) FROM history WHERE port_number = ? AND killed_at >= ?",
            (port, since),
        )
        return rows[0][0]

    def get_last_kill_time(self, port: int) -> datetime | None:
        """When ``port`` was last freed, or None if never."""
        rows = self._query("SELECT MAX(killed_at) FROM history WHERE port_number = ?", (port,))
        value = rows[0][0]
        return datetime.fromisoformat(value) if value else None

    def annotate(self, entries: Iterable[PortEntry], days: int = 30) -> list[PortEntry]:
        """Fill kill_count and last_killed from history."""
        return [
            replace(
                entry,
                kill_count=self.get_kill_count(entry.port, days),
                last_killed=self.get_last_kill_time(entry.port),
            )
            for entry in entries
        ]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def _query(self, sql: str, params: tuple) -> list[tuple]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise HistoryError(f"history query failed: {exc}") from exc
