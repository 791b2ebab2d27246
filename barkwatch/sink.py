"""Detection sinks. Each sink serializes its own writes."""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from barkwatch.models import BarkwatchError, DetectionEvent

_LOG = logging.getLogger("barkwatch.sink")

SCHEMA = """
CREATE TABLE IF NOT EXISTS detections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    confidence REAL NOT NULL,
    duration REAL,
    source TEXT NOT NULL,
    model_used TEXT,
    audio_features TEXT,
    ensemble_info TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
)
"""


class SinkError(BarkwatchError):
    """Raised when a detection cannot be persisted."""

    kind = "SinkError"


class DetectionSink(ABC):
    @abstractmethod
    def record(self, event: DetectionEvent) -> int:
        """Persist ``event`` and return its record id; raises SinkError."""

    def close(self) -> None:
        pass


class MemoryDetectionSink(DetectionSink):
    """Keeps events in a list; used by embedders and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[DetectionEvent] = []

    def record(self, event: DetectionEvent) -> int:
        with self._lock:
            self.events.append(event)
            return len(self.events)


class SqliteDetectionSink(DetectionSink):
    """Store detections in the ``detections`` table of a SQLite database."""

    def __init__(self, path: str | Path) -> None:
        self.path = str(path) if str(path) == ":memory:" else str(Path(path).expanduser())
        self._lock = threading.Lock()
        try:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._conn: sqlite3.Connection | None = sqlite3.connect(self.path, check_same_thread=False)
            with self._conn:
                self._conn.execute(SCHEMA)
        except (OSError, sqlite3.Error) as exc:
            raise SinkError(f"cannot open detection database {self.path}: {exc}") from exc

    def record(self, event: DetectionEvent) -> int:
        row = (
            event.timestamp.isoformat(),
            float(event.confidence),
            event.duration_offset_seconds,
            event.source,
            event.model_used,
            json.dumps(event.features),
            json.dumps(event.ensemble_info) if event.ensemble_info is not None else None,
        )
        with self._lock:
            if self._conn is None:
                raise SinkError("detection database is closed")
            try:
                with self._conn:
                    cursor = self._conn.execute(
                        "INSERT INTO detections "
                        "(timestamp, confidence, duration, source, model_used, audio_features, ensemble_info) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?)",
                        row,
                    )
            except sqlite3.Error as exc:
                raise SinkError(f"failed to store detection: {exc}") from exc
        record_id = cursor.lastrowid
        _LOG.debug("stored detection id=%s", record_id)
        return int(record_id)

    def fetch_all(self) -> list[dict]:
        with self._lock:
            if self._conn is None:
                raise SinkError("detection database is closed")
            cursor = self._conn.execute(
                "SELECT id, timestamp, confidence, duration, source, model_used, audio_features, ensemble_info "
                "FROM detections ORDER BY id"
            )
            columns = [column[0] for column in cursor.description]
            rows = cursor.fetchall()
        return [dict(zip(columns, row)) for row in rows]

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
