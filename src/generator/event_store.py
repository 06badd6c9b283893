"""Event storage - the generator's durable record of every event it created.

An Event is created once, and afterwards only its processed flag changes:
False -> True exactly once, when the registry's confirmation arrives. The
transition is a conditional update so concurrent or repeated confirmations
cannot apply it twice.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Optional, Protocol

from src.core.ids import new_event_id
from src.core.models import ensure_tz, iso, utc_now


@dataclass
class Event:
    """Producer-side record of a generated event."""
    event_type: str
    service_name: str
    payload: str
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    is_processed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "eventType": self.event_type,
            "serviceName": self.service_name,
            "payload": self.payload,
            "createdAt": iso(self.created_at) if self.created_at else None,
            "processedAt": iso(self.processed_at) if self.processed_at else None,
            "isProcessed": self.is_processed,
        }


class EventStore(Protocol):
    """Interface for event persistence."""

    def save(self, event: Event) -> Event:
        """Persist a new event, assigning id/created_at when absent.

        An id that is already stored is rejected; stored events are never replaced.
        """
        ...

    def get(self, event_id: str) -> Optional[Event]:
        ...

    def mark_processed(self, event_id: str, processed_at: datetime) -> bool:
        """Set is_processed/processed_at unless already processed.

        Returns True only for the call that performed the transition.
        """
        ...

    def count(self) -> int:
        ...

    def count_by_processed(self, processed: bool) -> int:
        ...

    def list_by_processed(self, processed: bool) -> list[Event]:
        ...

    def list_all(self) -> list[Event]:
        ...

    def find_by_id_substring(self, text: str) -> list[Event]:
        ...


def _prepare(event: Event) -> Event:
    return replace(
        event,
        id=event.id or new_event_id(),
        created_at=ensure_tz(event.created_at) if event.created_at else utc_now(),
    )


class InMemoryEventStore:
    """In-memory implementation for dev mode and tests."""

    def __init__(self) -> None:
        self._events: dict[str, Event] = {}
        self._lock = threading.Lock()

    def save(self, event: Event) -> Event:
        stored = _prepare(event)
        with self._lock:
            if stored.id in self._events:
                raise ValueError(f"event {stored.id} already exists")
            self._events[stored.id] = stored
        return replace(stored)

    def get(self, event_id: str) -> Optional[Event]:
        with self._lock:
            e = self._events.get(event_id)
        return replace(e) if e else None

    def mark_processed(self, event_id: str, processed_at: datetime) -> bool:
        with self._lock:
            e = self._events.get(event_id)
            if e is None or e.is_processed:
                return False
            self._events[event_id] = replace(e, is_processed=True, processed_at=ensure_tz(processed_at))
            return True

    def count(self) -> int:
        with self._lock:
            return len(self._events)

    def count_by_processed(self, processed: bool) -> int:
        with self._lock:
            return sum(1 for e in self._events.values() if e.is_processed == processed)

    def list_by_processed(self, processed: bool) -> list[Event]:
        return [e for e in self.list_all() if e.is_processed == processed]

    def list_all(self) -> list[Event]:
        with self._lock:
            events = [replace(e) for e in self._events.values()]
        events.sort(key=lambda x: x.created_at)
        return events

    def find_by_id_substring(self, text: str) -> list[Event]:
        needle = text.strip().lower()
        return [e for e in self.list_all() if needle in e.id]


class PostgresEventStore:
    """PostgreSQL implementation for production.

    Requires a table with the following schema (see `ensure_schema`):

    CREATE TABLE IF NOT EXISTS generated_events (
        id UUID PRIMARY KEY,
        event_type VARCHAR(100) NOT NULL,
        service_name VARCHAR(100) NOT NULL,
        payload TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        processed_at TIMESTAMPTZ,
        is_processed BOOLEAN NOT NULL DEFAULT FALSE
    );
    CREATE INDEX IF NOT EXISTS idx_generated_events_is_processed ON generated_events(is_processed);
    """

    DDL = """
        CREATE TABLE IF NOT EXISTS generated_events (
            id UUID PRIMARY KEY,
            event_type VARCHAR(100) NOT NULL,
            service_name VARCHAR(100) NOT NULL,
            payload TEXT,
            created_at TIMESTAMPTZ NOT NULL,
            processed_at TIMESTAMPTZ,
            is_processed BOOLEAN NOT NULL DEFAULT FALSE
        );
        CREATE INDEX IF NOT EXISTS idx_generated_events_is_processed ON generated_events(is_processed);
    """

    _COLUMNS = "id, event_type, service_name, payload, created_at, processed_at, is_processed"

    def __init__(self, dsn: str, *, conn=None) -> None:
        self._dsn = dsn
        self._conn = conn
        self._lock = threading.Lock()

    def _get_conn(self):
        if self._conn is None:
            import psycopg2  # type: ignore
            self._conn = psycopg2.connect(self._dsn)
        return self._conn

    def _execute(self, sql: str, params: tuple = (), *, fetch: str | None = None, commit: bool = False):
        # psycopg2 connections are shared between threads; cursors are not.
        with self._lock:
            conn = self._get_conn()
            try:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    if fetch == "one":
                        result = cur.fetchone()
                    elif fetch == "all":
                        result = cur.fetchall()
                    else:
                        result = cur.rowcount
                if commit:
                    conn.commit()
                else:
                    conn.rollback()
                return result
            except Exception:
                conn.rollback()
                raise

    def ensure_schema(self) -> None:
        self._execute(self.DDL, commit=True)

    def save(self, event: Event) -> Event:
        stored = _prepare(event)
        self._execute(
            f"INSERT INTO generated_events ({self._COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s, %s)",
            (
                stored.id,
                stored.event_type,
                stored.service_name,
                stored.payload,
                stored.created_at,
                stored.processed_at,
                stored.is_processed,
            ),
            commit=True,
        )
        return stored

    def get(self, event_id: str) -> Optional[Event]:
        row = self._execute(
            f"SELECT {self._COLUMNS} FROM generated_events WHERE id = %s",
            (event_id,),
            fetch="one",
        )
        return self._row_to_event(row) if row else None

    def mark_processed(self, event_id: str, processed_at: datetime) -> bool:
        rowcount = self._execute(
            """
            UPDATE generated_events
               SET is_processed = TRUE, processed_at = %s
             WHERE id = %s AND is_processed = FALSE
            """,
            (ensure_tz(processed_at), event_id),
            commit=True,
        )
        return rowcount == 1

    def count(self) -> int:
        return int(self._execute("SELECT COUNT(*) FROM generated_events", fetch="one")[0])

    def count_by_processed(self, processed: bool) -> int:
        row = self._execute(
            "SELECT COUNT(*) FROM generated_events WHERE is_processed = %s",
            (processed,),
            fetch="one",
        )
        return int(row[0])

    def list_by_processed(self, processed: bool) -> list[Event]:
        rows = self._execute(
            f"SELECT {self._COLUMNS} FROM generated_events WHERE is_processed = %s ORDER BY created_at",
            (processed,),
            fetch="all",
        )
        return [self._row_to_event(r) for r in rows]

    def list_all(self) -> list[Event]:
        rows = self._execute(f"SELECT {self._COLUMNS} FROM generated_events ORDER BY created_at", fetch="all")
        return [self._row_to_event(r) for r in rows]

    def find_by_id_substring(self, text: str) -> list[Event]:
        rows = self._execute(
            f"SELECT {self._COLUMNS} FROM generated_events WHERE id::text LIKE %s ORDER BY created_at",
            (f"%{text.strip().lower()}%",),
            fetch="all",
        )
        return [self._row_to_event(r) for r in rows]

    def _row_to_event(self, row: tuple) -> Event:
        return Event(
            id=str(row[0]),
            event_type=row[1],
            service_name=row[2],
            payload=row[3],
            created_at=row[4],
            processed_at=row[5],
            is_processed=bool(row[6]),
        )
