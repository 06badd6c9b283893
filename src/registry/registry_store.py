"""Registry storage - one canonical registration per original event id.

Uniqueness of `original_event_id` is enforced by the store itself (a unique
constraint in PostgreSQL, a lock-guarded index in memory), so two consumers
racing on the same duplicate still produce a single row.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

from src.core.models import ensure_tz, iso


@dataclass(frozen=True)
class RegisteredEvent:
    """Registry-side record of an event. Immutable once stored."""
    id: str
    original_event_id: str
    event_type: str
    service_name: str
    payload: str
    created_at: datetime
    registered_at: datetime
    processed_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "originalEventId": self.original_event_id,
            "eventType": self.event_type,
            "serviceName": self.service_name,
            "payload": self.payload,
            "createdAt": iso(self.created_at),
            "registeredAt": iso(self.registered_at),
            "processedAt": iso(self.processed_at),
        }


SORTABLE_FIELDS = {"created_at", "registered_at", "processed_at", "event_type", "service_name"}
DISTINCT_FIELDS = {"event_type", "service_name"}


@dataclass(frozen=True)
class EventQuery:
    """Filters, sort and page for listing registered events."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    event_type: Optional[str] = None
    service_name: Optional[str] = None
    sort: str = "created_at"
    descending: bool = True
    page: int = 0
    size: int = 20

    def __post_init__(self) -> None:
        if self.sort not in SORTABLE_FIELDS:
            raise ValueError(f"sort must be one of {sorted(SORTABLE_FIELDS)}")
        if self.page < 0:
            raise ValueError("page must be >= 0")
        if self.size <= 0:
            raise ValueError("size must be > 0")

    def matches(self, e: RegisteredEvent) -> bool:
        if self.start is not None and e.created_at < ensure_tz(self.start):
            return False
        if self.end is not None and e.created_at > ensure_tz(self.end):
            return False
        if self.event_type and e.event_type != self.event_type:
            return False
        if self.service_name and e.service_name != self.service_name:
            return False
        return True


@dataclass(frozen=True)
class Page:
    items: list[RegisteredEvent]
    page: int
    size: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.size) if self.size else 0

    @property
    def has_next(self) -> bool:
        return self.page + 1 < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 0


class RegistryStore(Protocol):
    """Interface for registered event persistence."""

    def insert_if_absent(self, event: RegisteredEvent) -> tuple[RegisteredEvent, bool]:
        """Atomically insert unless `original_event_id` is taken.

        Returns (stored_row, created). When created is False the returned row
        is the one that already existed.
        """
        ...

    def get(self, registered_id: str) -> Optional[RegisteredEvent]:
        ...

    def get_by_original_id(self, original_event_id: str) -> Optional[RegisteredEvent]:
        ...

    def count(self) -> int:
        ...

    def list_all(self) -> list[RegisteredEvent]:
        ...

    def query(self, q: EventQuery) -> Page:
        ...

    def distinct_values(self, field: str) -> list[str]:
        ...

    def find_by_id_substring(self, text: str) -> list[RegisteredEvent]:
        ...

    def find_by_original_id_substring(self, text: str) -> list[RegisteredEvent]:
        ...


class InMemoryRegistryStore:
    """In-memory implementation for dev mode and tests."""

    def __init__(self) -> None:
        self._by_id: dict[str, RegisteredEvent] = {}
        self._by_original: dict[str, str] = {}
        self._lock = threading.Lock()

    def insert_if_absent(self, event: RegisteredEvent) -> tuple[RegisteredEvent, bool]:
        with self._lock:
            existing_id = self._by_original.get(event.original_event_id)
            if existing_id is not None:
                return self._by_id[existing_id], False
            if event.id in self._by_id:
                raise ValueError(f"duplicate registered id: {event.id}")
            self._by_id[event.id] = event
            self._by_original[event.original_event_id] = event.id
            return event, True

    def get(self, registered_id: str) -> Optional[RegisteredEvent]:
        with self._lock:
            return self._by_id.get(registered_id)

    def get_by_original_id(self, original_event_id: str) -> Optional[RegisteredEvent]:
        with self._lock:
            rid = self._by_original.get(original_event_id)
            return self._by_id.get(rid) if rid else None

    def count(self) -> int:
        with self._lock:
            return len(self._by_id)

    def list_all(self) -> list[RegisteredEvent]:
        with self._lock:
            events = list(self._by_id.values())
        events.sort(key=lambda x: x.registered_at)
        return events

    def query(self, q: EventQuery) -> Page:
        matched = [e for e in self.list_all() if q.matches(e)]
        matched.sort(key=lambda x: getattr(x, q.sort), reverse=q.descending)
        start = q.page * q.size
        return Page(items=matched[start:start + q.size], page=q.page, size=q.size, total=len(matched))

    def distinct_values(self, field: str) -> list[str]:
        if field not in DISTINCT_FIELDS:
            raise ValueError(f"field must be one of {sorted(DISTINCT_FIELDS)}")
        return sorted({getattr(e, field) for e in self.list_all()})

    def find_by_id_substring(self, text: str) -> list[RegisteredEvent]:
        needle = text.strip().lower()
        return [e for e in self.list_all() if needle in e.id]

    def find_by_original_id_substring(self, text: str) -> list[RegisteredEvent]:
        needle = text.strip().lower()
        return [e for e in self.list_all() if needle in e.original_event_id]


class PostgresRegistryStore:
    """PostgreSQL implementation for production.

    Requires a table with the following schema (see `ensure_schema`):

    CREATE TABLE IF NOT EXISTS registered_events (
        id UUID PRIMARY KEY,
        original_event_id UUID NOT NULL UNIQUE,
        event_type VARCHAR(100) NOT NULL,
        service_name VARCHAR(100) NOT NULL,
        payload TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        registered_at TIMESTAMPTZ NOT NULL,
        processed_at TIMESTAMPTZ,
        CHECK (processed_at IS NULL OR processed_at >= registered_at)
    );
    """

    DDL = """
        CREATE TABLE IF NOT EXISTS registered_events (
            id UUID PRIMARY KEY,
            original_event_id UUID NOT NULL UNIQUE,
            event_type VARCHAR(100) NOT NULL,
            service_name VARCHAR(100) NOT NULL,
            payload TEXT,
            created_at TIMESTAMPTZ NOT NULL,
            registered_at TIMESTAMPTZ NOT NULL,
            processed_at TIMESTAMPTZ,
            CHECK (processed_at IS NULL OR processed_at >= registered_at)
        );
        CREATE INDEX IF NOT EXISTS idx_registered_events_created_at ON registered_events(created_at DESC);
    """

    _COLUMNS = "id, original_event_id, event_type, service_name, payload, created_at, registered_at, processed_at"

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

    def insert_if_absent(self, event: RegisteredEvent) -> tuple[RegisteredEvent, bool]:
        row = self._execute(
            f"""
            INSERT INTO registered_events ({self._COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (original_event_id) DO NOTHING
            RETURNING {self._COLUMNS}
            """,
            (
                event.id,
                event.original_event_id,
                event.event_type,
                event.service_name,
                event.payload,
                event.created_at,
                event.registered_at,
                event.processed_at,
            ),
            fetch="one",
            commit=True,
        )
        if row:
            return self._row_to_event(row), True
        existing = self.get_by_original_id(event.original_event_id)
        if existing is None:  # pragma: no cover
            raise RuntimeError(f"conflict on {event.original_event_id} but no row found")
        return existing, False

    def get(self, registered_id: str) -> Optional[RegisteredEvent]:
        row = self._execute(
            f"SELECT {self._COLUMNS} FROM registered_events WHERE id = %s",
            (registered_id,),
            fetch="one",
        )
        return self._row_to_event(row) if row else None

    def get_by_original_id(self, original_event_id: str) -> Optional[RegisteredEvent]:
        row = self._execute(
            f"SELECT {self._COLUMNS} FROM registered_events WHERE original_event_id = %s",
            (original_event_id,),
            fetch="one",
        )
        return self._row_to_event(row) if row else None

    def count(self) -> int:
        return int(self._execute("SELECT COUNT(*) FROM registered_events", fetch="one")[0])

    def list_all(self) -> list[RegisteredEvent]:
        rows = self._execute(f"SELECT {self._COLUMNS} FROM registered_events ORDER BY registered_at", fetch="all")
        return [self._row_to_event(r) for r in rows]

    def query(self, q: EventQuery) -> Page:
        where: list[str] = []
        params: list[Any] = []
        if q.start is not None:
            where.append("created_at >= %s")
            params.append(ensure_tz(q.start))
        if q.end is not None:
            where.append("created_at <= %s")
            params.append(ensure_tz(q.end))
        if q.event_type:
            where.append("event_type = %s")
            params.append(q.event_type)
        if q.service_name:
            where.append("service_name = %s")
            params.append(q.service_name)
        clause = f"WHERE {' AND '.join(where)}" if where else ""

        # q.sort is checked against SORTABLE_FIELDS, so it is safe to inline.
        direction = "DESC" if q.descending else "ASC"
        rows = self._execute(
            f"SELECT {self._COLUMNS} FROM registered_events {clause} "
            f"ORDER BY {q.sort} {direction} LIMIT %s OFFSET %s",
            tuple(params) + (q.size, q.page * q.size),
            fetch="all",
        )
        total = self._execute(f"SELECT COUNT(*) FROM registered_events {clause}", tuple(params), fetch="one")[0]
        return Page(items=[self._row_to_event(r) for r in rows], page=q.page, size=q.size, total=int(total))

    def distinct_values(self, field: str) -> list[str]:
        if field not in DISTINCT_FIELDS:
            raise ValueError(f"field must be one of {sorted(DISTINCT_FIELDS)}")
        rows = self._execute(f"SELECT DISTINCT {field} FROM registered_events ORDER BY {field}", fetch="all")
        return [r[0] for r in rows]

    def find_by_id_substring(self, text: str) -> list[RegisteredEvent]:
        return self._find_like("id", text)

    def find_by_original_id_substring(self, text: str) -> list[RegisteredEvent]:
        return self._find_like("original_event_id", text)

    def _find_like(self, column: str, text: str) -> list[RegisteredEvent]:
        rows = self._execute(
            f"SELECT {self._COLUMNS} FROM registered_events WHERE {column}::text LIKE %s ORDER BY registered_at",
            (f"%{text.strip().lower()}%",),
            fetch="all",
        )
        return [self._row_to_event(r) for r in rows]

    def _row_to_event(self, row: tuple) -> RegisteredEvent:
        return RegisteredEvent(
            id=str(row[0]),
            original_event_id=str(row[1]),
            event_type=row[2],
            service_name=row[3],
            payload=row[4],
            created_at=row[5],
            registered_at=row[6],
            processed_at=row[7],
        )
