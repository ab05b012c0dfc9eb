from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import AsyncIterator, Iterable, Sequence
from urllib.parse import urlparse

import aiosqlite

from lifeline.config import DATABASE_PATH, DATABASE_URL, SEED_DEMO_DATA
from lifeline.errors import ConcurrentConflict

logger = logging.getLogger(__name__)


def _is_busy(error: BaseException) -> bool:
    """Another connection held the write lock past the busy timeout."""
    return isinstance(error, aiosqlite.OperationalError) and "locked" in str(error)


class DatabaseAdapter:
    engine: str

    async def execute(self, query: str, params: Sequence | None = None) -> int:  # pragma: no cover - interface
        """Run a statement and return the number of rows it changed."""
        raise NotImplementedError

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_one(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    async def fetch_all(self, query: str, params: Sequence | None = None):  # pragma: no cover - interface
        raise NotImplementedError

    def transaction(self):  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def executescript(self, script: str) -> None:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass
class SQLiteAdapter(DatabaseAdapter):
    """aiosqlite connection in autocommit mode with explicit transactions.

    The connection is shared by every task on the loop, so a transaction
    holds ``_lock`` from BEGIN to COMMIT/ROLLBACK. Statements issued by the
    task that owns the open transaction join it; statements from other tasks
    wait until it finishes and never observe uncommitted rows.
    """

    conn: aiosqlite.Connection
    engine: str = "sqlite"
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    _owner: asyncio.Task | None = None

    def _in_own_transaction(self) -> bool:
        return self._owner is not None and self._owner is asyncio.current_task()

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        if self._in_own_transaction():
            yield
            return
        async with self._lock:
            yield

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLiteAdapter]:
        if self._in_own_transaction():
            # Nested use joins the outer unit
            yield self
            return
        async with self._lock:
            try:
                await self.conn.execute("BEGIN IMMEDIATE")
            except aiosqlite.OperationalError as e:
                if _is_busy(e):
                    raise ConcurrentConflict(f"Database busy, retry: {e}") from e
                raise
            self._owner = asyncio.current_task()
            try:
                yield self
                await self.conn.execute("COMMIT")
            except BaseException as e:
                if self.conn.in_transaction:
                    await self.conn.execute("ROLLBACK")
                if _is_busy(e):
                    raise ConcurrentConflict(f"Database busy, retry: {e}") from e
                raise
            finally:
                self._owner = None

    async def execute(self, query: str, params: Sequence | None = None) -> int:
        async with self._guard():
            cursor = await self.conn.execute(query, params or ())
            return cursor.rowcount

    async def executemany(self, query: str, seq_params: Iterable[Sequence]) -> None:
        async with self._guard():
            await self.conn.executemany(query, seq_params)

    async def fetch_one(self, query: str, params: Sequence | None = None):
        async with self._guard():
            cursor = await self.conn.execute(query, params or ())
            return await cursor.fetchone()

    async def fetch_all(self, query: str, params: Sequence | None = None):
        async with self._guard():
            cursor = await self.conn.execute(query, params or ())
            return await cursor.fetchall()

    async def close(self) -> None:
        await self.conn.close()

    async def executescript(self, script: str) -> None:
        async with self._guard():
            await self.conn.executescript(script)


_db: DatabaseAdapter | None = None


async def get_db() -> DatabaseAdapter:
    global _db
    if _db is None:
        sqlite_path = DATABASE_PATH
        if DATABASE_URL:
            if not DATABASE_URL.startswith("sqlite"):
                raise RuntimeError(
                    "Only sqlite:// DATABASE_URL values are supported. "
                    "Unset DATABASE_URL or point it at a SQLite file."
                )
            sqlite_path = _sqlite_path_from_url(DATABASE_URL) or DATABASE_PATH
        # isolation_level=None: autocommit, transactions are opened explicitly
        conn = await aiosqlite.connect(sqlite_path, isolation_level=None)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")
        _db = SQLiteAdapter(conn)
        logger.info("Connected to SQLite database at %s", sqlite_path)
    return _db


def _sqlite_path_from_url(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path or ""
    if not path or path == "/":
        return ""
    # sqlite:////absolute/path.db -> keep absolute path
    if url.startswith("sqlite:////"):
        return path
    # sqlite:///relative.db -> strip leading slash
    if path.startswith("/"):
        return path[1:]
    return path


SQLITE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS hospitals (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        longitude REAL NOT NULL,
        latitude REAL NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    );

    CREATE INDEX IF NOT EXISTS idx_hospitals_active_geo
        ON hospitals (is_active, latitude, longitude);

    CREATE TABLE IF NOT EXISTS ambulances (
        id TEXT PRIMARY KEY,
        vehicle_number TEXT NOT NULL UNIQUE,
        driver_id TEXT NOT NULL,
        hospital_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'Available',
        is_active INTEGER NOT NULL DEFAULT 1,
        current_emergency_id TEXT,
        longitude REAL NOT NULL DEFAULT 0,
        latitude REAL NOT NULL DEFAULT 0,
        location_address TEXT,
        location_updated_at TEXT,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        FOREIGN KEY (hospital_id) REFERENCES hospitals(id)
    );

    CREATE INDEX IF NOT EXISTS idx_ambulances_claim
        ON ambulances (hospital_id, status, is_active);

    -- An emergency can be held by at most one ambulance
    CREATE UNIQUE INDEX IF NOT EXISTS idx_ambulances_current_emergency
        ON ambulances (current_emergency_id)
        WHERE current_emergency_id IS NOT NULL;

    CREATE TABLE IF NOT EXISTS emergencies (
        id TEXT PRIMARY KEY,
        patient_id TEXT NOT NULL,
        longitude REAL NOT NULL,
        latitude REAL NOT NULL,
        address TEXT NOT NULL,
        additional_info TEXT,
        hospital_id TEXT NOT NULL,
        assigned_ambulance_id TEXT,
        status TEXT NOT NULL DEFAULT 'Pending',
        priority TEXT NOT NULL DEFAULT 'Medium',
        medical_info TEXT DEFAULT '{}',
        estimated_arrival_time TEXT,
        actual_arrival_time TEXT,
        completed_at TEXT,
        version INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (hospital_id) REFERENCES hospitals(id)
    );

    CREATE INDEX IF NOT EXISTS idx_emergencies_hospital
        ON emergencies (hospital_id, status);
    CREATE INDEX IF NOT EXISTS idx_emergencies_patient
        ON emergencies (patient_id);

    CREATE TABLE IF NOT EXISTS timeline_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        emergency_id TEXT NOT NULL,
        status TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        longitude REAL,
        latitude REAL,
        notes TEXT NOT NULL DEFAULT '',
        FOREIGN KEY (emergency_id) REFERENCES emergencies(id)
    );

    CREATE INDEX IF NOT EXISTS idx_timeline_emergency
        ON timeline_entries (emergency_id, id);

    CREATE TABLE IF NOT EXISTS emergency_contacts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        patient_id TEXT NOT NULL,
        name TEXT NOT NULL,
        phone TEXT,
        relationship TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_contacts_patient
        ON emergency_contacts (patient_id);
"""


async def init_db() -> None:
    db = await get_db()
    await db.executescript(SQLITE_SCHEMA)

    if SEED_DEMO_DATA:
        await _seed_demo_data(db)


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


async def _seed_demo_data(db: DatabaseAdapter) -> None:
    """Seed a small fleet around central Bengaluru for local runs."""
    now = datetime.now(UTC).isoformat()

    hospitals = [
        ("demo-hospital-central", "Central City Hospital", 77.5946, 12.9716, 1),
        ("demo-hospital-north", "Hebbal Lakeside Hospital", 77.5970, 13.0358, 1),
        ("demo-hospital-closed", "Old Market Clinic", 77.5800, 12.9650, 0),
    ]
    ambulances = [
        ("demo-amb-1", "KA01AB1001", "demo-driver-1", "demo-hospital-central", 77.6010, 12.9780, now),
        ("demo-amb-2", "KA01AB1002", "demo-driver-2", "demo-hospital-central", 77.5890, 12.9690, now),
        ("demo-amb-3", "KA01AB2001", "demo-driver-3", "demo-hospital-north", 77.5990, 13.0300, now),
    ]
    contacts = [
        ("demo-patient-1", "Asha Rao", "+919800000001", "Spouse"),
    ]

    async with db.transaction():
        await db.executemany(
            "INSERT OR IGNORE INTO hospitals (id, name, longitude, latitude, is_active) VALUES (?, ?, ?, ?, ?)",
            hospitals,
        )
        await db.executemany(
            """INSERT OR IGNORE INTO ambulances (
                id, vehicle_number, driver_id, hospital_id, longitude, latitude, location_updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
            ambulances,
        )
        existing = await db.fetch_one(
            "SELECT COUNT(*) AS count FROM emergency_contacts WHERE patient_id = ?",
            ("demo-patient-1",),
        )
        if not existing or existing["count"] == 0:
            await db.executemany(
                "INSERT INTO emergency_contacts (patient_id, name, phone, relationship) VALUES (?, ?, ?, ?)",
                contacts,
            )
    logger.info("Demo fleet seeded")
