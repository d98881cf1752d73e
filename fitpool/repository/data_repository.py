"""Repository layer responsible for all database access."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence

from fitpool.domain.models import (
    Event,
    Facilitator,
    NotificationDraft,
    NotificationKind,
    OutboxMessage,
    Pool,
    PoolAttendee,
    RecipientType,
    Registrant,
    TriggerType,
)
from fitpool.utils.config import Settings, get_settings
from fitpool.utils.logger import get_logger


logger = get_logger(__name__)

_REMINDER_FLAG_COLUMNS = {
    TriggerType.T_MINUS_48H: "reminder_48h_sent",
    TriggerType.T_MINUS_24H: "reminder_24h_sent",
    TriggerType.T_MINUS_60M: "reminder_60m_sent",
    TriggerType.POST_EVENT: "post_event_sent",
}

_EVENT_COLUMNS = """
    id,
    title,
    description,
    category,
    event_date,
    event_time,
    price,
    max_capacity,
    pool_capacity,
    registration_deadline,
    pools_assigned,
    reminder_48h_sent,
    reminder_24h_sent,
    reminder_60m_sent,
    post_event_sent,
    created_at
"""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def to_utc_iso(value: datetime) -> str:
    """Canonical UTC text form; lexical order matches chronological order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


@dataclass(frozen=True)
class RegistrationRecord:
    """Registration projection joined with registrant details."""

    registration_id: int
    registrant_id: int
    name: str
    mobile_number: str
    email: str | None
    registered_at: str
    payment_id: int | None


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self, *, autocommit: bool = False) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._db_path,
            isolation_level=None if autocommit else "DEFERRED",
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        connection = self._connect()
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Atomic unit of work: every write on the yielded connection commits together."""
        connection = self._connect(autocommit=True)
        try:
            connection.execute("BEGIN IMMEDIATE;")
            try:
                yield connection
            except BaseException:
                connection.execute("ROLLBACK;")
                raise
            connection.execute("COMMIT;")
        finally:
            connection.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connection() as conn:
                cursor = conn.cursor()

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Facilitators (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        mobile_number TEXT NOT NULL UNIQUE,
                        email TEXT,
                        created_at TEXT NOT NULL
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Registrants (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        mobile_number TEXT NOT NULL UNIQUE,
                        email TEXT,
                        created_at TEXT NOT NULL
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Events (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        title TEXT NOT NULL,
                        description TEXT,
                        category TEXT,
                        event_date TEXT NOT NULL,
                        event_time TEXT,
                        price REAL NOT NULL DEFAULT 0 CHECK (price >= 0),
                        max_capacity INTEGER NOT NULL CHECK (max_capacity > 0),
                        pool_capacity INTEGER NOT NULL CHECK (pool_capacity > 0),
                        registration_deadline TEXT,
                        pools_assigned INTEGER NOT NULL DEFAULT 0 CHECK (pools_assigned IN (0,1)),
                        reminder_48h_sent INTEGER NOT NULL DEFAULT 0 CHECK (reminder_48h_sent IN (0,1)),
                        reminder_24h_sent INTEGER NOT NULL DEFAULT 0 CHECK (reminder_24h_sent IN (0,1)),
                        reminder_60m_sent INTEGER NOT NULL DEFAULT 0 CHECK (reminder_60m_sent IN (0,1)),
                        post_event_sent INTEGER NOT NULL DEFAULT 0 CHECK (post_event_sent IN (0,1)),
                        created_at TEXT NOT NULL
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS EventFacilitators (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        event_id INTEGER NOT NULL,
                        facilitator_id INTEGER NOT NULL,
                        UNIQUE (event_id, facilitator_id),
                        FOREIGN KEY (event_id) REFERENCES Events(id),
                        FOREIGN KEY (facilitator_id) REFERENCES Facilitators(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Payments (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        registrant_id INTEGER NOT NULL,
                        event_id INTEGER NOT NULL,
                        order_id TEXT NOT NULL,
                        payment_id TEXT NOT NULL UNIQUE,
                        amount REAL NOT NULL,
                        status TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (registrant_id) REFERENCES Registrants(id),
                        FOREIGN KEY (event_id) REFERENCES Events(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Registrations (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        registrant_id INTEGER NOT NULL,
                        event_id INTEGER NOT NULL,
                        payment_id INTEGER,
                        registered_at TEXT NOT NULL,
                        UNIQUE (registrant_id, event_id),
                        FOREIGN KEY (registrant_id) REFERENCES Registrants(id),
                        FOREIGN KEY (event_id) REFERENCES Events(id),
                        FOREIGN KEY (payment_id) REFERENCES Payments(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Pools (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        event_id INTEGER NOT NULL,
                        name TEXT NOT NULL,
                        capacity INTEGER NOT NULL CHECK (capacity > 0),
                        facilitator_id INTEGER,
                        meeting_link TEXT,
                        is_active INTEGER NOT NULL DEFAULT 1 CHECK (is_active IN (0,1)),
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (event_id) REFERENCES Events(id),
                        FOREIGN KEY (facilitator_id) REFERENCES Facilitators(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS PoolAttendees (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        pool_id INTEGER NOT NULL,
                        event_id INTEGER NOT NULL,
                        registrant_id INTEGER NOT NULL,
                        meeting_link TEXT,
                        notified INTEGER NOT NULL DEFAULT 0 CHECK (notified IN (0,1)),
                        UNIQUE (registrant_id, event_id),
                        FOREIGN KEY (pool_id) REFERENCES Pools(id),
                        FOREIGN KEY (event_id) REFERENCES Events(id),
                        FOREIGN KEY (registrant_id) REFERENCES Registrants(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS NotificationOutbox (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        event_id INTEGER NOT NULL,
                        kind TEXT NOT NULL,
                        recipient_type TEXT NOT NULL,
                        recipient_id INTEGER NOT NULL,
                        destination TEXT NOT NULL,
                        sequence INTEGER NOT NULL DEFAULT 0,
                        payload TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'PENDING',
                        attempts INTEGER NOT NULL DEFAULT 0,
                        last_error TEXT,
                        claimed_at TEXT,
                        created_at TEXT NOT NULL,
                        sent_at TEXT,
                        UNIQUE (event_id, kind, recipient_type, recipient_id, sequence),
                        FOREIGN KEY (event_id) REFERENCES Events(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_events_assignment
                    ON Events(pools_assigned, registration_deadline);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_registrations_event
                    ON Registrations(event_id, registered_at);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_outbox_status
                    ON NotificationOutbox(status, event_id, kind);
                    """
                )
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Row mappers
    # ------------------------------------------------------------------

    @staticmethod
    def _event_from_row(row: sqlite3.Row) -> Event:
        return Event(
            event_id=int(row["id"]),
            title=str(row["title"]),
            description=row["description"],
            category=row["category"],
            event_date=str(row["event_date"]),
            event_time=row["event_time"],
            price=float(row["price"]),
            max_capacity=int(row["max_capacity"]),
            pool_capacity=int(row["pool_capacity"]),
            registration_deadline=row["registration_deadline"],
            pools_assigned=bool(row["pools_assigned"]),
            reminder_48h_sent=bool(row["reminder_48h_sent"]),
            reminder_24h_sent=bool(row["reminder_24h_sent"]),
            reminder_60m_sent=bool(row["reminder_60m_sent"]),
            post_event_sent=bool(row["post_event_sent"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _facilitator_from_row(row: sqlite3.Row) -> Facilitator:
        return Facilitator(
            facilitator_id=int(row["id"]),
            name=str(row["name"]),
            mobile_number=str(row["mobile_number"]),
            email=row["email"],
        )

    @staticmethod
    def _registrant_from_row(row: sqlite3.Row) -> Registrant:
        keys = row.keys()
        return Registrant(
            registrant_id=int(row["id"]),
            name=str(row["name"]),
            mobile_number=str(row["mobile_number"]),
            email=row["email"],
            registered_at=row["registered_at"] if "registered_at" in keys else None,
        )

    @staticmethod
    def _outbox_from_row(row: sqlite3.Row) -> OutboxMessage:
        return OutboxMessage(
            outbox_id=int(row["id"]),
            event_id=int(row["event_id"]),
            kind=NotificationKind(row["kind"]),
            recipient_type=RecipientType(row["recipient_type"]),
            recipient_id=int(row["recipient_id"]),
            destination=str(row["destination"]),
            sequence=int(row["sequence"]),
            payload=json.loads(row["payload"]),
            status=str(row["status"]),
            attempts=int(row["attempts"]),
            last_error=row["last_error"],
        )

    # ------------------------------------------------------------------
    # Facilitators
    # ------------------------------------------------------------------

    def create_facilitator(
        self,
        name: str,
        mobile_number: str,
        email: str | None,
    ) -> int:
        """Insert facilitator row and return the created id."""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO Facilitators (name, mobile_number, email, created_at)
                VALUES (?, ?, ?, ?);
                """,
                (name, mobile_number, email, utc_now_iso()),
            )
            return int(cursor.lastrowid)

    def get_facilitator_by_mobile(self, mobile_number: str) -> Optional[Facilitator]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT id, name, mobile_number, email FROM Facilitators WHERE mobile_number = ?;",
                (mobile_number,),
            )
            row = cursor.fetchone()
            return None if row is None else self._facilitator_from_row(row)

    def list_facilitators(self) -> list[Facilitator]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT id, name, mobile_number, email FROM Facilitators ORDER BY id ASC;"
            )
            return [self._facilitator_from_row(row) for row in cursor.fetchall()]

    def list_facilitators_by_ids(self, facilitator_ids: Sequence[int]) -> list[Facilitator]:
        if not facilitator_ids:
            return []
        placeholders = ",".join("?" for _ in facilitator_ids)
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT id, name, mobile_number, email
                FROM Facilitators
                WHERE id IN ({placeholders})
                ORDER BY id ASC;
                """,
                tuple(facilitator_ids),
            )
            return [self._facilitator_from_row(row) for row in cursor.fetchall()]

    def list_event_facilitators(self, event_id: int) -> list[Facilitator]:
        """Return the event's roster in the order facilitators were attached."""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT f.id, f.name, f.mobile_number, f.email
                FROM EventFacilitators AS ef
                INNER JOIN Facilitators AS f ON f.id = ef.facilitator_id
                WHERE ef.event_id = ?
                ORDER BY ef.id ASC;
                """,
                (event_id,),
            )
            return [self._facilitator_from_row(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def create_event(
        self,
        *,
        title: str,
        event_date: str,
        event_time: str | None,
        max_capacity: int,
        pool_capacity: int,
        price: float = 0.0,
        description: str | None = None,
        category: str | None = None,
        registration_deadline: str | None = None,
        facilitator_ids: Sequence[int] = (),
    ) -> int:
        """Insert the event and its facilitator roster in one transaction."""
        with self.transaction() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO Events (
                    title,
                    description,
                    category,
                    event_date,
                    event_time,
                    price,
                    max_capacity,
                    pool_capacity,
                    registration_deadline,
                    created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    title,
                    description,
                    category,
                    event_date,
                    event_time,
                    price,
                    max_capacity,
                    pool_capacity,
                    registration_deadline,
                    utc_now_iso(),
                ),
            )
            event_id = int(cursor.lastrowid)
            cursor.executemany(
                """
                INSERT INTO EventFacilitators (event_id, facilitator_id)
                VALUES (?, ?);
                """,
                [(event_id, facilitator_id) for facilitator_id in facilitator_ids],
            )
            return event_id

    def get_event(self, event_id: int) -> Optional[Event]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT {_EVENT_COLUMNS} FROM Events WHERE id = ?;",
                (event_id,),
            )
            row = cursor.fetchone()
            return None if row is None else self._event_from_row(row)

    def get_event_in(self, conn: sqlite3.Connection, event_id: int) -> Optional[Event]:
        """Event read inside an open transaction."""
        row = conn.execute(
            f"SELECT {_EVENT_COLUMNS} FROM Events WHERE id = ?;",
            (event_id,),
        ).fetchone()
        return None if row is None else self._event_from_row(row)

    def update_event(
        self,
        conn: sqlite3.Connection,
        event_id: int,
        *,
        title: str,
        event_date: str,
        event_time: str | None,
        max_capacity: int,
        pool_capacity: int,
        price: float,
        description: str | None,
        category: str | None,
        registration_deadline: str | None,
    ) -> bool:
        """Rewrite editable columns; False when pools were assigned meanwhile."""
        cursor = conn.execute(
            """
            UPDATE Events
            SET
                title = ?,
                description = ?,
                category = ?,
                event_date = ?,
                event_time = ?,
                price = ?,
                max_capacity = ?,
                pool_capacity = ?,
                registration_deadline = ?
            WHERE id = ? AND pools_assigned = 0;
            """,
            (
                title,
                description,
                category,
                event_date,
                event_time,
                price,
                max_capacity,
                pool_capacity,
                registration_deadline,
                event_id,
            ),
        )
        return cursor.rowcount == 1

    def replace_event_facilitators(
        self,
        conn: sqlite3.Connection,
        event_id: int,
        facilitator_ids: Sequence[int],
    ) -> None:
        conn.execute("DELETE FROM EventFacilitators WHERE event_id = ?;", (event_id,))
        conn.executemany(
            """
            INSERT INTO EventFacilitators (event_id, facilitator_id)
            VALUES (?, ?);
            """,
            [(event_id, facilitator_id) for facilitator_id in facilitator_ids],
        )

    def delete_event(self, conn: sqlite3.Connection, event_id: int) -> bool:
        """Remove an unassigned event with its roster and queued notifications."""
        conn.execute("DELETE FROM EventFacilitators WHERE event_id = ?;", (event_id,))
        conn.execute("DELETE FROM NotificationOutbox WHERE event_id = ?;", (event_id,))
        cursor = conn.execute(
            "DELETE FROM Events WHERE id = ? AND pools_assigned = 0;",
            (event_id,),
        )
        return cursor.rowcount == 1

    def list_events(self, from_date: str | None = None) -> list[Event]:
        """Return events ordered by date, optionally only those on/after ``from_date``."""
        with self._connection() as conn:
            cursor = conn.cursor()
            if from_date is None:
                cursor.execute(
                    f"SELECT {_EVENT_COLUMNS} FROM Events ORDER BY event_date ASC, id ASC;"
                )
            else:
                cursor.execute(
                    f"""
                    SELECT {_EVENT_COLUMNS}
                    FROM Events
                    WHERE event_date >= ?
                    ORDER BY event_date ASC, id ASC;
                    """,
                    (from_date,),
                )
            return [self._event_from_row(row) for row in cursor.fetchall()]

    def list_events_pending_assignment(
        self,
        now_iso: str,
        from_date: str,
        horizon_date: str,
    ) -> list[Event]:
        """Unassigned events from ``from_date`` on whose registration has closed.

        An event without a deadline only qualifies once its date is on or
        before ``horizon_date``.
        """
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {_EVENT_COLUMNS}
                FROM Events
                WHERE pools_assigned = 0
                  AND event_date >= ?
                  AND (
                    (registration_deadline IS NOT NULL AND registration_deadline <= ?)
                    OR (registration_deadline IS NULL AND event_date <= ?)
                  )
                ORDER BY event_date ASC, id ASC;
                """,
                (from_date, now_iso, horizon_date),
            )
            return [self._event_from_row(row) for row in cursor.fetchall()]

    def list_events_needing_reminders(self) -> list[Event]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {_EVENT_COLUMNS}
                FROM Events
                WHERE pools_assigned = 1
                  AND (
                    reminder_48h_sent = 0
                    OR reminder_24h_sent = 0
                    OR reminder_60m_sent = 0
                    OR post_event_sent = 0
                  )
                ORDER BY event_date ASC, id ASC;
                """
            )
            return [self._event_from_row(row) for row in cursor.fetchall()]

    def claim_pool_assignment(self, conn: sqlite3.Connection, event_id: int) -> bool:
        """Compare-and-set ``pools_assigned`` 0 -> 1; False when another writer won."""
        cursor = conn.execute(
            "UPDATE Events SET pools_assigned = 1 WHERE id = ? AND pools_assigned = 0;",
            (event_id,),
        )
        return cursor.rowcount == 1

    def claim_reminder_flag(
        self,
        conn: sqlite3.Connection,
        event_id: int,
        trigger: TriggerType,
    ) -> bool:
        """Compare-and-set one reminder flag 0 -> 1; False when already set."""
        column = _REMINDER_FLAG_COLUMNS[trigger]
        cursor = conn.execute(
            f"UPDATE Events SET {column} = 1 WHERE id = ? AND {column} = 0;",
            (event_id,),
        )
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Registrants and registrations
    # ------------------------------------------------------------------

    def upsert_registrant(self, name: str, mobile_number: str, email: str | None) -> int:
        """Create the registrant or refresh name/email for an existing number."""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO Registrants (name, mobile_number, email, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(mobile_number) DO UPDATE SET
                    name = excluded.name,
                    email = COALESCE(excluded.email, Registrants.email);
                """,
                (name, mobile_number, email, utc_now_iso()),
            )
            cursor.execute(
                "SELECT id FROM Registrants WHERE mobile_number = ?;",
                (mobile_number,),
            )
            return int(cursor.fetchone()["id"])

    def get_registrant_by_mobile(self, mobile_number: str) -> Optional[Registrant]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT id, name, mobile_number, email FROM Registrants WHERE mobile_number = ?;",
                (mobile_number,),
            )
            row = cursor.fetchone()
            return None if row is None else self._registrant_from_row(row)

    def list_registrants(self) -> list[Registrant]:
        """All registrants, newest first."""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT id, name, mobile_number, email
                FROM Registrants
                ORDER BY created_at DESC, id DESC;
                """
            )
            return [self._registrant_from_row(row) for row in cursor.fetchall()]

    def create_registration(
        self,
        conn: sqlite3.Connection,
        *,
        registrant_id: int,
        event_id: int,
        registered_at: str,
        payment_row_id: int | None = None,
    ) -> int:
        """Insert a registration; raises ``sqlite3.IntegrityError`` on duplicates."""
        cursor = conn.execute(
            """
            INSERT INTO Registrations (registrant_id, event_id, payment_id, registered_at)
            VALUES (?, ?, ?, ?);
            """,
            (registrant_id, event_id, payment_row_id, registered_at),
        )
        return int(cursor.lastrowid)

    def create_payment(
        self,
        conn: sqlite3.Connection,
        *,
        registrant_id: int,
        event_id: int,
        order_id: str,
        payment_id: str,
        amount: float,
        status: str,
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO Payments (
                registrant_id,
                event_id,
                order_id,
                payment_id,
                amount,
                status,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            (registrant_id, event_id, order_id, payment_id, amount, status, utc_now_iso()),
        )
        return int(cursor.lastrowid)

    def is_registered(self, registrant_id: int, event_id: int) -> bool:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT 1 FROM Registrations WHERE registrant_id = ? AND event_id = ?;",
                (registrant_id, event_id),
            )
            return cursor.fetchone() is not None

    def count_registrations(self, event_id: int) -> int:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT COUNT(*) AS count FROM Registrations WHERE event_id = ?;",
                (event_id,),
            )
            return int(cursor.fetchone()["count"])

    def count_registrations_in(self, conn: sqlite3.Connection, event_id: int) -> int:
        """Registration count read inside an open transaction."""
        cursor = conn.execute(
            "SELECT COUNT(*) AS count FROM Registrations WHERE event_id = ?;",
            (event_id,),
        )
        return int(cursor.fetchone()["count"])

    def list_event_registrants(self, event_id: int) -> list[Registrant]:
        """Return registrants in registration order (the allocator's input order)."""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT r.id, r.name, r.mobile_number, r.email, reg.registered_at
                FROM Registrations AS reg
                INNER JOIN Registrants AS r ON r.id = reg.registrant_id
                WHERE reg.event_id = ?
                ORDER BY reg.registered_at ASC, reg.id ASC;
                """,
                (event_id,),
            )
            return [self._registrant_from_row(row) for row in cursor.fetchall()]

    def list_event_registrations(self, event_id: int) -> List[RegistrationRecord]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT
                    reg.id AS registration_id,
                    r.id AS registrant_id,
                    r.name,
                    r.mobile_number,
                    r.email,
                    reg.registered_at,
                    reg.payment_id
                FROM Registrations AS reg
                INNER JOIN Registrants AS r ON r.id = reg.registrant_id
                WHERE reg.event_id = ?
                ORDER BY reg.registered_at ASC, reg.id ASC;
                """,
                (event_id,),
            )
            return [
                RegistrationRecord(
                    registration_id=int(row["registration_id"]),
                    registrant_id=int(row["registrant_id"]),
                    name=str(row["name"]),
                    mobile_number=str(row["mobile_number"]),
                    email=row["email"],
                    registered_at=str(row["registered_at"]),
                    payment_id=None if row["payment_id"] is None else int(row["payment_id"]),
                )
                for row in cursor.fetchall()
            ]

    # ------------------------------------------------------------------
    # Pools
    # ------------------------------------------------------------------

    def insert_pool(
        self,
        conn: sqlite3.Connection,
        *,
        event_id: int,
        name: str,
        capacity: int,
        facilitator_id: int | None,
        meeting_link: str | None,
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO Pools (
                event_id,
                name,
                capacity,
                facilitator_id,
                meeting_link,
                is_active,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, 1, ?);
            """,
            (event_id, name, capacity, facilitator_id, meeting_link, utc_now_iso()),
        )
        return int(cursor.lastrowid)

    def insert_pool_attendees(
        self,
        conn: sqlite3.Connection,
        attendees: Iterable[tuple[int, int, int, str | None]],
    ) -> None:
        """Insert ``(pool_id, event_id, registrant_id, meeting_link)`` rows."""
        conn.executemany(
            """
            INSERT INTO PoolAttendees (pool_id, event_id, registrant_id, meeting_link, notified)
            VALUES (?, ?, ?, ?, 0);
            """,
            list(attendees),
        )

    def list_event_pools(self, event_id: int) -> list[Pool]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT id, event_id, name, capacity, facilitator_id, meeting_link, is_active
                FROM Pools
                WHERE event_id = ?
                ORDER BY id ASC;
                """,
                (event_id,),
            )
            return [
                Pool(
                    pool_id=int(row["id"]),
                    event_id=int(row["event_id"]),
                    name=str(row["name"]),
                    capacity=int(row["capacity"]),
                    facilitator_id=(
                        None if row["facilitator_id"] is None else int(row["facilitator_id"])
                    ),
                    meeting_link=row["meeting_link"],
                    is_active=bool(row["is_active"]),
                )
                for row in cursor.fetchall()
            ]

    def list_pool_attendees(self, event_id: int) -> list[PoolAttendee]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT id, pool_id, event_id, registrant_id, meeting_link, notified
                FROM PoolAttendees
                WHERE event_id = ?
                ORDER BY pool_id ASC, id ASC;
                """,
                (event_id,),
            )
            return [
                PoolAttendee(
                    attendee_id=int(row["id"]),
                    pool_id=int(row["pool_id"]),
                    event_id=int(row["event_id"]),
                    registrant_id=int(row["registrant_id"]),
                    meeting_link=row["meeting_link"],
                    notified=bool(row["notified"]),
                )
                for row in cursor.fetchall()
            ]

    def mark_attendee_notified(self, event_id: int, registrant_id: int) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                UPDATE PoolAttendees
                SET notified = 1
                WHERE event_id = ? AND registrant_id = ?;
                """,
                (event_id, registrant_id),
            )

    def count_pools(self, event_id: int) -> int:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT COUNT(*) AS count FROM Pools WHERE event_id = ?;",
                (event_id,),
            )
            return int(cursor.fetchone()["count"])

    def count_pool_attendees(self, event_id: int) -> int:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT COUNT(*) AS count FROM PoolAttendees WHERE event_id = ?;",
                (event_id,),
            )
            return int(cursor.fetchone()["count"])

    # ------------------------------------------------------------------
    # Notification outbox
    # ------------------------------------------------------------------

    def enqueue_notifications(
        self,
        conn: sqlite3.Connection,
        drafts: Iterable[NotificationDraft],
    ) -> int:
        """Record pending notifications inside the caller's transaction.

        Rows already present for the same (event, kind, recipient, sequence)
        are ignored, so re-enqueueing is harmless.
        """
        created_at = utc_now_iso()
        rows = [
            (
                draft.event_id,
                draft.kind.value,
                draft.recipient_type.value,
                draft.recipient_id,
                draft.destination,
                draft.sequence,
                json.dumps(draft.payload, sort_keys=True),
                created_at,
            )
            for draft in drafts
        ]
        if not rows:
            return 0
        before = conn.total_changes
        conn.executemany(
            """
            INSERT OR IGNORE INTO NotificationOutbox (
                event_id,
                kind,
                recipient_type,
                recipient_id,
                destination,
                sequence,
                payload,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?);
            """,
            rows,
        )
        return conn.total_changes - before

    def list_pending_notifications(
        self,
        *,
        event_id: int | None = None,
        kinds: Sequence[NotificationKind] | None = None,
        limit: int | None = None,
        lease_cutoff_iso: str | None = None,
    ) -> list[OutboxMessage]:
        """Pending rows, plus rows whose SENDING claim is older than ``lease_cutoff_iso``."""
        params: list[object] = []
        if lease_cutoff_iso is None:
            clauses = ["status = 'PENDING'"]
        else:
            clauses = ["(status = 'PENDING' OR (status = 'SENDING' AND claimed_at <= ?))"]
            params.append(lease_cutoff_iso)
        if event_id is not None:
            clauses.append("event_id = ?")
            params.append(event_id)
        if kinds:
            clauses.append(f"kind IN ({','.join('?' for _ in kinds)})")
            params.extend(kind.value for kind in kinds)
        query = f"""
            SELECT
                id,
                event_id,
                kind,
                recipient_type,
                recipient_id,
                destination,
                sequence,
                payload,
                status,
                attempts,
                last_error
            FROM NotificationOutbox
            WHERE {' AND '.join(clauses)}
            ORDER BY id ASC
        """
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query + ";", tuple(params))
            return [self._outbox_from_row(row) for row in cursor.fetchall()]

    def claim_notification(self, outbox_id: int, *, now_iso: str, lease_cutoff_iso: str) -> bool:
        """Compare-and-set a row to SENDING; False when another drain holds a live claim."""
        with self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE NotificationOutbox
                SET status = 'SENDING', claimed_at = ?
                WHERE id = ?
                  AND (
                    status = 'PENDING'
                    OR (status = 'SENDING' AND claimed_at <= ?)
                  );
                """,
                (now_iso, outbox_id, lease_cutoff_iso),
            )
            return cursor.rowcount == 1

    def mark_notification_sent(self, outbox_id: int) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                UPDATE NotificationOutbox
                SET status = 'SENT', attempts = attempts + 1, last_error = NULL, sent_at = ?
                WHERE id = ?;
                """,
                (utc_now_iso(), outbox_id),
            )

    def record_notification_failure(
        self,
        outbox_id: int,
        error: str,
        max_attempts: int,
        *,
        permanent: bool = False,
    ) -> str:
        """Count a failed attempt; returns the row's resulting status."""
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE NotificationOutbox
                SET attempts = attempts + 1,
                    last_error = ?,
                    status = CASE
                        WHEN ? = 1 OR attempts + 1 >= ? THEN 'FAILED'
                        ELSE 'PENDING'
                    END
                WHERE id = ?;
                """,
                (error[:500], 1 if permanent else 0, max_attempts, outbox_id),
            )
            cursor.execute(
                "SELECT status FROM NotificationOutbox WHERE id = ?;",
                (outbox_id,),
            )
            return str(cursor.fetchone()["status"])

    def count_notifications(
        self,
        event_id: int,
        kind: NotificationKind | None = None,
        status: str | None = None,
    ) -> int:
        clauses = ["event_id = ?"]
        params: list[object] = [event_id]
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind.value)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT COUNT(*) AS count FROM NotificationOutbox WHERE {' AND '.join(clauses)};",
                tuple(params),
            )
            return int(cursor.fetchone()["count"])
