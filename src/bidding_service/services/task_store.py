"""SQLite-backed storage for tasks, bids, messages, and user profiles."""

from __future__ import annotations

import contextlib
import sqlite3
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

from bidding_service.core.exceptions import ServiceError

if TYPE_CHECKING:
    from collections.abc import Iterator


class StoreUnavailableError(ServiceError):
    """Raised when the database cannot complete an operation (locked, closed, I/O)."""

    def __init__(self, reason: str) -> None:
        super().__init__(
            "STORE_UNAVAILABLE",
            "Storage is temporarily unavailable",
            503,
            {"retryable": True},
        )
        self.reason = reason


class DuplicateTaskError(Exception):
    """Raised when attempting to insert a task with a duplicate task_id."""


class _ConditionNotMet(Exception):
    """Internal: a conditional write matched no row, roll the transaction back."""


_TASK_COLUMNS: tuple[str, ...] = (
    "task_id",
    "owner_id",
    "title",
    "description",
    "budget",
    "accepting_bids",
    "bidding_deadline",
    "winning_bid_id",
    "assignee_id",
    "completed",
    "completed_at",
    "created_at",
    "updated_at",
)

_BID_COLUMNS: tuple[str, ...] = (
    "bid_id",
    "task_id",
    "bidder_id",
    "amount",
    "proposal",
    "estimated_time",
    "status",
    "created_at",
    "updated_at",
    "completed_at",
    "payment_intent_id",
    "payment_status",
)

_MESSAGE_COLUMNS: tuple[str, ...] = (
    "message_id",
    "sender_id",
    "receiver_id",
    "content",
    "event_type",
    "task_id",
    "bid_id",
    "read",
    "delivered",
    "created_at",
    "read_at",
)

_USER_COLUMNS: tuple[str, ...] = (
    "user_id",
    "username",
    "display_name",
    "avatar_url",
    "updated_at",
)

# Largest value an SQLite INTEGER column holds.
MAX_INTEGER = 2**63 - 1

_BOOL_COLUMNS = frozenset({"accepting_bids", "completed", "read", "delivered"})

_TASK_SELECT_SQL = "SELECT " + ", ".join(_TASK_COLUMNS) + " FROM tasks"
_BID_SELECT_SQL = "SELECT " + ", ".join(_BID_COLUMNS) + " FROM bids"
_MESSAGE_SELECT_SQL = "SELECT " + ", ".join(_MESSAGE_COLUMNS) + " FROM messages"


def _row_to_dict(row: sqlite3.Row, columns: tuple[str, ...]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for column in columns:
        value = row[column]
        result[column] = bool(value) if column in _BOOL_COLUMNS else value
    return result


class TaskStore:
    """
    SQLite-backed storage for tasks, bids, messages, and user profiles.

    Every write runs inside a BEGIN IMMEDIATE transaction under a process
    lock. Conditional writes (accept, reject, complete) only apply when the
    row is still in the expected state and report whether they applied.
    Any sqlite failure other than an integrity violation surfaces as
    StoreUnavailableError.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    budget INTEGER,
                    accepting_bids INTEGER NOT NULL DEFAULT 0,
                    bidding_deadline TEXT,
                    winning_bid_id TEXT,
                    assignee_id TEXT,
                    completed INTEGER NOT NULL DEFAULT 0,
                    completed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS bids (
                    bid_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    bidder_id TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    proposal TEXT NOT NULL,
                    estimated_time INTEGER,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT,
                    payment_intent_id TEXT,
                    payment_status TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_bids_task ON bids(task_id);
                CREATE INDEX IF NOT EXISTS idx_bids_bidder ON bids(bidder_id);

                CREATE TABLE IF NOT EXISTS messages (
                    message_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sender_id TEXT NOT NULL,
                    receiver_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    task_id TEXT,
                    bid_id TEXT,
                    read INTEGER NOT NULL DEFAULT 0,
                    delivered INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    read_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_messages_receiver
                    ON messages(receiver_id, message_id);
                CREATE INDEX IF NOT EXISTS idx_messages_sender
                    ON messages(sender_id, message_id);

                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    username TEXT NOT NULL,
                    display_name TEXT,
                    avatar_url TEXT,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._db.commit()

    @contextlib.contextmanager
    def _guarded(self) -> Iterator[None]:
        try:
            yield
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise StoreUnavailableError(str(exc)) from exc

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock, self._guarded():
            self._db.execute("BEGIN IMMEDIATE")
            try:
                yield self._db
            except BaseException:
                with contextlib.suppress(sqlite3.Error):
                    self._db.rollback()
                raise
            self._db.commit()

    def _fetchone(self, query: str, params: tuple[object, ...]) -> sqlite3.Row | None:
        with self._lock, self._guarded():
            row: sqlite3.Row | None = self._db.execute(query, params).fetchone()
        return row

    def _fetchall(self, query: str, params: tuple[object, ...] | list[object]) -> list[sqlite3.Row]:
        with self._lock, self._guarded():
            rows: list[sqlite3.Row] = self._db.execute(query, params).fetchall()
        return rows

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def insert_task(self, task_data: dict[str, Any]) -> None:
        """Insert a new task row."""
        values = tuple(task_data[column] for column in _TASK_COLUMNS)
        placeholders = ", ".join("?" for _ in _TASK_COLUMNS)
        query = f"INSERT INTO tasks ({', '.join(_TASK_COLUMNS)}) VALUES ({placeholders})"  # nosec B608
        try:
            with self._transaction() as db:
                db.execute(query, values)
        except sqlite3.IntegrityError as exc:
            raise DuplicateTaskError(
                f"A task with task_id={task_data['task_id']} already exists"
            ) from exc

    def get_task(self, task_id: str) -> dict[str, Any] | None:
        """Fetch a task by ID."""
        row = self._fetchone(_TASK_SELECT_SQL + " WHERE task_id = ?", (task_id,))
        if row is None:
            return None
        return _row_to_dict(row, _TASK_COLUMNS)

    def update_task(
        self,
        task_id: str,
        updates: dict[str, Any],
        *,
        require_open: bool,
    ) -> int:
        """
        Update task columns and return the number of affected rows.

        With require_open, the update only applies while the task has no
        winning bid and is not completed.
        """
        if len(updates) == 0:
            return 0

        if any(column not in _TASK_COLUMNS for column in updates):
            msg = "Attempted to update unknown task column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = list(updates.values())

        query = "UPDATE tasks SET " + set_clause + " WHERE task_id = ?"  # nosec B608
        params.append(task_id)
        if require_open:
            query += " AND winning_bid_id IS NULL AND completed = 0"

        with self._transaction() as db:
            cursor = db.execute(query, params)
        return int(cursor.rowcount)

    def list_tasks(
        self,
        owner_id: str | None,
        accepting_bids: bool | None,
        limit: int | None,
        offset: int | None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters, newest first."""
        query = _TASK_SELECT_SQL
        clauses: list[str] = []
        params: list[object] = []

        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if accepting_bids is not None:
            clauses.append("accepting_bids = ?")
            params.append(1 if accepting_bids else 0)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)

        query += " ORDER BY created_at DESC"

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                query += " OFFSET ?"
                params.append(offset)

        return [_row_to_dict(row, _TASK_COLUMNS) for row in self._fetchall(query, params)]

    def count_tasks(self) -> int:
        """Count total tasks."""
        row = self._fetchone("SELECT COUNT(*) FROM tasks", ())
        return int(row[0]) if row is not None else 0

    # ------------------------------------------------------------------
    # Bids
    # ------------------------------------------------------------------

    def insert_bid(self, bid_data: dict[str, Any]) -> bool:
        """
        Insert a new bid row while its task is still accepting bids.

        Returns False (and inserts nothing) when the task stopped accepting
        bids or already has a winner.
        """
        values = tuple(bid_data[column] for column in _BID_COLUMNS)
        placeholders = ", ".join("?" for _ in _BID_COLUMNS)
        query = (
            f"INSERT INTO bids ({', '.join(_BID_COLUMNS)}) SELECT {placeholders} "  # nosec B608
            "WHERE EXISTS (SELECT 1 FROM tasks WHERE task_id = ? "
            "AND accepting_bids = 1 AND winning_bid_id IS NULL AND completed = 0)"
        )
        with self._transaction() as db:
            cursor = db.execute(query, (*values, bid_data["task_id"]))
        return int(cursor.rowcount) == 1

    def get_bid(self, bid_id: str) -> dict[str, Any] | None:
        """Fetch a bid by ID."""
        row = self._fetchone(_BID_SELECT_SQL + " WHERE bid_id = ?", (bid_id,))
        if row is None:
            return None
        return _row_to_dict(row, _BID_COLUMNS)

    def get_bids_for_task(self, task_id: str, bidder_id: str | None) -> list[dict[str, Any]]:
        """Fetch bids for a task in submission order, optionally for one bidder."""
        query = _BID_SELECT_SQL + " WHERE task_id = ?"
        params: list[object] = [task_id]
        if bidder_id is not None:
            query += " AND bidder_id = ?"
            params.append(bidder_id)
        query += " ORDER BY created_at, bid_id"
        return [_row_to_dict(row, _BID_COLUMNS) for row in self._fetchall(query, params)]

    def get_bids_received(self, owner_id: str) -> list[dict[str, Any]]:
        """Fetch bids on tasks owned by owner_id, newest first, with task title."""
        columns = ", ".join(f"b.{column}" for column in _BID_COLUMNS)
        rows = self._fetchall(
            f"SELECT {columns}, t.title AS task_title, t.owner_id AS task_owner_id "  # nosec B608
            "FROM bids b JOIN tasks t ON t.task_id = b.task_id "
            "WHERE t.owner_id = ? ORDER BY b.created_at DESC",
            (owner_id,),
        )
        return [self._row_to_enriched_bid(row) for row in rows]

    def get_bids_placed(self, bidder_id: str) -> list[dict[str, Any]]:
        """Fetch bids placed by bidder_id, newest first, with task title and owner."""
        columns = ", ".join(f"b.{column}" for column in _BID_COLUMNS)
        rows = self._fetchall(
            f"SELECT {columns}, t.title AS task_title, t.owner_id AS task_owner_id "  # nosec B608
            "FROM bids b JOIN tasks t ON t.task_id = b.task_id "
            "WHERE b.bidder_id = ? ORDER BY b.created_at DESC",
            (bidder_id,),
        )
        return [self._row_to_enriched_bid(row) for row in rows]

    @staticmethod
    def _row_to_enriched_bid(row: sqlite3.Row) -> dict[str, Any]:
        bid = _row_to_dict(row, _BID_COLUMNS)
        bid["task_title"] = row["task_title"]
        bid["task_owner_id"] = row["task_owner_id"]
        return bid

    def count_bids_by_status(self) -> dict[str, int]:
        """Count bids grouped by status."""
        rows = self._fetchall("SELECT status, COUNT(*) FROM bids GROUP BY status", ())
        return {str(row[0]): int(row[1]) for row in rows}

    def update_bid(
        self,
        bid_id: str,
        updates: dict[str, Any],
        *,
        expected_status: str | None,
        expected_payment_status: str | None = None,
        payment_unsettled: bool = False,
    ) -> int:
        """
        Update bid columns when the bid is in the expected state; return affected rows.

        With payment_unsettled, the update only applies while the bid has no
        payment yet or its payment is still pending.
        """
        if len(updates) == 0:
            return 0

        if any(column not in _BID_COLUMNS for column in updates):
            msg = "Attempted to update unknown bid column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        params: list[object] = list(updates.values())

        query = "UPDATE bids SET " + set_clause + " WHERE bid_id = ?"  # nosec B608
        params.append(bid_id)
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)
        if expected_payment_status is not None:
            query += " AND payment_status = ?"
            params.append(expected_payment_status)
        if payment_unsettled:
            query += " AND (payment_status IS NULL OR payment_status = 'pending')"

        with self._transaction() as db:
            cursor = db.execute(query, params)
        return int(cursor.rowcount)

    def accept_bid(self, task_id: str, bid_id: str, bidder_id: str, accepted_at: str) -> bool:
        """
        Atomically record bid_id as the task's winning bid.

        Sets the winner only while the task has none and the bid is still
        pending; both updates commit together or not at all. Returns False
        when either condition no longer holds.
        """
        try:
            with self._transaction() as db:
                task_cursor = db.execute(
                    "UPDATE tasks SET winning_bid_id = ?, accepting_bids = 0, assignee_id = ?, "
                    "updated_at = ? WHERE task_id = ? AND winning_bid_id IS NULL AND completed = 0",
                    (bid_id, bidder_id, accepted_at, task_id),
                )
                if task_cursor.rowcount != 1:
                    raise _ConditionNotMet
                bid_cursor = db.execute(
                    "UPDATE bids SET status = 'accepted', updated_at = ? "
                    "WHERE bid_id = ? AND task_id = ? AND status = 'pending'",
                    (accepted_at, bid_id, task_id),
                )
                if bid_cursor.rowcount != 1:
                    raise _ConditionNotMet
        except _ConditionNotMet:
            return False
        return True

    def complete_bid(self, task_id: str, bid_id: str, completed_at: str) -> bool:
        """
        Atomically move a paid, accepted bid to completed and mark its task done.

        Returns False when the bid is not accepted with a succeeded payment.
        """
        try:
            with self._transaction() as db:
                bid_cursor = db.execute(
                    "UPDATE bids SET status = 'completed', completed_at = ?, updated_at = ? "
                    "WHERE bid_id = ? AND task_id = ? AND status = 'accepted' "
                    "AND payment_status = 'succeeded'",
                    (completed_at, completed_at, bid_id, task_id),
                )
                if bid_cursor.rowcount != 1:
                    raise _ConditionNotMet
                db.execute(
                    "UPDATE tasks SET completed = 1, completed_at = ?, updated_at = ? "
                    "WHERE task_id = ? AND completed = 0",
                    (completed_at, completed_at, task_id),
                )
        except _ConditionNotMet:
            return False
        return True

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def insert_message(self, message_data: dict[str, Any]) -> int:
        """Append a message and return its message_id."""
        with self._transaction() as db:
            cursor = db.execute(
                """
                INSERT INTO messages (
                    sender_id, receiver_id, content, event_type, task_id, bid_id,
                    read, delivered, created_at, read_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, 0, ?, NULL)
                """,
                (
                    message_data["sender_id"],
                    message_data["receiver_id"],
                    message_data["content"],
                    message_data["event_type"],
                    message_data["task_id"],
                    message_data["bid_id"],
                    message_data["created_at"],
                ),
            )
        if cursor.lastrowid is None:
            msg = "Message insert did not return a row id"
            raise StoreUnavailableError(msg)
        return int(cursor.lastrowid)

    def get_message(self, message_id: int) -> dict[str, Any] | None:
        """Fetch a message by ID."""
        row = self._fetchone(_MESSAGE_SELECT_SQL + " WHERE message_id = ?", (message_id,))
        if row is None:
            return None
        return _row_to_dict(row, _MESSAGE_COLUMNS)

    def list_messages(
        self,
        receiver_id: str,
        *,
        unread_only: bool,
        after_id: int | None,
        limit: int,
    ) -> list[dict[str, Any]]:
        """List a receiver's messages in creation order."""
        query = _MESSAGE_SELECT_SQL + " WHERE receiver_id = ?"
        params: list[object] = [receiver_id]
        if unread_only:
            query += " AND read = 0"
        if after_id is not None:
            query += " AND message_id > ?"
            params.append(after_id)
        query += " ORDER BY message_id ASC LIMIT ?"
        params.append(limit)
        return [_row_to_dict(row, _MESSAGE_COLUMNS) for row in self._fetchall(query, params)]

    def count_unread(self, receiver_id: str) -> int:
        """Count unread messages for a receiver."""
        row = self._fetchone(
            "SELECT COUNT(*) FROM messages WHERE receiver_id = ? AND read = 0",
            (receiver_id,),
        )
        return int(row[0]) if row is not None else 0

    def count_messages(self) -> int:
        """Count all persisted messages."""
        row = self._fetchone("SELECT COUNT(*) FROM messages", ())
        return int(row[0]) if row is not None else 0

    def mark_message_read(self, message_id: int, read_at: str) -> int:
        """Mark a message read; returns 0 if it was already read."""
        with self._transaction() as db:
            cursor = db.execute(
                "UPDATE messages SET read = 1, read_at = ? WHERE message_id = ? AND read = 0",
                (read_at, message_id),
            )
        return int(cursor.rowcount)

    def list_conversations(self, user_id: str) -> list[dict[str, Any]]:
        """
        Direct-message partners of user_id, most recent conversation first.

        Each entry carries the partner id, the latest message either way and
        the number of the partner's messages user_id has not read.
        """
        columns = ", ".join(f"m.{column}" for column in _MESSAGE_COLUMNS)
        rows = self._fetchall(
            f"SELECT c.partner_id, c.unread_count, {columns} FROM ("  # nosec B608
            "SELECT partner_id, MAX(message_id) AS last_message_id, "
            "SUM(CASE WHEN receiver_id = ? AND read = 0 THEN 1 ELSE 0 END) AS unread_count "
            "FROM (SELECT message_id, receiver_id, read, "
            "CASE WHEN sender_id = ? THEN receiver_id ELSE sender_id END AS partner_id "
            "FROM messages WHERE event_type = 'direct_message' "
            "AND (sender_id = ? OR receiver_id = ?)) "
            "GROUP BY partner_id"
            ") c JOIN messages m ON m.message_id = c.last_message_id "
            "ORDER BY c.last_message_id DESC",
            (user_id, user_id, user_id, user_id),
        )
        return [
            {
                "partner_id": row["partner_id"],
                "unread_count": int(row["unread_count"]),
                "last_message": _row_to_dict(row, _MESSAGE_COLUMNS),
            }
            for row in rows
        ]

    def get_thread(
        self,
        user_id: str,
        partner_id: str,
        *,
        after_id: int | None,
        limit: int,
    ) -> list[dict[str, Any]]:
        """Direct messages exchanged between two users in creation order."""
        query = (
            _MESSAGE_SELECT_SQL + " WHERE event_type = 'direct_message' "
            "AND ((sender_id = ? AND receiver_id = ?) OR (sender_id = ? AND receiver_id = ?))"
        )
        params: list[object] = [user_id, partner_id, partner_id, user_id]
        if after_id is not None:
            query += " AND message_id > ?"
            params.append(after_id)
        query += " ORDER BY message_id ASC LIMIT ?"
        params.append(limit)
        return [_row_to_dict(row, _MESSAGE_COLUMNS) for row in self._fetchall(query, params)]

    def mark_conversation_read(self, receiver_id: str, sender_id: str, read_at: str) -> int:
        """Mark every unread direct message from sender_id to receiver_id read."""
        with self._transaction() as db:
            cursor = db.execute(
                "UPDATE messages SET read = 1, read_at = ? WHERE receiver_id = ? "
                "AND sender_id = ? AND event_type = 'direct_message' AND read = 0",
                (read_at, receiver_id, sender_id),
            )
        return int(cursor.rowcount)

    def mark_message_delivered(self, message_id: int) -> None:
        """Flag a message as pushed over a live connection."""
        with self._transaction() as db:
            db.execute("UPDATE messages SET delivered = 1 WHERE message_id = ?", (message_id,))

    # ------------------------------------------------------------------
    # User profiles
    # ------------------------------------------------------------------

    def upsert_user(self, profile: dict[str, Any]) -> None:
        """Insert or replace a user's display profile."""
        with self._transaction() as db:
            db.execute(
                """
                INSERT INTO users (user_id, username, display_name, avatar_url, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    username = excluded.username,
                    display_name = excluded.display_name,
                    avatar_url = excluded.avatar_url,
                    updated_at = excluded.updated_at
                """,
                tuple(profile[column] for column in _USER_COLUMNS),
            )

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        """Fetch a user profile by ID."""
        row = self._fetchone(
            "SELECT " + ", ".join(_USER_COLUMNS) + " FROM users WHERE user_id = ?",
            (user_id,),
        )
        if row is None:
            return None
        return _row_to_dict(row, _USER_COLUMNS)

    def get_users(self, user_ids: list[str]) -> dict[str, dict[str, Any]]:
        """Fetch several profiles keyed by user_id; unknown IDs are omitted."""
        unique_ids = sorted(set(user_ids))
        if len(unique_ids) == 0:
            return {}
        placeholders = ", ".join("?" for _ in unique_ids)
        rows = self._fetchall(
            "SELECT " + ", ".join(_USER_COLUMNS) + " FROM users "  # nosec B608
            f"WHERE user_id IN ({placeholders})",
            list(unique_ids),
        )
        return {str(row["user_id"]): _row_to_dict(row, _USER_COLUMNS) for row in rows}

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
