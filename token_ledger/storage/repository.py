"""
Repository pattern for data access.

Handles database operations for balances, the append-only usage ledger,
the attempt log and notification bookkeeping.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

from token_ledger.core.errors import AccountNotFoundError, BatchIdCollisionError
from token_ledger.core.features import Feature, TokenType

from .db import DEFAULT_DB_PATH, get_connection
from .models import AccountBalance, ActivityEntry, TokenTransaction, UsageRecord

_USAGE_COLUMNS = """
    id, user_id, feature, operation, tokens_consumed, tokens_remaining,
    item_count, batch_id, is_batch, metadata, created_at
"""

_TRANSACTION_COLUMNS = """
    id, user_id, token_type, amount, balance_before, balance_after,
    source, expires_at, metadata, created_at
"""

_SCHEMA = """
CREATE TABLE IF NOT EXISTS token_account (
    user_id TEXT PRIMARY KEY,
    balance INTEGER NOT NULL CHECK (balance >= 0),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS token_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES token_account(user_id),
    feature TEXT NOT NULL,
    operation TEXT NOT NULL,
    tokens_consumed INTEGER NOT NULL CHECK (tokens_consumed >= 0),
    tokens_remaining INTEGER NOT NULL,
    item_count INTEGER NOT NULL DEFAULT 1,
    batch_id TEXT UNIQUE,
    is_batch INTEGER NOT NULL DEFAULT 0,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_token_usage_user ON token_usage(user_id, created_at);

CREATE TABLE IF NOT EXISTS token_transaction (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES token_account(user_id),
    token_type TEXT,
    amount INTEGER NOT NULL,
    balance_before INTEGER NOT NULL,
    balance_after INTEGER NOT NULL,
    source TEXT NOT NULL,
    expires_at TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_activity (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    action TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notification_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    balance INTEGER NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_notification_log_user ON notification_log(user_id, kind, created_at);

CREATE TABLE IF NOT EXISTS notification_state (
    user_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    flagged INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, kind)
);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Convert a datetime to UTC. Naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _range_conditions(
    start: Optional[datetime], end: Optional[datetime]
) -> Tuple[List[str], List[Any]]:
    # Stored timestamps are UTC isoformat strings, so bounds must be too
    conditions: List[str] = []
    params: List[Any] = []
    if start is not None:
        conditions.append("created_at >= ?")
        params.append(as_utc(start).isoformat())
    if end is not None:
        conditions.append("created_at <= ?")
        params.append(as_utc(end).isoformat())
    return conditions, params


def _dumps(data: Optional[Dict[str, Any]]) -> str:
    return json.dumps(data or {}, default=str, sort_keys=True)


class LedgerRepository:
    """Repository for token balances and the usage ledger.

    Methods taking a ``conn`` argument run inside a caller-owned transaction
    (see ``transaction``); the others open and close their own connection.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create all ledger tables if they don't exist."""
        conn = get_connection(self.db_path)
        try:
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction holding the database write lock.

        Commits on normal exit and rolls back on any exception, so every write
        made through the yielded connection lands together or not at all.
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()
        finally:
            conn.close()

    # Accounts

    def create_account(self, user_id: str, balance: int = 0) -> AccountBalance:
        """Create a token account with an opening balance.

        Raises:
            ValueError: If balance is negative or the account already exists
        """
        if balance < 0:
            raise ValueError("opening balance cannot be negative")
        now = utcnow()
        try:
            with self.transaction() as conn:
                conn.execute(
                    "INSERT INTO token_account (user_id, balance, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?)",
                    (user_id, balance, now.isoformat(), now.isoformat())
                )
        except sqlite3.IntegrityError:
            raise ValueError(f"Token account already exists: {user_id}")
        return AccountBalance(user_id=user_id, balance=balance, updated_at=now)

    def get_account(self, user_id: str) -> Optional[AccountBalance]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT user_id, balance, updated_at FROM token_account WHERE user_id = ?",
                (user_id,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return AccountBalance(
            user_id=row[0],
            balance=row[1],
            updated_at=datetime.fromisoformat(row[2])
        )

    def balance_in(self, conn: sqlite3.Connection, user_id: str) -> Optional[int]:
        row = conn.execute(
            "SELECT balance FROM token_account WHERE user_id = ?", (user_id,)
        ).fetchone()
        return None if row is None else row[0]

    def try_decrement(self, conn: sqlite3.Connection, user_id: str, amount: int) -> bool:
        """Conditionally decrement a balance.

        The WHERE clause is the authoritative non-negative check: it only
        matches when the balance still covers the amount at write time.

        Returns:
            True if the balance was decremented
        """
        cursor = conn.execute(
            "UPDATE token_account SET balance = balance - ?, updated_at = ? "
            "WHERE user_id = ? AND balance >= ?",
            (amount, utcnow().isoformat(), user_id, amount)
        )
        return cursor.rowcount == 1

    def increment(self, conn: sqlite3.Connection, user_id: str, amount: int) -> int:
        """Add to a balance and return the new balance.

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        cursor = conn.execute(
            "UPDATE token_account SET balance = balance + ?, updated_at = ? WHERE user_id = ?",
            (amount, utcnow().isoformat(), user_id)
        )
        if cursor.rowcount != 1:
            raise AccountNotFoundError(user_id)
        return self.balance_in(conn, user_id)

    def set_balance(self, conn: sqlite3.Connection, user_id: str, balance: int) -> None:
        """Overwrite a balance.

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        cursor = conn.execute(
            "UPDATE token_account SET balance = ?, updated_at = ? WHERE user_id = ?",
            (balance, utcnow().isoformat(), user_id)
        )
        if cursor.rowcount != 1:
            raise AccountNotFoundError(user_id)

    def fetch_low_balance_accounts(self, threshold: int) -> List[Tuple[str, int, Optional[datetime]]]:
        """List accounts at or below a balance threshold.

        Returns:
            (user_id, balance, last_used) tuples ordered by balance ascending
        """
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT a.user_id, a.balance, MAX(u.created_at)
                FROM token_account a
                LEFT JOIN token_usage u ON u.user_id = a.user_id
                WHERE a.balance <= ?
                GROUP BY a.user_id, a.balance
                ORDER BY a.balance ASC, a.user_id ASC
            """, (threshold,)).fetchall()
        finally:
            conn.close()
        return [
            (row[0], row[1], datetime.fromisoformat(row[2]) if row[2] else None)
            for row in rows
        ]

    # Usage ledger (append-only)

    def batch_id_exists(self, conn: sqlite3.Connection, batch_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM token_usage WHERE batch_id = ? LIMIT 1", (batch_id,)
        ).fetchone()
        return row is not None

    def insert_usage_record(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        feature: Feature,
        operation: str,
        tokens_consumed: int,
        tokens_remaining: int,
        item_count: int = 1,
        batch_id: Optional[str] = None,
        is_batch: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UsageRecord:
        """Append a usage record inside the caller's transaction.

        There is deliberately no update or delete counterpart.

        Raises:
            BatchIdCollisionError: If batch_id is already recorded
        """
        now = utcnow()
        metadata = metadata or {}
        try:
            cursor = conn.execute("""
                INSERT INTO token_usage
                (user_id, feature, operation, tokens_consumed, tokens_remaining,
                 item_count, batch_id, is_batch, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                user_id,
                feature.value,
                operation,
                tokens_consumed,
                tokens_remaining,
                item_count,
                batch_id,
                int(is_batch),
                _dumps(metadata),
                now.isoformat()
            ))
        except sqlite3.IntegrityError as e:
            if batch_id is not None and "batch_id" in str(e):
                raise BatchIdCollisionError(batch_id)
            raise
        return UsageRecord(
            id=cursor.lastrowid,
            user_id=user_id,
            feature=feature,
            operation=operation,
            tokens_consumed=tokens_consumed,
            tokens_remaining=tokens_remaining,
            item_count=item_count,
            batch_id=batch_id,
            is_batch=is_batch,
            metadata=metadata,
            created_at=now
        )

    def fetch_usage_history(
        self,
        user_id: str,
        feature: Optional[Feature] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[UsageRecord], int]:
        """Fetch a page of usage records, newest first.

        Returns:
            (records on this page, total matching records)
        """
        conditions = ["user_id = ?"]
        params: List[Any] = [user_id]
        if feature is not None:
            conditions.append("feature = ?")
            params.append(feature.value)
        range_conditions, range_params = _range_conditions(start, end)
        conditions.extend(range_conditions)
        params.extend(range_params)
        where = " WHERE " + " AND ".join(conditions)

        conn = get_connection(self.db_path)
        try:
            total = conn.execute(
                "SELECT COUNT(*) FROM token_usage" + where, params
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT {_USAGE_COLUMNS} FROM token_usage{where} "
                "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                params + [limit, offset]
            ).fetchall()
        finally:
            conn.close()
        return [_usage_from_row(row) for row in rows], total

    def fetch_batch_record(self, batch_id: str, user_id: str) -> Optional[UsageRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_USAGE_COLUMNS} FROM token_usage "
                "WHERE batch_id = ? AND user_id = ? AND is_batch = 1",
                (batch_id, user_id)
            ).fetchone()
        finally:
            conn.close()
        return None if row is None else _usage_from_row(row)

    # Credit/debit journal

    def insert_transaction(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        token_type: Optional[TokenType],
        amount: int,
        balance_before: int,
        balance_after: int,
        source: str,
        expires_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        conn.execute("""
            INSERT INTO token_transaction
            (user_id, token_type, amount, balance_before, balance_after,
             source, expires_at, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            user_id,
            token_type.value if token_type else None,
            amount,
            balance_before,
            balance_after,
            source,
            expires_at.isoformat() if expires_at else None,
            _dumps(metadata),
            utcnow().isoformat()
        ))

    def fetch_transactions(self, user_id: str, start: Optional[datetime] = None) -> List[TokenTransaction]:
        """Fetch a user's journal entries in the order they were written."""
        conditions, params = _range_conditions(start, None)
        where = " AND ".join(["user_id = ?"] + conditions)
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM token_transaction WHERE {where} ORDER BY id ASC",
                [user_id] + params
            ).fetchall()
        finally:
            conn.close()
        return [_transaction_from_row(row) for row in rows]

    def fetch_transaction_page(
        self,
        user_id: str,
        source: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[TokenTransaction], int]:
        """Fetch a page of journal entries, newest first.

        Returns:
            (entries on this page, total matching entries)
        """
        conditions = ["user_id = ?"]
        params: List[Any] = [user_id]
        if source is not None:
            conditions.append("source = ?")
            params.append(source)
        range_conditions, range_params = _range_conditions(start, end)
        conditions.extend(range_conditions)
        params.extend(range_params)
        where = " WHERE " + " AND ".join(conditions)

        conn = get_connection(self.db_path)
        try:
            total = conn.execute(
                "SELECT COUNT(*) FROM token_transaction" + where, params
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM token_transaction{where} "
                "ORDER BY id DESC LIMIT ? OFFSET ?",
                params + [limit, offset]
            ).fetchall()
        finally:
            conn.close()
        return [_transaction_from_row(row) for row in rows], total

    # System-wide aggregates

    def fetch_usage_totals(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        top: int = 10,
    ) -> Tuple[int, int, List[Tuple[str, int]], List[Tuple[str, int]]]:
        """Aggregate consumption across all users.

        Admin rows (grants and resets) are not consumption and are excluded.

        Returns:
            (distinct users, tokens consumed, top features, top users); the top
            lists hold (name, tokens) pairs ordered by tokens descending
        """
        conditions = ["feature != ?"]
        params: List[Any] = [Feature.ADMIN.value]
        range_conditions, range_params = _range_conditions(start, end)
        conditions.extend(range_conditions)
        params.extend(range_params)
        where = " WHERE " + " AND ".join(conditions)

        conn = get_connection(self.db_path)
        try:
            users, consumed = conn.execute(
                "SELECT COUNT(DISTINCT user_id), COALESCE(SUM(tokens_consumed), 0) FROM token_usage" + where,
                params
            ).fetchone()
            features = conn.execute(
                "SELECT feature, SUM(tokens_consumed) AS used FROM token_usage" + where +
                " GROUP BY feature ORDER BY used DESC, feature ASC LIMIT ?",
                params + [top]
            ).fetchall()
            top_users = conn.execute(
                "SELECT user_id, SUM(tokens_consumed) AS used FROM token_usage" + where +
                " GROUP BY user_id ORDER BY used DESC, user_id ASC LIMIT ?",
                params + [top]
            ).fetchall()
        finally:
            conn.close()
        return (
            users,
            consumed,
            [(row[0], row[1]) for row in features],
            [(row[0], row[1]) for row in top_users],
        )

    # Attempt log

    def insert_activity(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        action: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        conn.execute(
            "INSERT INTO user_activity (user_id, action, metadata, created_at) VALUES (?, ?, ?, ?)",
            (user_id, action, _dumps(metadata), utcnow().isoformat())
        )

    def log_activity(self, user_id: str, action: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Append an attempt log entry in its own transaction."""
        with self.transaction() as conn:
            self.insert_activity(conn, user_id, action, metadata)

    def fetch_activity(self, user_id: str, action: Optional[str] = None) -> List[ActivityEntry]:
        query = "SELECT id, user_id, action, metadata, created_at FROM user_activity WHERE user_id = ?"
        params: List[Any] = [user_id]
        if action:
            query += " AND action = ?"
            params.append(action)
        query += " ORDER BY id ASC"
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [
            ActivityEntry(
                id=row[0],
                user_id=row[1],
                action=row[2],
                metadata=json.loads(row[3]),
                created_at=datetime.fromisoformat(row[4])
            )
            for row in rows
        ]

    # Notification bookkeeping

    def last_notification_at(self, user_id: str, kind: str) -> Optional[datetime]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT MAX(created_at) FROM notification_log WHERE user_id = ? AND kind = ?",
                (user_id, kind)
            ).fetchone()
        finally:
            conn.close()
        return datetime.fromisoformat(row[0]) if row and row[0] else None

    def insert_notification(self, user_id: str, kind: str, balance: int, at: datetime) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO notification_log (user_id, kind, balance, created_at) VALUES (?, ?, ?, ?)",
                (user_id, kind, balance, at.isoformat())
            )

    def is_flagged(self, user_id: str, kind: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT flagged FROM notification_state WHERE user_id = ? AND kind = ?",
                (user_id, kind)
            ).fetchone()
        finally:
            conn.close()
        return bool(row and row[0])

    def set_flag(self, user_id: str, kind: str, flagged: bool) -> None:
        with self.transaction() as conn:
            conn.execute("""
                INSERT INTO notification_state (user_id, kind, flagged, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, kind)
                DO UPDATE SET flagged = excluded.flagged, updated_at = excluded.updated_at
            """, (user_id, kind, int(flagged), utcnow().isoformat()))


def _usage_from_row(row) -> UsageRecord:
    return UsageRecord(
        id=row[0],
        user_id=row[1],
        feature=Feature(row[2]),
        operation=row[3],
        tokens_consumed=row[4],
        tokens_remaining=row[5],
        item_count=row[6],
        batch_id=row[7],
        is_batch=bool(row[8]),
        metadata=json.loads(row[9]),
        created_at=datetime.fromisoformat(row[10])
    )


def _transaction_from_row(row) -> TokenTransaction:
    return TokenTransaction(
        id=row[0],
        user_id=row[1],
        token_type=TokenType(row[2]) if row[2] else None,
        amount=row[3],
        balance_before=row[4],
        balance_after=row[5],
        source=row[6],
        expires_at=datetime.fromisoformat(row[7]) if row[7] else None,
        metadata=json.loads(row[8]),
        created_at=datetime.fromisoformat(row[9])
    )
