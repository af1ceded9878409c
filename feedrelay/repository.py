"""SQLite persistence for feed sources, subscriptions and delivery records."""

import json
import sqlite3
import threading
from datetime import datetime

from .exceptions import StorageError
from .models import FeedSource, Subscription

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS feeds (
    id TEXT PRIMARY KEY,
    url TEXT UNIQUE NOT NULL,
    title TEXT NOT NULL,
    last_polled TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS subscriptions (
    id TEXT PRIMARY KEY,
    recipient TEXT NOT NULL,
    feed_id TEXT NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    filters TEXT NOT NULL DEFAULT '[]',
    just_subscribed INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    UNIQUE(recipient, feed_id)
);

CREATE TABLE IF NOT EXISTS deliveries (
    subscription_id TEXT NOT NULL,
    guid TEXT NOT NULL,
    delivered_at TEXT NOT NULL,
    PRIMARY KEY (subscription_id, guid)
);

CREATE INDEX IF NOT EXISTS idx_subscriptions_recipient ON subscriptions(recipient);
CREATE INDEX IF NOT EXISTS idx_subscriptions_feed_id ON subscriptions(feed_id);
"""


class SQLiteRepository:
    """SQLite store for the feed registry and the delivery ledger.

    The connection is shared between the event loop and worker threads, so
    every statement runs under ``lock``.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and initialize schema."""
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def execute(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        """Run a write statement and commit it.

        Raises:
            StorageError: If the write cannot be committed.
        """
        with self.lock:
            try:
                cursor = self.conn.execute(sql, params)
                self.conn.commit()
                return cursor
            except sqlite3.IntegrityError:
                self.conn.rollback()
                raise
            except sqlite3.Error as e:
                self.conn.rollback()
                raise StorageError(f"Database write failed: {e}") from e

    def query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self.lock:
            return self.conn.execute(sql, params).fetchall()

    # --- Feed operations ---

    def add_feed(self, feed: FeedSource) -> FeedSource:
        """Insert a new feed source."""
        self.execute(
            """INSERT INTO feeds (id, url, title, last_polled, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (
                feed.id,
                feed.url,
                feed.title,
                _dt_to_str(feed.last_polled),
                _dt_to_str(feed.created_at),
            ),
        )
        return feed

    def get_feed(self, feed_id: str) -> FeedSource | None:
        rows = self.query("SELECT * FROM feeds WHERE id = ?", (feed_id,))
        return _row_to_feed(rows[0]) if rows else None

    def get_feed_by_url(self, url: str) -> FeedSource | None:
        """Look up a feed by its URL."""
        rows = self.query("SELECT * FROM feeds WHERE url = ?", (url,))
        return _row_to_feed(rows[0]) if rows else None

    def list_feeds(self) -> list[FeedSource]:
        rows = self.query("SELECT * FROM feeds ORDER BY created_at, id")
        return [_row_to_feed(r) for r in rows]

    def delete_feed(self, feed_id: str) -> bool:
        """Delete a feed. Returns True if deleted."""
        cursor = self.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
        return cursor.rowcount > 0

    def update_feed_last_polled(self, feed_id: str, timestamp: datetime) -> None:
        self.execute(
            "UPDATE feeds SET last_polled = ? WHERE id = ?",
            (_dt_to_str(timestamp), feed_id),
        )

    # --- Subscription operations ---

    def add_subscription(self, subscription: Subscription) -> Subscription:
        """Insert a subscription.

        Raises:
            sqlite3.IntegrityError: If (recipient, feed_id) already exists.
        """
        self.execute(
            """INSERT INTO subscriptions (id, recipient, feed_id, title, filters,
               just_subscribed, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                subscription.id,
                subscription.recipient,
                subscription.feed_id,
                subscription.title,
                json.dumps(list(subscription.filters)),
                int(subscription.just_subscribed),
                _dt_to_str(subscription.created_at),
            ),
        )
        return subscription

    def get_subscription(self, subscription_id: str) -> Subscription | None:
        rows = self.query(
            "SELECT * FROM subscriptions WHERE id = ?", (subscription_id,)
        )
        return _row_to_subscription(rows[0]) if rows else None

    def get_subscription_for_feed(
        self, recipient: str, feed_id: str
    ) -> Subscription | None:
        rows = self.query(
            "SELECT * FROM subscriptions WHERE recipient = ? AND feed_id = ?",
            (recipient, feed_id),
        )
        return _row_to_subscription(rows[0]) if rows else None

    def list_subscriptions(self, recipient: str) -> list[Subscription]:
        rows = self.query(
            """SELECT * FROM subscriptions WHERE recipient = ?
               ORDER BY created_at, id""",
            (recipient,),
        )
        return [_row_to_subscription(r) for r in rows]

    def list_subscriptions_for_feed(self, feed_id: str) -> list[Subscription]:
        rows = self.query(
            "SELECT * FROM subscriptions WHERE feed_id = ? ORDER BY created_at, id",
            (feed_id,),
        )
        return [_row_to_subscription(r) for r in rows]

    def find_subscription(
        self, recipient: str, identifier: str
    ) -> Subscription | None:
        """Find a chat's subscription by feed URL or display title."""
        rows = self.query(
            """SELECT subscriptions.* FROM subscriptions
               JOIN feeds ON subscriptions.feed_id = feeds.id
               WHERE subscriptions.recipient = ?
                 AND (feeds.url = ? OR subscriptions.title = ?)
               ORDER BY subscriptions.created_at, subscriptions.id""",
            (recipient, identifier, identifier),
        )
        return _row_to_subscription(rows[0]) if rows else None

    def count_subscriptions_for_feed(self, feed_id: str) -> int:
        rows = self.query(
            "SELECT COUNT(*) AS cnt FROM subscriptions WHERE feed_id = ?",
            (feed_id,),
        )
        return rows[0]["cnt"] if rows else 0

    def delete_subscription(self, subscription_id: str) -> bool:
        cursor = self.execute(
            "DELETE FROM subscriptions WHERE id = ?", (subscription_id,)
        )
        return cursor.rowcount > 0

    def update_subscription_filters(
        self, subscription_id: str, filters: tuple[str, ...]
    ) -> None:
        self.execute(
            "UPDATE subscriptions SET filters = ? WHERE id = ?",
            (json.dumps(list(filters)), subscription_id),
        )

    def clear_just_subscribed(self, subscription_ids: list[str]) -> int:
        """Mark subscriptions as having seen their first poll."""
        if not subscription_ids:
            return 0
        placeholders = ",".join("?" for _ in subscription_ids)
        cursor = self.execute(
            f"""UPDATE subscriptions SET just_subscribed = 0
                WHERE id IN ({placeholders}) AND just_subscribed = 1""",
            subscription_ids,
        )
        return cursor.rowcount


# --- Helper functions ---


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for storage."""
    return dt.isoformat() if dt else None


def _str_to_dt(s: str | None) -> datetime | None:
    """Convert stored ISO string back to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _row_to_feed(row: sqlite3.Row) -> FeedSource:
    return FeedSource(
        id=row["id"],
        url=row["url"],
        title=row["title"],
        last_polled=_str_to_dt(row["last_polled"]),
        created_at=_str_to_dt(row["created_at"]),
    )


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    return Subscription(
        id=row["id"],
        recipient=row["recipient"],
        feed_id=row["feed_id"],
        title=row["title"],
        filters=tuple(json.loads(row["filters"] or "[]")),
        just_subscribed=bool(row["just_subscribed"]),
        created_at=_str_to_dt(row["created_at"]),
    )
