from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from memento.errors import NotFoundError, StoreUnavailable
from memento.models import Subscriber, endpoint_tail, merge_preferences, utc_now_iso

logger = logging.getLogger(__name__)

DB_PATH = Path(os.environ.get("MEMENTO_DB_PATH") or Path(__file__).resolve().parent.parent / "data.sqlite3")

# Serializes every read-modify-write in this process. BEGIN IMMEDIATE covers
# writers living in another process (a standalone scheduler).
_WRITE_LOCK = threading.RLock()


def get_conn() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH, timeout=5, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def _read() -> Iterator[sqlite3.Connection]:
    try:
        conn = get_conn()
    except sqlite3.Error as exc:
        raise StoreUnavailable(f"cannot open subscriber store: {exc}") from exc
    try:
        yield conn
    except sqlite3.Error as exc:
        raise StoreUnavailable(f"subscriber store read failed: {exc}") from exc
    finally:
        conn.close()


@contextmanager
def _write() -> Iterator[sqlite3.Connection]:
    with _WRITE_LOCK:
        try:
            conn = get_conn()
        except sqlite3.Error as exc:
            raise StoreUnavailable(f"cannot open subscriber store: {exc}") from exc
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StoreUnavailable(f"subscriber store write failed: {exc}") from exc
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()


def _insert_delivery(conn: sqlite3.Connection, endpoint: str, source: str, payload: dict, sent_at: str | None = None) -> None:
    conn.execute(
        "INSERT INTO delivery_log (sent_at, endpoint, source, payload_json) VALUES (?, ?, ?, ?)",
        (sent_at or utc_now_iso(), endpoint_tail(endpoint, 32), source, json.dumps(payload)),
    )


def init_db() -> None:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    with _write() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS subscriber (
                endpoint TEXT PRIMARY KEY,
                subscription_json TEXT NOT NULL,
                timezone TEXT NOT NULL,
                prefs_json TEXT,
                last_sent_local_date TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS delivery_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sent_at TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                source TEXT NOT NULL,
                payload_json TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS scheduler_lease (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                owner TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
            """
        )


def upsert_subscriber(subscriber: Subscriber) -> Subscriber:
    """Insert or refresh a subscriber keyed by endpoint.

    An existing record keeps its preferences, send marker and creation time
    unless the incoming record carries values for them.
    """
    row = subscriber.to_row()
    with _write() as conn:
        conn.execute(
            """
            INSERT INTO subscriber (endpoint, subscription_json, timezone, prefs_json, last_sent_local_date, created_at)
            VALUES (:endpoint, :subscription_json, :timezone, :prefs_json, :last_sent_local_date, :created_at)
            ON CONFLICT(endpoint) DO UPDATE SET
                subscription_json = excluded.subscription_json,
                timezone = excluded.timezone,
                prefs_json = COALESCE(excluded.prefs_json, subscriber.prefs_json),
                last_sent_local_date = COALESCE(excluded.last_sent_local_date, subscriber.last_sent_local_date)
            """,
            row,
        )
        stored = conn.execute("SELECT * FROM subscriber WHERE endpoint = ?", (subscriber.endpoint,)).fetchone()
    logger.info("Subscriber upserted %s (%s)", endpoint_tail(subscriber.endpoint), subscriber.timezone)
    return Subscriber.from_row(stored)


def find_subscriber(endpoint: str) -> Subscriber | None:
    with _read() as conn:
        row = conn.execute("SELECT * FROM subscriber WHERE endpoint = ?", (endpoint,)).fetchone()
    return Subscriber.from_row(row) if row else None


def remove_subscriber(endpoint: str) -> bool:
    with _write() as conn:
        cur = conn.execute("DELETE FROM subscriber WHERE endpoint = ?", (endpoint,))
        removed = cur.rowcount > 0
    if removed:
        logger.info("Subscriber removed %s", endpoint_tail(endpoint))
    return removed


def list_subscribers() -> list[Subscriber]:
    with _read() as conn:
        rows = conn.execute("SELECT * FROM subscriber ORDER BY created_at, endpoint").fetchall()
    return [Subscriber.from_row(r) for r in rows]


def count_subscribers() -> int:
    with _read() as conn:
        return conn.execute("SELECT COUNT(*) FROM subscriber").fetchone()[0]


def update_preferences(endpoint: str, update: dict, timezone: str | None = None) -> Subscriber:
    """Merge ``update`` into the stored preferences. Never creates a record."""
    with _write() as conn:
        row = conn.execute("SELECT * FROM subscriber WHERE endpoint = ?", (endpoint,)).fetchone()
        if row is None:
            raise NotFoundError(f"unknown endpoint {endpoint_tail(endpoint)}")
        subscriber = Subscriber.from_row(row)
        subscriber.preferences = merge_preferences(subscriber.preferences, update)
        if timezone:
            subscriber.timezone = timezone
        fields = subscriber.to_row()
        conn.execute(
            "UPDATE subscriber SET prefs_json = ?, timezone = ? WHERE endpoint = ?",
            (fields["prefs_json"], fields["timezone"], endpoint),
        )
    return subscriber


def commit_tick(sent: dict[str, str], removed: list[str], deliveries: list[tuple[str, dict]] | None = None) -> None:
    """Persist one scheduler tick: send markers, removals, delivery log rows.

    Markers are only applied to rows that still exist, so a subscriber that
    unsubscribed during the tick stays gone.
    """
    if not sent and not removed and not deliveries:
        return
    now = utc_now_iso()
    with _write() as conn:
        for endpoint, local_date in sent.items():
            conn.execute(
                "UPDATE subscriber SET last_sent_local_date = ? WHERE endpoint = ?",
                (local_date, endpoint),
            )
        for endpoint in removed:
            conn.execute("DELETE FROM subscriber WHERE endpoint = ?", (endpoint,))
        for endpoint, payload in deliveries or []:
            _insert_delivery(conn, endpoint, "scheduled", payload, sent_at=now)


def log_delivery(endpoint: str, source: str, payload: dict) -> None:
    with _write() as conn:
        _insert_delivery(conn, endpoint, source, payload)


def recent_deliveries(limit: int = 50) -> list[dict]:
    with _read() as conn:
        rows = conn.execute(
            "SELECT sent_at, endpoint, source, payload_json FROM delivery_log ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()
    return [
        {"sent_at": r["sent_at"], "endpoint": r["endpoint"], "source": r["source"], "payload": json.loads(r["payload_json"])}
        for r in rows
    ]


def claim_scheduler_lease(owner: str, ttl_seconds: float, now: float | None = None) -> bool:
    """Take or renew the single scheduler lease. False while another owner holds it."""
    now = time.time() if now is None else now
    with _write() as conn:
        row = conn.execute("SELECT owner, expires_at FROM scheduler_lease WHERE id = 1").fetchone()
        if row is not None and row["owner"] != owner and row["expires_at"] > now:
            return False
        conn.execute(
            """
            INSERT INTO scheduler_lease (id, owner, expires_at) VALUES (1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET owner = excluded.owner, expires_at = excluded.expires_at
            """,
            (owner, now + ttl_seconds),
        )
    if row is None or row["owner"] != owner:
        logger.info("Scheduler lease taken by %s", owner)
    return True


def release_scheduler_lease(owner: str) -> None:
    with _write() as conn:
        conn.execute("DELETE FROM scheduler_lease WHERE id = 1 AND owner = ?", (owner,))
