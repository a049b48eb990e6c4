#!/usr/bin/env python3
"""
Watch storage: due-set selection, per-watch locked updates and the change log.

Two interchangeable stores implement the same surface:

- MemoryWatchStore: process-local dicts, one threading.Lock per watch.
- SqliteWatchStore: sqlite3 file (or ':memory:'), every locked update runs in
  a BEGIN IMMEDIATE transaction so other processes sharing the file are
  excluded as well.

`with_watch_lock(watch_id, fn)` calls `fn(watch, tx)` with the freshly loaded
watch and a WatchTransaction. The watch returned by `fn` and every change
appended through `tx` are stored together, or not at all when `fn` raises.
"""
from __future__ import annotations

import itertools
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Callable, Dict, List, Optional

from models import Change, Watch


logger = logging.getLogger(__name__)


class WatchError(Exception):
    pass


class WatchNotFound(WatchError, LookupError):
    pass


class DuplicateWatch(WatchError):
    pass


@dataclass
class WatchTransaction:
    watch_id: int
    pending: List[Change] = field(default_factory=list)

    def append_change(self, detected_at: datetime, from_value: Optional[str], to_value: str) -> Change:
        if not to_value:
            raise ValueError("change to_value can't be blank")
        ch = Change(watch_id=self.watch_id, detected_at=detected_at, from_value=from_value, to_value=to_value)
        self.pending.append(ch)
        return ch


@dataclass
class Committed:
    watch: Watch
    changes: List[Change]


LockFn = Callable[[Watch, WatchTransaction], Watch]


class WatchStore:
    """Storage surface consumed by the monitor."""

    def add_watch(self, watch: Watch) -> Watch:
        raise NotImplementedError

    def get_watch(self, watch_id: int) -> Watch:
        raise NotImplementedError

    def list_watches(self) -> List[Watch]:
        raise NotImplementedError

    def delete_watch(self, watch_id: int) -> None:
        raise NotImplementedError

    def due_for_check(self, now: datetime) -> List[Watch]:
        raise NotImplementedError

    def with_watch_lock(self, watch_id: int, fn: LockFn) -> Committed:
        raise NotImplementedError

    def append_change(self, watch_id: int, detected_at: datetime, from_value: Optional[str], to_value: str) -> int:
        raise NotImplementedError

    def changes_for(self, watch_id: int) -> List[Change]:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def _check_returned(watch_id: int, updated) -> Watch:
    if not isinstance(updated, Watch):
        raise TypeError(f"locked update for watch {watch_id} must return a Watch, got {type(updated).__name__}")
    return updated.copy(id=watch_id)


class MemoryWatchStore(WatchStore):
    def __init__(self):
        self._mutex = threading.Lock()
        self._locks: Dict[int, threading.Lock] = {}
        self._watches: Dict[int, Watch] = {}
        self._changes: Dict[int, List[Change]] = {}
        self._watch_ids = itertools.count(1)
        self._change_ids = itertools.count(1)

    def _lock_for(self, watch_id: int) -> threading.Lock:
        with self._mutex:
            return self._locks.setdefault(watch_id, threading.Lock())

    def add_watch(self, watch: Watch) -> Watch:
        with self._mutex:
            if any(w.key == watch.key for w in self._watches.values()):
                raise DuplicateWatch(f"watch already exists: {watch.label()}")
            stored = watch.copy(id=next(self._watch_ids))
            self._watches[stored.id] = stored
            self._changes[stored.id] = []
            return stored.copy()

    def get_watch(self, watch_id: int) -> Watch:
        with self._mutex:
            w = self._watches.get(watch_id)
            if w is None:
                raise WatchNotFound(f"watch {watch_id} not found")
            return w.copy()

    def list_watches(self) -> List[Watch]:
        with self._mutex:
            return [w.copy() for _id, w in sorted(self._watches.items())]

    def delete_watch(self, watch_id: int) -> None:
        with self._lock_for(watch_id):
            with self._mutex:
                if self._watches.pop(watch_id, None) is None:
                    raise WatchNotFound(f"watch {watch_id} not found")
                self._changes.pop(watch_id, None)
                self._locks.pop(watch_id, None)

    def due_for_check(self, now: datetime) -> List[Watch]:
        with self._mutex:
            due = [w.copy() for w in self._watches.values() if w.next_check_at <= now]
        return sorted(due, key=lambda w: (w.next_check_at, w.id))

    def with_watch_lock(self, watch_id: int, fn: LockFn) -> Committed:
        with self._lock_for(watch_id):
            current = self.get_watch(watch_id)
            tx = WatchTransaction(watch_id)
            updated = _check_returned(watch_id, fn(current, tx))
            with self._mutex:
                if watch_id not in self._watches:
                    raise WatchNotFound(f"watch {watch_id} deleted during update")
                self._watches[watch_id] = updated
                committed = [self._store_change(ch) for ch in tx.pending]
            return Committed(watch=updated.copy(), changes=committed)

    def _store_change(self, ch: Change) -> Change:
        stored = Change(
            id=next(self._change_ids),
            watch_id=ch.watch_id,
            detected_at=ch.detected_at,
            from_value=ch.from_value,
            to_value=ch.to_value,
        )
        self._changes.setdefault(ch.watch_id, []).append(stored)
        return stored

    def append_change(self, watch_id: int, detected_at: datetime, from_value: Optional[str], to_value: str) -> int:
        ch = WatchTransaction(watch_id).append_change(detected_at, from_value, to_value)
        with self._mutex:
            if watch_id not in self._watches:
                raise WatchNotFound(f"watch {watch_id} not found")
            return self._store_change(ch).id

    def changes_for(self, watch_id: int) -> List[Change]:
        with self._mutex:
            items = list(self._changes.get(watch_id, []))
        return sorted(items, key=lambda c: (c.detected_at, c.id), reverse=True)


_SCHEMA = (
    "CREATE TABLE IF NOT EXISTS watches ("
    "id INTEGER PRIMARY KEY AUTOINCREMENT, "
    "domain TEXT NOT NULL, "
    "record_type TEXT NOT NULL, "
    "record_name TEXT NOT NULL, "
    "interval_seconds INTEGER NOT NULL DEFAULT 300, "
    "last_checked_at REAL, "
    "next_check_at REAL NOT NULL, "
    "last_value TEXT"
    ")",
    "CREATE INDEX IF NOT EXISTS watches_next_check_idx ON watches(next_check_at)",
    "CREATE UNIQUE INDEX IF NOT EXISTS watches_uniqueness ON watches(domain, record_type, lower(record_name))",
    "CREATE TABLE IF NOT EXISTS changes ("
    "id INTEGER PRIMARY KEY AUTOINCREMENT, "
    "watch_id INTEGER NOT NULL REFERENCES watches(id) ON DELETE CASCADE, "
    "detected_at REAL NOT NULL, "
    "from_value TEXT, "
    "to_value TEXT NOT NULL"
    ")",
    "CREATE INDEX IF NOT EXISTS changes_watch_detected_idx ON changes(watch_id, detected_at)",
)

_WATCH_COLUMNS = "id, domain, record_type, record_name, interval_seconds, last_checked_at, next_check_at, last_value"


def _ts(dt: Optional[datetime]) -> Optional[float]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _dt(ts) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), timezone.utc)


def _row_to_watch(row) -> Watch:
    return Watch(
        id=int(row[0]),
        domain=row[1],
        record_type=row[2],
        record_name=row[3],
        interval=timedelta(seconds=int(row[4])),
        last_checked_at=_dt(row[5]),
        next_check_at=_dt(row[6]),
        last_value=row[7],
    )


class SqliteWatchStore(WatchStore):
    """sqlite3-backed store.

    A single connection is shared between threads and guarded by an RLock;
    writes use BEGIN IMMEDIATE so a second process on the same file blocks
    (up to `busy_timeout` seconds) instead of interleaving.
    """

    def __init__(self, db_path: str, *, busy_timeout: float = 30.0, journal_mode: str = "WAL", create_dir: bool = True):
        self.db_path = str(db_path)
        if self.db_path != ':memory:':
            self.db_path = os.path.abspath(os.path.expanduser(self.db_path))
            if create_dir:
                dir_path = os.path.dirname(self.db_path)
                if dir_path:
                    os.makedirs(dir_path, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, timeout=busy_timeout, check_same_thread=False, isolation_level=None)
        try:
            self._conn.execute(f"PRAGMA journal_mode={journal_mode}")
        except sqlite3.DatabaseError as e:
            logger.debug("journal_mode %s not applied: %s", journal_mode, e)
        self._conn.execute("PRAGMA foreign_keys = ON")
        with self._lock:
            for stmt in _SCHEMA:
                self._conn.execute(stmt)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _write(self, body):
        """Run body(conn) inside BEGIN IMMEDIATE ... COMMIT, rolling back on any error."""
        with self._lock:
            conn = self._conn
            conn.execute("BEGIN IMMEDIATE")
            try:
                result = body(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return result

    def _load(self, conn, watch_id: int) -> Watch:
        row = conn.execute(f"SELECT {_WATCH_COLUMNS} FROM watches WHERE id=?", (watch_id,)).fetchone()
        if row is None:
            raise WatchNotFound(f"watch {watch_id} not found")
        return _row_to_watch(row)

    def add_watch(self, watch: Watch) -> Watch:
        def body(conn):
            try:
                cur = conn.execute(
                    "INSERT INTO watches (domain, record_type, record_name, interval_seconds, last_checked_at, next_check_at, last_value) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        watch.domain,
                        watch.record_type.value,
                        watch.record_name,
                        watch.interval_seconds,
                        _ts(watch.last_checked_at),
                        _ts(watch.next_check_at),
                        watch.last_value,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateWatch(f"watch already exists: {watch.label()}") from e
            return self._load(conn, cur.lastrowid)

        return self._write(body)

    def get_watch(self, watch_id: int) -> Watch:
        with self._lock:
            return self._load(self._conn, watch_id)

    def list_watches(self) -> List[Watch]:
        with self._lock:
            rows = self._conn.execute(f"SELECT {_WATCH_COLUMNS} FROM watches ORDER BY id").fetchall()
        return [_row_to_watch(r) for r in rows]

    def delete_watch(self, watch_id: int) -> None:
        def body(conn):
            cur = conn.execute("DELETE FROM watches WHERE id=?", (watch_id,))
            if cur.rowcount == 0:
                raise WatchNotFound(f"watch {watch_id} not found")

        self._write(body)

    def due_for_check(self, now: datetime) -> List[Watch]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_WATCH_COLUMNS} FROM watches WHERE next_check_at <= ? ORDER BY next_check_at, id",
                (_ts(now),),
            ).fetchall()
        return [_row_to_watch(r) for r in rows]

    def with_watch_lock(self, watch_id: int, fn: LockFn) -> Committed:
        def body(conn):
            current = self._load(conn, watch_id)
            tx = WatchTransaction(watch_id)
            updated = _check_returned(watch_id, fn(current, tx))
            conn.execute(
                "UPDATE watches SET last_value=?, last_checked_at=?, next_check_at=?, interval_seconds=? WHERE id=?",
                (
                    updated.last_value,
                    _ts(updated.last_checked_at),
                    _ts(updated.next_check_at),
                    updated.interval_seconds,
                    watch_id,
                ),
            )
            committed = [self._insert_change(conn, ch) for ch in tx.pending]
            return Committed(watch=updated, changes=committed)

        return self._write(body)

    @staticmethod
    def _insert_change(conn, ch: Change) -> Change:
        cur = conn.execute(
            "INSERT INTO changes (watch_id, detected_at, from_value, to_value) VALUES (?, ?, ?, ?)",
            (ch.watch_id, _ts(ch.detected_at), ch.from_value, ch.to_value),
        )
        return Change(
            id=int(cur.lastrowid),
            watch_id=ch.watch_id,
            detected_at=ch.detected_at,
            from_value=ch.from_value,
            to_value=ch.to_value,
        )

    def append_change(self, watch_id: int, detected_at: datetime, from_value: Optional[str], to_value: str) -> int:
        ch = WatchTransaction(watch_id).append_change(detected_at, from_value, to_value)

        def body(conn):
            self._load(conn, watch_id)
            return self._insert_change(conn, ch).id

        return self._write(body)

    def changes_for(self, watch_id: int) -> List[Change]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, watch_id, detected_at, from_value, to_value FROM changes "
                "WHERE watch_id=? ORDER BY detected_at DESC, id DESC",
                (watch_id,),
            ).fetchall()
        return [
            Change(id=int(r[0]), watch_id=int(r[1]), detected_at=_dt(r[2]), from_value=r[3], to_value=r[4])
            for r in rows
        ]


def open_store(path: Optional[str]) -> WatchStore:
    """Return a SqliteWatchStore for `path`, or a MemoryWatchStore when no path is given."""
    if not path:
        return MemoryWatchStore()
    return SqliteWatchStore(path)
