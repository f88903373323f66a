# med_store.py
# Encrypted SQLite medication store with a live "all medications" query.
#
# The database file on disk is AES-GCM encrypted. Every operation decrypts
# it into a private temp file, runs, and writes it back (re-encrypted) only
# if rows changed. Mutations, write-back and subscriber emission all run
# under one lock, so subscribers see lists in the same order the mutations
# were made.

import sqlite3
import uuid
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Callable, Deque, List, Optional

from cryptography.exceptions import InvalidTag

from med_config import TMP_DIRNAME
from med_crypto import aes_decrypt, aes_encrypt, atomic_write_bytes
from med_errors import RecordNotFound, StorageFault
from med_log import logger
from med_records import MedicationRecord

RecordsCallback = Callable[[List[MedicationRecord]], None]

SCHEMA = """
    CREATE TABLE medications (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        start_date TEXT NOT NULL,
        time TEXT NOT NULL,
        frequency TEXT NOT NULL DEFAULT 'daily'
            CHECK (frequency IN ('daily', 'limited')),
        end_date TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT ''
    )
"""

# BINARY collation: case-sensitive, uppercase before lowercase
SELECT_ALL = "SELECT * FROM medications ORDER BY name, id"

INSERT_SQL = """
    INSERT OR REPLACE INTO medications
        (id, name, start_date, time, frequency, end_date, description)
    VALUES (:id, :name, :start_date, :time, :frequency, :end_date, :description)
"""

UPDATE_SQL = """
    UPDATE medications
    SET name=:name, start_date=:start_date, time=:time, frequency=:frequency,
        end_date=:end_date, description=:description
    WHERE id=:id
"""


class Subscription:
    """Handle returned by MedicationStore.subscribe_all()."""

    def __init__(self, store: "MedicationStore", callback: RecordsCallback):
        self._store = store
        self.callback = callback
        self.latest: List[MedicationRecord] = []
        self.active = True

    def deliver(self, records: List[MedicationRecord]):
        self.latest = list(records)
        self.callback(list(records))

    def close(self):
        if self.active:
            self.active = False
            self._store._unsubscribe(self)


class MedicationStore:
    def __init__(self, db_path: Path, key: bytes, tmp_dir: Optional[Path] = None):
        self.db_path = Path(db_path)
        self.key = key
        self.tmp_dir = Path(tmp_dir) if tmp_dir else self.db_path.parent / TMP_DIRNAME
        self._lock = RLock()
        self._subscribers: List[Subscription] = []
        self._pending: Deque[List[MedicationRecord]] = deque()
        self._emitting = False
        self._ensure_db()

    def _tmp_path(self, prefix: str, suffix: str) -> Path:
        return self.tmp_dir / f"{prefix}.{uuid.uuid4().hex}{suffix}"

    def _ensure_db(self):
        with self._lock:
            if self.db_path.exists():
                return
            tmp = self._tmp_path("init", ".db")
            try:
                self.tmp_dir.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(tmp))
                try:
                    conn.execute(SCHEMA)
                    conn.commit()
                finally:
                    conn.close()
                atomic_write_bytes(self.db_path, aes_encrypt(tmp.read_bytes(), self.key))
                logger.info(f"created medication db: {self.db_path}")
            except (sqlite3.Error, OSError) as exc:
                raise StorageFault(f"cannot create medication database: {exc}") from exc
            finally:
                tmp.unlink(missing_ok=True)

    @contextmanager
    def _get_conn(self):
        with self._lock:
            tmp = self._tmp_path("work", ".db")
            try:
                if not self.db_path.exists():
                    self._ensure_db()
                atomic_write_bytes(tmp, aes_decrypt(self.db_path.read_bytes(), self.key))

                conn = sqlite3.connect(str(tmp))
                conn.row_factory = sqlite3.Row
                try:
                    yield conn
                    changed = conn.total_changes > 0
                finally:
                    conn.close()

                if changed:
                    atomic_write_bytes(self.db_path, aes_encrypt(tmp.read_bytes(), self.key))
            except InvalidTag as exc:
                raise StorageFault("cannot decrypt medication database (wrong key or corrupt file)") from exc
            except (sqlite3.Error, OSError) as exc:
                raise StorageFault(f"medication database error: {exc}") from exc
            finally:
                tmp.unlink(missing_ok=True)

    @staticmethod
    def _fetch_all(conn: sqlite3.Connection) -> List[MedicationRecord]:
        return [MedicationRecord.from_row(row) for row in conn.execute(SELECT_ALL).fetchall()]

    # -------------------------
    # Mutations
    # -------------------------
    def insert(self, record: MedicationRecord) -> int:
        """Persist a record and return its id.

        A record with id 0 gets a fresh id. A record carrying an id replaces
        the row with that id.
        """
        with self._lock:
            with self._get_conn() as conn:
                cur = conn.execute(INSERT_SQL, record.to_row())
                conn.commit()
                record_id = int(cur.lastrowid)
                records = self._fetch_all(conn)
            logger.info(f"inserted medication id={record_id} name={record.name!r}")
            self._emit(records)
            return record_id

    def update(self, record: MedicationRecord):
        if not record.is_persisted:
            raise ValueError("cannot update a medication that was never inserted")
        with self._lock:
            with self._get_conn() as conn:
                cur = conn.execute(UPDATE_SQL, record.to_row())
                if cur.rowcount == 0:
                    raise RecordNotFound(record.id)
                conn.commit()
                records = self._fetch_all(conn)
            logger.info(f"updated medication id={record.id}")
            self._emit(records)

    def delete(self, record_id: int):
        with self._lock:
            with self._get_conn() as conn:
                cur = conn.execute("DELETE FROM medications WHERE id=?", (int(record_id),))
                if cur.rowcount == 0:
                    logger.debug(f"delete: no medication id={record_id}")
                    return
                conn.commit()
                records = self._fetch_all(conn)
            logger.info(f"deleted medication id={record_id}")
            self._emit(records)

    # -------------------------
    # Live query
    # -------------------------
    def subscribe_all(self, callback: RecordsCallback) -> Subscription:
        """Deliver the full list ordered by name now and after every mutation."""
        with self._lock:
            with self._get_conn() as conn:
                records = self._fetch_all(conn)
            sub = Subscription(self, callback)
            self._subscribers.append(sub)
            self._deliver(sub, records)
            return sub

    def _unsubscribe(self, sub: Subscription):
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def _emit(self, records: List[MedicationRecord]):
        # a subscriber that mutates the store queues the newer list behind
        # the one still being delivered
        self._pending.append(records)
        if self._emitting:
            return
        self._emitting = True
        try:
            while self._pending:
                current = self._pending.popleft()
                for sub in list(self._subscribers):
                    self._deliver(sub, current)
        finally:
            self._emitting = False
            self._pending.clear()

    @staticmethod
    def _deliver(sub: Subscription, records: List[MedicationRecord]):
        try:
            sub.deliver(records)
        except Exception:
            name = getattr(sub.callback, "__name__", repr(sub.callback))
            logger.exception(f"medication subscriber {name} failed")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def close(self):
        with self._lock:
            for sub in list(self._subscribers):
                sub.active = False
            self._subscribers.clear()
