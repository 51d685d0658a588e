"""
SQLite record store for the Settlement Sync service.
Two partitions (synced / manually uploaded), each replaced one settlement
month at a time. Every public call opens and closes its own connection.
"""

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional

from errors import StoreUnavailable, StoreWriteError
from models import Partition, SettlementRecord
from validator import is_valid_amount, normalize_period_key, validate_records

log = logging.getLogger('settlement')

DB_NAME = 'settlements.db'

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS {table} (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        period_key  TEXT NOT NULL,
        title       TEXT NOT NULL,
        amount      NUMERIC
    );
    CREATE INDEX IF NOT EXISTS idx_{table}_period ON {table} (period_key);
    CREATE INDEX IF NOT EXISTS idx_{table}_title ON {table} (title);
"""


def default_db_path() -> str:
    return os.getenv('SETTLEMENT_DB_PATH') or os.path.join(
        os.path.dirname(os.path.abspath(__file__)), DB_NAME)


class RecordStore:
    """Keyed settlement store over one sqlite file."""

    def __init__(self, db_path: Optional[str] = None, timeout: float = 10.0):
        self.db_path = db_path or default_db_path()
        self.timeout = timeout
        self._schema_ready = False

    # -----------------------------------------------------------------------
    # Connections
    # -----------------------------------------------------------------------

    def _open(self) -> sqlite3.Connection:
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout)
            conn.row_factory = sqlite3.Row
            conn.execute('PRAGMA journal_mode=WAL')
            if not self._schema_ready:
                for partition in Partition:
                    conn.executescript(_SCHEMA.format(table=partition.value))
                conn.commit()
                self._schema_ready = True
            return conn
        except sqlite3.Error as e:
            if conn is not None:
                conn.close()
            log.error("Settlement store unavailable (%s): %s", self.db_path, e)
            raise StoreUnavailable(f'Could not open settlement store: {e}') from e

    @contextmanager
    def connect(self):
        """Context manager: yields a connection, commits on success, rolls back on error."""
        conn = self._open()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _query(self, sql: str, params=()) -> List[sqlite3.Row]:
        """Run one read statement; any sqlite failure surfaces as StoreUnavailable."""
        try:
            with self.connect() as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            log.error("Settlement store read failed (%s): %s", self.db_path, e)
            raise StoreUnavailable(f'Settlement store read failed: {e}') from e

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def count(self, partition: Partition) -> int:
        table = Partition.parse(partition).value
        return self._query(f'SELECT COUNT(*) FROM {table}')[0][0]

    def scan_all(self, partition: Partition) -> List[SettlementRecord]:
        table = Partition.parse(partition).value
        rows = self._query(f'SELECT id, period_key, title, amount FROM {table} ORDER BY id')
        return [_row_to_record(r) for r in rows]

    def scan_period(self, partition: Partition, period_key: str) -> List[SettlementRecord]:
        table = Partition.parse(partition).value
        key = normalize_period_key(period_key)
        rows = self._query(
            f'SELECT id, period_key, title, amount FROM {table} WHERE period_key = ? ORDER BY id', (key,))
        return [_row_to_record(r) for r in rows]

    def period_keys(self, partition: Partition) -> List[str]:
        """Distinct stored settlement months, ascending."""
        table = Partition.parse(partition).value
        rows = self._query(f'SELECT DISTINCT period_key FROM {table} ORDER BY period_key')
        return [r[0] for r in rows]

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def delete_by_period(self, partition: Partition, period_key: str) -> int:
        """Delete every record of one settlement month. Returns the number deleted."""
        table = Partition.parse(partition).value
        key = normalize_period_key(period_key)
        try:
            with self.connect() as conn:
                deleted = _delete_period(conn, table, key)
        except sqlite3.Error as e:
            raise StoreWriteError(f'Delete failed for {key}: {e}') from e
        log.info("Deleted %d existing record(s) for %s in %s", deleted, key, table)
        return deleted

    def insert_many(self, partition: Partition, records: Iterable) -> dict:
        """Append records. Invalid ones are skipped and logged, never aborting the batch."""
        table = Partition.parse(partition).value
        valid = validate_records(records)
        if not valid:
            return {'saved_count': 0}
        try:
            with self.connect() as conn:
                _insert_records(conn, table, valid)
        except sqlite3.Error as e:
            raise StoreWriteError(f'Insert failed in {table}: {e}') from e
        log.info("Added %d record(s) to %s", len(valid), table)
        return {'saved_count': len(valid)}

    def replace_period(self, partition: Partition, period_key: str, records: Iterable) -> dict:
        """Delete-then-insert one settlement month as a single transaction.

        Every stored record takes period_key. If the insert fails the delete is
        rolled back, so the month keeps its previous generation.
        """
        table = Partition.parse(partition).value
        key = normalize_period_key(period_key)
        valid = validate_records(records, period_key=key)
        try:
            with self.connect() as conn:
                deleted = _delete_period(conn, table, key)
                _insert_records(conn, table, valid)
        except sqlite3.Error as e:
            log.error("Replace failed for %s in %s: %s", key, table, e)
            raise StoreWriteError(f'Replace failed for {key}: {e}') from e
        log.info("Replaced %s in %s: %d deleted, %d saved", key, table, deleted, len(valid))
        return {'deleted_count': deleted, 'saved_count': len(valid)}

    # -----------------------------------------------------------------------
    # Aggregates (full scans; bad rows are excluded and logged)
    # -----------------------------------------------------------------------

    def sum_amount(self, partition: Partition):
        table = Partition.parse(partition).value
        total = 0
        rows = self._query(f'SELECT id, amount FROM {table}')
        for r in rows:
            if is_valid_amount(r['amount']):
                total += r['amount']
            else:
                log.warning("sum_amount: invalid amount in %s record %s: %r", table, r['id'], r['amount'])
        log.debug("sum_amount: %s from %d record(s) in %s", total, len(rows), table)
        return total

    def sum_amount_by_title(self, partition: Partition) -> Dict[str, float]:
        table = Partition.parse(partition).value
        sums: Dict[str, float] = {}
        rows = self._query(f'SELECT id, title, amount FROM {table} ORDER BY id')
        for r in rows:
            title = r['title']
            if not title or not is_valid_amount(r['amount']):
                log.warning("sum_amount_by_title: skipping %s record %s (title=%r, amount=%r)",
                            table, r['id'], title, r['amount'])
                continue
            sums[title] = sums.get(title, 0) + r['amount']
        return sums

    def monthly_sums(self, partition: Partition, year: int) -> Dict[str, float]:
        """Per-month totals for one year, keyed 'YYYY-MM'."""
        table = Partition.parse(partition).value
        year = int(year)
        sums: Dict[str, float] = {}
        rows = self._query(
            f'SELECT period_key, amount FROM {table} WHERE period_key BETWEEN ? AND ? ORDER BY period_key',
            (f'{year:04d}.01', f'{year:04d}.12'))
        for r in rows:
            month = r['period_key'].replace('.', '-')
            amount = r['amount'] if is_valid_amount(r['amount']) else 0
            sums[month] = sums.get(month, 0) + amount
        return sums

    def status(self, partition: Partition, include_title_sums: bool = False) -> dict:
        """Record count and total for one partition (getSyncDbStatus / getUploadDbStatus)."""
        result = {
            'recordCount': self.count(partition),
            'totalSum': self.sum_amount(partition),
        }
        if include_title_sums:
            result['sums'] = self.sum_amount_by_title(partition)
        return result


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _delete_period(conn: sqlite3.Connection, table: str, period_key: str) -> int:
    cur = conn.execute(f'DELETE FROM {table} WHERE period_key = ?', (period_key,))
    return cur.rowcount


def _insert_records(conn: sqlite3.Connection, table: str, records: List[SettlementRecord]):
    conn.executemany(
        f'INSERT INTO {table} (period_key, title, amount) VALUES (?, ?, ?)',
        [(r.period_key, r.title, r.amount) for r in records],
    )


def _row_to_record(row: sqlite3.Row) -> SettlementRecord:
    return SettlementRecord(period_key=row['period_key'], title=row['title'],
                            amount=row['amount'], id=row['id'])


_store = None
_store_lock = threading.Lock()


def get_store() -> RecordStore:
    """Process-wide store built from SETTLEMENT_DB_PATH."""
    global _store
    with _store_lock:
        if _store is None:
            _store = RecordStore()
            log.info("Settlement store: %s", _store.db_path)
        return _store


def set_store(store: Optional[RecordStore]):
    """Replace the process-wide store (None resets it to the env default)."""
    global _store
    with _store_lock:
        _store = store
