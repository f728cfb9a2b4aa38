#!/usr/bin/env python3
"""
Portal settings database
========================
SQLite storage for the records the portal owns: Tabby config, personas,
shortcuts, scan settings and Cloudflare settings.

The database browser never looks tables up by arbitrary name. It goes through
RepositoryRegistry, which only knows the tables declared in TABLES and
raises NotFoundError for anything else.
"""

import sqlite3
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from command_portal import debug_logger as log
from command_portal.errors import (
    CommandTimeoutError, NotFoundError, PolicyDeniedError, ValidationError,
)

# table -> ordered (column, SQL type) pairs; `id` is always the primary key
TABLES = {
    'tabby_config': [
        ('id', 'TEXT PRIMARY KEY'),
        ('model', 'TEXT'),
        ('use_gpu', 'INTEGER DEFAULT 0'),
        ('port', 'INTEGER DEFAULT 8080'),
        ('data_dir', 'TEXT'),
        ('status', "TEXT DEFAULT 'stopped'"),
        ('auto_start', 'INTEGER DEFAULT 0'),
        ('container_id', 'TEXT'),
        ('created_at', 'TEXT'),
        ('updated_at', 'TEXT'),
    ],
    'personas': [
        ('id', 'INTEGER PRIMARY KEY AUTOINCREMENT'),
        ('name', 'TEXT NOT NULL'),
        ('description', 'TEXT'),
        ('system_prompt', 'TEXT'),
        ('is_default', 'INTEGER DEFAULT 0'),
        ('created_at', 'TEXT'),
        ('updated_at', 'TEXT'),
    ],
    'shortcuts': [
        ('id', 'INTEGER PRIMARY KEY AUTOINCREMENT'),
        ('name', 'TEXT NOT NULL'),
        ('command', 'TEXT NOT NULL'),
        ('description', 'TEXT'),
        ('category', 'TEXT'),
        ('created_at', 'TEXT'),
        ('updated_at', 'TEXT'),
    ],
    'scan_settings': [
        ('id', 'INTEGER PRIMARY KEY AUTOINCREMENT'),
        ('name', 'TEXT NOT NULL'),
        ('port_start', 'INTEGER DEFAULT 3000'),
        ('port_end', 'INTEGER DEFAULT 9000'),
        ('interval_minutes', 'INTEGER DEFAULT 0'),
        ('enabled', 'INTEGER DEFAULT 1'),
        ('created_at', 'TEXT'),
        ('updated_at', 'TEXT'),
    ],
    'cloudflare_settings': [
        ('id', 'INTEGER PRIMARY KEY AUTOINCREMENT'),
        ('account_id', 'TEXT'),
        ('zone_id', 'TEXT'),
        ('tunnel_id', 'TEXT'),
        ('tunnel_name', 'TEXT'),
        ('domain', 'TEXT'),
        ('created_at', 'TEXT'),
        ('updated_at', 'TEXT'),
    ],
}

TABBY_CONFIG_ID = 'default'

# authorizer actions a plain SELECT needs; everything else is denied
READ_ONLY_ACTIONS = frozenset({
    sqlite3.SQLITE_SELECT,
    sqlite3.SQLITE_READ,
    sqlite3.SQLITE_FUNCTION,
    getattr(sqlite3, 'SQLITE_RECURSIVE', 33),
})


def _now():
    return datetime.now().isoformat()


def _read_only_authorizer(action, arg1, arg2, db_name, source):
    return sqlite3.SQLITE_OK if action in READ_ONLY_ACTIONS else sqlite3.SQLITE_DENY


class PortalDB:
    """Access to the portal's SQLite database"""

    def __init__(self, db_path):
        self.db_path = Path(db_path)

    def _connect(self, read_only=False):
        """Create a new connection per call for thread safety"""
        if read_only:
            conn = sqlite3.connect(f"file:{self.db_path}?mode=ro", uri=True, timeout=10)
        else:
            conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def ensure_tables(self):
        """Create the database file and every known table"""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            cursor = conn.cursor()
            for table, columns in TABLES.items():
                column_sql = ', '.join(f'{name} {sql_type}' for name, sql_type in columns)
                cursor.execute(f"CREATE TABLE IF NOT EXISTS {table} ({column_sql})")
            conn.commit()
        finally:
            conn.close()
        log.info('DATABASE', 'Tables ready', {'path': str(self.db_path), 'tables': list(TABLES)})

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a write statement; returns rowcount"""
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(sql, tuple(params))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(sql, tuple(params))
            return [dict(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def query_raw(self, sql: str, timeout: float = 30,
                  max_rows: int = 1000) -> Tuple[List[str], List[Dict[str, Any]], bool]:
        """
        Run an already-validated SELECT on a read-only connection.

        Returns (column names, at most `max_rows` rows, truncated). Only
        `max_rows + 1` rows are ever fetched from SQLite. Aborts once
        `timeout` seconds pass.
        """
        conn = self._connect(read_only=True)
        deadline = time.monotonic() + timeout
        try:
            conn.execute("PRAGMA query_only = 1")
            if conn.execute("PRAGMA query_only").fetchone()[0] != 1:
                raise PolicyDeniedError('Database connection is not read-only',
                                        reason='not_read_only')
            conn.set_authorizer(_read_only_authorizer)
            # non-zero return from the handler interrupts the statement
            conn.set_progress_handler(lambda: int(time.monotonic() > deadline), 10000)

            cursor = conn.cursor()
            cursor.execute(sql)
            rows = cursor.fetchmany(max_rows + 1)
            columns = [d[0] for d in cursor.description or []]
            truncated = len(rows) > max_rows
            return columns, [dict(row) for row in rows[:max_rows]], truncated
        except sqlite3.OperationalError as e:
            if time.monotonic() > deadline:
                raise CommandTimeoutError(['sqlite3', 'query'], timeout)
            raise ValidationError(f'Query failed: {e}', reason='query_error')
        except sqlite3.DatabaseError as e:
            raise ValidationError(f'Query failed: {e}', reason='query_error')
        finally:
            conn.close()

    # =========================================================================
    # TABBY CONFIG
    # =========================================================================

    def get_tabby_config(self) -> Optional[Dict[str, Any]]:
        return self.fetch_one("SELECT * FROM tabby_config WHERE id = ?", (TABBY_CONFIG_ID,))

    def upsert_tabby_config(self, **fields) -> Dict[str, Any]:
        allowed = {name for name, _ in TABLES['tabby_config']} - {'id', 'created_at', 'updated_at'}
        values = {k: v for k, v in fields.items() if k in allowed}
        existing = self.get_tabby_config()
        now = _now()
        if existing is None:
            values.update({'id': TABBY_CONFIG_ID, 'created_at': now, 'updated_at': now})
            names = ', '.join(values)
            marks = ', '.join('?' for _ in values)
            self.execute(f"INSERT INTO tabby_config ({names}) VALUES ({marks})", list(values.values()))
        elif values:
            values['updated_at'] = now
            assignments = ', '.join(f'{k} = ?' for k in values)
            self.execute(f"UPDATE tabby_config SET {assignments} WHERE id = ?",
                         list(values.values()) + [TABBY_CONFIG_ID])
        return self.get_tabby_config()

# =============================================================================
# TABLE REPOSITORIES
# =============================================================================

class TableRepository:
    """list/get/update/delete/count over one declared table"""

    def __init__(self, db: PortalDB, table: str, columns: List[Tuple[str, str]]):
        self.db = db
        self.table = table
        self.columns = [name for name, _ in columns]
        self.column_types = {name: sql_type.split()[0] for name, sql_type in columns}

    def count(self) -> int:
        row = self.db.fetch_one(f"SELECT COUNT(*) AS n FROM {self.table}")
        return row['n'] if row else 0

    def list(self, page: int = 1, page_size: int = 50, sort_column: Optional[str] = None,
             sort_direction: str = 'asc') -> List[Dict[str, Any]]:
        order = ''
        if sort_column:
            if sort_column not in self.columns:
                raise ValidationError(f'Unknown column: {sort_column}', reason='invalid_column')
            direction = 'DESC' if str(sort_direction).lower() == 'desc' else 'ASC'
            order = f" ORDER BY {sort_column} {direction}"
        offset = (page - 1) * page_size
        return self.db.fetch_all(f"SELECT * FROM {self.table}{order} LIMIT ? OFFSET ?",
                                 (page_size, offset))

    def get(self, record_id) -> Dict[str, Any]:
        row = self.db.fetch_one(f"SELECT * FROM {self.table} WHERE id = ?", (record_id,))
        if row is None:
            raise NotFoundError('Record not found', id=record_id)
        return row

    def update(self, record_id, data: Dict[str, Any]) -> Dict[str, Any]:
        values = {k: v for k, v in data.items() if k in self.columns and k not in ('id', 'created_at')}
        self.get(record_id)
        if 'updated_at' in self.columns:
            values['updated_at'] = _now()
        if values:
            assignments = ', '.join(f'{k} = ?' for k in values)
            self.db.execute(f"UPDATE {self.table} SET {assignments} WHERE id = ?",
                            list(values.values()) + [record_id])
        return self.get(record_id)

    def delete(self, record_id) -> None:
        if self.db.execute(f"DELETE FROM {self.table} WHERE id = ?", (record_id,)) == 0:
            raise NotFoundError('Record not found', id=record_id)


class RepositoryRegistry:

    def __init__(self, db: PortalDB, tables: Optional[Dict[str, List[Tuple[str, str]]]] = None):
        self._repositories = {
            name: TableRepository(db, name, columns)
            for name, columns in (tables or TABLES).items()
        }

    def names(self) -> List[str]:
        return sorted(self._repositories)

    def get(self, name: str) -> TableRepository:
        repository = self._repositories.get(name)
        if repository is None:
            raise NotFoundError(f'Table not found: {name}', reason='unknown_table')
        return repository
