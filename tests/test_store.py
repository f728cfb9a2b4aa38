"""
Unit Tests for the portal SQLite store and table repositories
"""

import pytest

from command_portal.errors import NotFoundError, PolicyDeniedError, ValidationError
from command_portal.store import TABLES, PortalDB, RepositoryRegistry


@pytest.fixture
def db(tmp_path):
    database = PortalDB(tmp_path / 'data' / 'portal.db')
    database.ensure_tables()
    return database


@pytest.fixture
def registry(db):
    for name in ('deploy', 'backup', 'logs'):
        db.execute("INSERT INTO shortcuts (name, command, created_at) VALUES (?, ?, ?)",
                   (name, f'./{name}.sh', '2024-01-01T00:00:00'))
    return RepositoryRegistry(db)


class TestPortalDB:

    def test_ensure_tables_creates_every_table(self, db):
        rows = db.fetch_all("SELECT name FROM sqlite_master WHERE type = 'table'")
        assert set(TABLES) <= {row['name'] for row in rows}

    def test_query_raw_returns_columns(self, registry, db):
        columns, rows, truncated = db.query_raw("SELECT id, name FROM shortcuts ORDER BY id")
        assert columns == ['id', 'name']
        assert [r['name'] for r in rows] == ['deploy', 'backup', 'logs']
        assert truncated is False

    def test_query_raw_stops_at_row_cap(self, registry, db):
        columns, rows, truncated = db.query_raw(
            "SELECT a.id FROM shortcuts a, shortcuts b, shortcuts c", max_rows=5)
        assert len(rows) == 5
        assert truncated is True

    def test_query_raw_is_read_only(self, db):
        with pytest.raises(ValidationError) as exc_info:
            db.query_raw("DELETE FROM shortcuts")
        assert exc_info.value.reason == 'query_error'

    def test_writes_denied_even_on_writable_connection(self, registry, db, monkeypatch):
        monkeypatch.setattr(db, '_connect', lambda read_only=False: PortalDB._connect(db))

        for sql in ("DELETE FROM shortcuts", "UPDATE shortcuts SET name = 'x'",
                    "CREATE TABLE stolen (id INTEGER)"):
            with pytest.raises(ValidationError):
                db.query_raw(sql)
        assert len(db.fetch_all("SELECT id FROM shortcuts")) == 3

    def test_connection_that_stays_writable_is_refused(self, db, monkeypatch):
        class IgnoresPragmas:
            def __init__(self, conn):
                self.conn = conn

            def execute(self, sql, *args):
                if sql.startswith('PRAGMA query_only ='):
                    return self.conn.execute("SELECT 1")
                return self.conn.execute(sql, *args)

            def __getattr__(self, name):
                return getattr(self.conn, name)

        monkeypatch.setattr(db, '_connect', lambda read_only=False: IgnoresPragmas(PortalDB._connect(db)))
        with pytest.raises(PolicyDeniedError) as exc_info:
            db.query_raw("SELECT 1")
        assert exc_info.value.reason == 'not_read_only'

    def test_query_raw_reports_bad_sql(self, db):
        with pytest.raises(ValidationError):
            db.query_raw("SELECT * FROM no_such_table")

    def test_tabby_config_upsert_keeps_unrelated_fields(self, db):
        db.upsert_tabby_config(model='StarCoder-1B', port=8080, container_id='abc123')
        config = db.upsert_tabby_config(status='running', bogus='ignored')

        assert config['id'] == 'default'
        assert config['model'] == 'StarCoder-1B'
        assert config['container_id'] == 'abc123'
        assert config['status'] == 'running'
        assert 'bogus' not in config


class TestTableRepository:

    def test_unknown_table(self, registry):
        with pytest.raises(NotFoundError):
            registry.get('sqlite_master')
        assert 'shortcuts' in registry.names()

    def test_list_paginates_and_sorts(self, registry):
        repo = registry.get('shortcuts')
        assert repo.count() == 3
        assert [r['name'] for r in repo.list(page=1, page_size=2, sort_column='name')] == ['backup', 'deploy']
        assert [r['name'] for r in repo.list(page=2, page_size=2, sort_column='name')] == ['logs']
        assert repo.list(sort_column='name', sort_direction='desc')[0]['name'] == 'logs'

    def test_sort_column_must_exist(self, registry):
        with pytest.raises(ValidationError):
            registry.get('shortcuts').list(sort_column='name; DROP TABLE shortcuts')

    def test_update_ignores_unknown_and_protected_fields(self, registry):
        repo = registry.get('shortcuts')
        record = repo.update(1, {'command': './deploy.sh --prod', 'id': 99, 'evil': 1})

        assert record['id'] == 1
        assert record['command'] == './deploy.sh --prod'
        assert record['updated_at'] is not None

    def test_missing_records(self, registry):
        repo = registry.get('shortcuts')
        with pytest.raises(NotFoundError):
            repo.get(404)
        with pytest.raises(NotFoundError):
            repo.update(404, {'name': 'x'})
        with pytest.raises(NotFoundError):
            repo.delete(404)

    def test_delete(self, registry):
        repo = registry.get('shortcuts')
        repo.delete(2)
        assert repo.count() == 2
