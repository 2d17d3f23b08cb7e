"""Tests for database connection management."""

import pytest
from sqlalchemy import inspect, text

from convotag.db import connection
from convotag.db.connection import Database, create_db_engine
from convotag.models.db import Tag


class TestCreateDbEngine:
    def test_sqlite_pragmas(self, tmp_path):
        engine = create_db_engine(f"sqlite:///{tmp_path / 'e.db'}")
        try:
            with engine.connect() as conn:
                assert conn.execute(text("PRAGMA foreign_keys")).scalar() == 1
                assert conn.execute(text("PRAGMA busy_timeout")).scalar() == 30000
        finally:
            engine.dispose()


class TestDatabase:
    def test_init_db_creates_tables(self, test_settings):
        db = Database(test_settings.database_url)
        try:
            db.init_db()
            tables = set(inspect(db.engine).get_table_names())
            assert {"conversations", "messages", "tags", "analysis_jobs"} <= tables
            assert db.is_sqlite
            assert db.check_connection() is True
        finally:
            db.dispose()

    def test_session_scope_commits(self, database):
        with database.session_scope() as session:
            session.add(Tag(name="custom", display_name="Custom", category="auto"))

        with database.session_scope() as session:
            assert session.query(Tag).filter(Tag.name == "custom").count() == 1

    def test_session_scope_rolls_back(self, database):
        with pytest.raises(RuntimeError):
            with database.session_scope() as session:
                session.add(Tag(name="custom", display_name="Custom", category="auto"))
                session.flush()
                raise RuntimeError("boom")

        with database.session_scope() as session:
            assert session.query(Tag).filter(Tag.name == "custom").count() == 0

    def test_snapshot_scope(self, database):
        with database.session_scope(snapshot=True) as session:
            assert session.query(Tag).count() == 18


class TestProcessWideDatabase:
    @pytest.fixture(autouse=True)
    def default_database(self, monkeypatch, test_settings):
        db = Database(test_settings.database_url)
        monkeypatch.setattr(connection, "_default_database", db)
        yield db
        db.dispose()

    def test_helpers_use_default_database(self, default_database):
        assert connection.get_database() is default_database

        connection.init_db()
        assert connection.check_connection() is True

        with connection.db_session() as session:
            assert session.query(Tag).count() == 0
