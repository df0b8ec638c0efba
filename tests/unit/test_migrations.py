"""
Unit tests for schema migrations (mailvault/migrations.py).
"""

from sqlalchemy import inspect, text

from mailvault.migrations import init_database_schema, run_migrations


def _columns(db, table):
    return {col['name'] for col in inspect(db.engine).get_columns(table)}


class TestMigrations:
    """Test additive column migrations."""

    def test_current_schema_needs_nothing(self, db, app):
        assert run_migrations(app) == []

    def test_missing_columns_are_added(self, db, app):
        db.session.execute(text("DROP TABLE users"))
        db.session.execute(text(
            "CREATE TABLE users (id INTEGER PRIMARY KEY, username VARCHAR(80) NOT NULL, "
            "password_hash VARCHAR(255) NOT NULL)"
        ))
        db.session.execute(text("INSERT INTO users (username, password_hash) VALUES ('legacy', 'x')"))
        db.session.commit()

        added = run_migrations(app)

        assert sorted(added) == ['users.created_at', 'users.is_admin']
        assert {'is_admin', 'created_at'} <= _columns(db, 'users')
        is_admin = db.session.execute(text("SELECT is_admin FROM users WHERE username = 'legacy'")).scalar()
        assert is_admin == 1

    def test_init_creates_missing_tables(self, db, app):
        db.session.execute(text("DROP TABLE backup_records"))
        db.session.commit()

        init_database_schema(app)

        assert 'backup_records' in inspect(db.engine).get_table_names()
