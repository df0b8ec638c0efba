"""
Database migrations for Mailvault.

Simple migration system to handle additive schema changes without requiring Alembic.
"""

import logging
from sqlalchemy import text, inspect
from sqlalchemy.exc import SQLAlchemyError
from mailvault import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Initialize database schema and run migrations.

    Creates tables if they don't exist and adds columns that newer model
    versions introduced. Safe to call from several Gunicorn workers.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        if not existing_tables:
            logger.info("No tables found - creating initial database schema")
            try:
                db.create_all()
                logger.info("Database schema created successfully")
            except SQLAlchemyError as e:
                # Another worker may have created the tables first
                logger.error(f"Failed to create database schema: {e}")
        else:
            # Tables that are new since the last deployment
            db.create_all()
            run_migrations(app, inspect(db.engine))


def _column_ddl(column, dialect) -> str:
    ddl = f"{column.name} {column.type.compile(dialect=dialect)}"

    default = column.default.arg if column.default is not None and column.default.is_scalar else None
    if default is not None:
        if isinstance(default, bool):
            literal = '1' if default else '0'
        elif isinstance(default, (int, float)):
            literal = str(default)
        else:
            literal = "'" + str(getattr(default, 'value', default)).replace("'", "''") + "'"
        ddl += f" DEFAULT {literal}"
        if not column.nullable:
            ddl += " NOT NULL"

    return ddl


def run_migrations(app, inspector=None) -> list:
    """
    Add model columns that are missing from existing tables.

    Returns:
        List of "table.column" names that were added
    """
    if inspector is None:
        inspector = inspect(db.engine)

    added = []
    existing_tables = set(inspector.get_table_names())

    for table in db.metadata.sorted_tables:
        if table.name not in existing_tables:
            continue

        columns = {col['name'] for col in inspector.get_columns(table.name)}

        for column in table.columns:
            if column.name in columns:
                continue

            logger.info(f"Running migration: Adding {column.name} column to {table.name} table")
            try:
                db.session.execute(text(
                    f"ALTER TABLE {table.name} ADD COLUMN {_column_ddl(column, db.engine.dialect)}"
                ))
                db.session.commit()
                added.append(f"{table.name}.{column.name}")
                logger.info(f"Successfully added {column.name} column")
            except SQLAlchemyError as e:
                logger.error(f"Failed to add {column.name} column to {table.name}: {e}")
                db.session.rollback()

    return added
