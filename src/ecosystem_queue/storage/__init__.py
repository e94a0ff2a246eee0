"""Relational persistence: SQLModel tables, engine policy and Alembic migrations."""
