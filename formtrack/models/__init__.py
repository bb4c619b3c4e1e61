"""
models/__init__.py — imports all ORM models so Alembic's env.py
sees them via Base.metadata when generating migrations.

Import order matters: form_field_logs carries a FK to form_sessions.
"""
from formtrack.models.form_session import FormSessionORM
from formtrack.models.field_log import FieldLogORM
from formtrack.models.document import DocumentORM

__all__ = ["FormSessionORM", "FieldLogORM", "DocumentORM"]
