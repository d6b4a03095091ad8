from __future__ import annotations

import logging

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

from convkeys.db import Base, engine as default_engine
from convkeys.models import core as _core  # noqa: F401  (register models)

logger = logging.getLogger(__name__)


def ensure_schema(bind: Engine | None = None) -> str:
    bind = bind or default_engine
    insp = inspect(bind)
    table_names = set(insp.get_table_names())

    def has_column(table: str, col: str) -> bool:
        return any(c["name"] == col for c in insp.get_columns(table))

    stmts: list[str] = []

    if "wrapped_key_records" in table_names:
        if not has_column("wrapped_key_records", "responded_at"):
            stmts.append("ALTER TABLE wrapped_key_records ADD COLUMN responded_at TIMESTAMP")

    if "migration_records" in table_names:
        if not has_column("migration_records", "attempts"):
            stmts.append("ALTER TABLE migration_records ADD COLUMN attempts INTEGER NOT NULL DEFAULT 0")
        if not has_column("migration_records", "samples_checked"):
            stmts.append("ALTER TABLE migration_records ADD COLUMN samples_checked INTEGER NOT NULL DEFAULT 0")
        if not has_column("migration_records", "error"):
            stmts.append("ALTER TABLE migration_records ADD COLUMN error TEXT")

    if "legacy_conversation_keys" in table_names:
        if not has_column("legacy_conversation_keys", "key_version"):
            stmts.append("ALTER TABLE legacy_conversation_keys ADD COLUMN key_version INTEGER NOT NULL DEFAULT 1")

    schema_changed = False
    with bind.begin() as conn:
        if stmts:
            schema_changed = True
            for stmt in stmts:
                conn.execute(text(stmt))

        # Verification that was interrupted mid-way is retried like a failure.
        if "migration_records" in table_names:
            conn.execute(text("UPDATE migration_records SET status = 'failed' WHERE status = 'verifying'"))

    if schema_changed:
        logger.info("Applied %s schema changes", len(stmts))
    return "schema updated" if schema_changed else "schema ok"


def init_db(bind: Engine | None = None) -> str:
    bind = bind or default_engine
    Base.metadata.create_all(bind)
    return ensure_schema(bind)
