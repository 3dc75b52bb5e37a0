"""Create the flyer tables and indexes from ``schema.sql``."""

from __future__ import annotations

import argparse
import logging
import os
import pathlib
import sys

from dotenv import load_dotenv
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from flyerdeals.db.session import create_engine_from_env

logger = logging.getLogger(__name__)

SCHEMA_PATH = pathlib.Path(__file__).with_name("schema.sql")


def split_statements(sql: str) -> list[str]:
    """Break a script into statements; ``--`` comments are dropped."""
    statements: list[str] = []
    current: list[str] = []
    for line in sql.splitlines():
        code = line.split("--", 1)[0].rstrip()
        if not code.strip():
            continue
        current.append(code)
        if code.endswith(";"):
            statements.append("\n".join(current))
            current = []
    if current:
        statements.append("\n".join(current))
    return statements


def run_migrations(engine: Engine, schema_path: pathlib.Path = SCHEMA_PATH) -> int:
    statements = split_statements(schema_path.read_text())
    with engine.begin() as conn:
        for statement in statements:
            conn.execute(text(statement))
    logger.info("Applied %s statements from %s", len(statements), schema_path.name)
    return len(statements)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Create flyerdeals tables and indexes.")
    parser.add_argument("--dry-run", action="store_true", help="print the statements without running them")
    args = parser.parse_args(argv)
    if args.dry_run:
        for statement in split_statements(SCHEMA_PATH.read_text()):
            print(statement, end="\n\n")
        return 0
    load_dotenv()
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
    try:
        run_migrations(create_engine_from_env())
    except SQLAlchemyError as exc:
        logger.error("Migration failed: %s", exc)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
