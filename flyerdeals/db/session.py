"""Database session helpers."""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine


DEFAULT_DATABASE_URL = "postgresql://user:pass@db:5432/flyerdeals"


def create_engine_from_env() -> Engine:
    """Create an engine using the DATABASE_URL environment variable."""
    url = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)
    return create_engine(url, pool_pre_ping=True, future=True)


@contextmanager
def transaction_scope(engine: Engine) -> Iterator[tuple[Connection, "TransactionControl"]]:
    """Open one transaction; the body decides whether it commits.

    The transaction commits only when the body calls ``control.commit()``;
    otherwise it is rolled back on exit. Exceptions always roll back.
    """
    with engine.connect() as conn:
        trans = conn.begin()
        control = TransactionControl()
        try:
            yield conn, control
        except Exception:
            trans.rollback()
            raise
        if control.should_commit:
            trans.commit()
        else:
            trans.rollback()


class TransactionControl:
    def __init__(self) -> None:
        self.should_commit = False

    def commit(self) -> None:
        self.should_commit = True
