# Overview: Storage-level concurrency helpers; conditional writes and retry on conflicts.

from __future__ import annotations

import time

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def compare_and_set(statement) -> bool:
    """
    Execute a conditional UPDATE or DELETE and report whether exactly one row
    matched its WHERE clause.

    The WHERE clause carries the expected pre-state (e.g. verified = false,
    sign_count = <observed>), so two racing requests cannot both succeed off
    the same row. The caller owns the commit.
    """
    result = db.session.execute(
        statement.execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.05, retry_on=None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts) unless retry_on overrides the set.
    """
    retryable = retry_on or (OperationalError, StaleDataError)
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except retryable as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def upsert(update_statement, build_row, *, attempts: int = 3) -> None:
    """
    Last-writer-wins upsert keyed by a unique column.

    Tries the UPDATE first; when no row exists, inserts the row built by
    build_row(). A concurrent insert of the same key surfaces as an
    IntegrityError, and the whole operation is retried so the UPDATE branch
    wins on the next pass. Commits on success.
    """
    def _op():
        if not compare_and_set(update_statement):
            db.session.add(build_row())
        db.session.commit()

    run_with_retry(_op, attempts=attempts, retry_on=(IntegrityError, OperationalError))
