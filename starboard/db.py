import os
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Optional, TypeVar

import structlog
from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlmodel import Session, SQLModel, create_engine

from .errors import TransientError
from .models import TaskInstance, TaskStatus

log = structlog.get_logger(__name__)

T = TypeVar("T")


def _default_sqlite_url() -> str:
    data_dir = "/data"
    if os.path.isdir(data_dir):
        return f"sqlite:////{os.path.join(data_dir.lstrip('/'), 'starboard.db')}"
    return "sqlite:///starboard.db"


DATABASE_URL = os.getenv("DATABASE_URL", _default_sqlite_url())
STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "10"))
READ_RETRY_ATTEMPTS = 3


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": STORE_TIMEOUT_SECONDS}
    if url.startswith("postgresql"):
        timeout_ms = int(STORE_TIMEOUT_SECONDS * 1000)
        return {
            "connect_timeout": int(STORE_TIMEOUT_SECONDS),
            "options": f"-c statement_timeout={timeout_ms}",
        }
    return {}


engine = create_engine(
    DATABASE_URL,
    connect_args=_connect_args(DATABASE_URL),
    pool_pre_ping=True,
)


def get_session():
    with Session(engine) as session:
        yield session


def init_db():
    SQLModel.metadata.create_all(engine)


@contextmanager
def store_errors(operation: str):
    """Translate connection and timeout failures into ``TransientError``."""
    try:
        yield
    except (OperationalError, PoolTimeoutError) as exc:
        log.warning("store_unavailable", operation=operation, error=str(exc))
        raise TransientError(f"Store unavailable during {operation}") from exc


def read_with_retry(session: Session, read: Callable[[], T], operation: str) -> T:
    """Run an idempotent read, retrying with exponential backoff on transient failures.

    Never use this for mutations: replaying a status transition or a ledger
    insert is not safe.
    """
    attempt = 0
    while True:
        try:
            with store_errors(operation):
                return read()
        except TransientError:
            session.rollback()
            attempt += 1
            if attempt >= READ_RETRY_ATTEMPTS:
                log.error("store_read_exhausted", operation=operation, attempts=attempt)
                raise
            time.sleep(0.1 * 2 ** (attempt - 1))


def swap_status(
    session: Session,
    instance_id: int,
    expected: TaskStatus,
    new_status: TaskStatus,
    now: Optional[datetime] = None,
    **values,
) -> bool:
    """Issue ``UPDATE ... WHERE id = ? AND status = ?`` without committing.

    The caller owns the transaction, so rows that must land together with the
    status change (a ledger credit, an approval record) can be added before
    the single commit.
    """
    statement = (
        update(TaskInstance)
        .where(TaskInstance.id == instance_id, TaskInstance.status == expected)
        .values(status=new_status, updated_at=now or datetime.utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    swapped = session.exec(statement).rowcount == 1
    if not swapped:
        log.info(
            "status_cas_lost",
            instance_id=instance_id,
            expected=expected.value,
            new_status=new_status.value,
        )
    return swapped


def compare_and_set_status(
    session: Session,
    instance_id: int,
    expected: TaskStatus,
    new_status: TaskStatus,
    now: Optional[datetime] = None,
    **values,
) -> bool:
    """Conditionally move an instance from ``expected`` to ``new_status`` and commit.

    Returns False when another writer changed the status first.
    """
    with store_errors("compare_and_set_status"):
        swapped = swap_status(session, instance_id, expected, new_status, now=now, **values)
        session.commit()
    return swapped
