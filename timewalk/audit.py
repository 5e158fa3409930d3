"""Write-path timestamp stamping.

Every ORM flush and every ORM bulk UPDATE passes through these listeners, so
updated_at reflects the last mutation regardless of what the caller set. The
update_updated_at_column() trigger in timewalk/ddl.py covers writes that do
not go through SQLAlchemy.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import event
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import ORMExecuteState, Session

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _has_column(obj: object, name: str) -> bool:
    state = sa_inspect(obj, raiseerr=False)
    if state is None:
        return False
    return name in state.mapper.column_attrs


def stamp_timestamps(session: Session, flush_context=None, instances=None) -> None:
    """before_flush: stamp created_at/updated_at on new rows, updated_at on changed rows."""
    now = utcnow()

    for obj in session.new:
        if _has_column(obj, "created_at"):
            obj.created_at = now
        if _has_column(obj, "updated_at"):
            obj.updated_at = now

    for obj in session.dirty:
        if not _has_column(obj, "updated_at"):
            continue
        # dirty also holds objects whose collections changed but no columns did
        if session.is_modified(obj, include_collections=False):
            obj.updated_at = now


def stamp_bulk_updates(orm_execute_state: ORMExecuteState) -> None:
    """do_orm_execute: add updated_at to ORM-enabled UPDATE statements."""
    if not orm_execute_state.is_update:
        return
    # executemany-style bulk updates carry per-row parameters; the trigger handles those
    if isinstance(orm_execute_state.parameters, list):
        return

    statement = orm_execute_state.statement
    table = getattr(statement, "table", None)
    if table is None or "updated_at" not in table.c:
        return

    orm_execute_state.statement = statement.values(updated_at=utcnow())
    logger.debug(f"Stamped updated_at on bulk update of {table.name}")


def install(target=Session) -> None:
    """Attach the listeners to a Session class or sessionmaker. Idempotent."""
    if not event.contains(target, "before_flush", stamp_timestamps):
        event.listen(target, "before_flush", stamp_timestamps)
    if not event.contains(target, "do_orm_execute", stamp_bulk_updates):
        event.listen(target, "do_orm_execute", stamp_bulk_updates)
