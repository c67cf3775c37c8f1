"""Query and write operations against the history tables."""

import json

from sqlalchemy import (
    Float,
    case,
    cast,
    func,
    literal,
    null,
    or_,
    select,
    text,
    union_all,
    update,
)
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession

from . import models, schemas

# Column shape shared by every partition in a merged read
MERGED_COLUMNS = (
    "id",
    "command",
    "response",
    "timestamp",
    "machine_id",
    "user_id",
    "session_id",
    "tokens_used",
    "execution_time_ms",
    "tags",
    "context",
    "error_code",
    "status",
    "request_id",
    "updated_at",
    "completed_at",
)


def _partition_model(partition):
    return models.PARTITION_MODELS[schemas.Partition(partition).value]


def _scope_filters(model, user_id: str | None, machine_id: str | None):
    """Filters that restrict a partition to its owner key."""
    if model is models.HistoryUser:
        return [model.user_id == user_id]
    if model is models.HistoryMachine:
        return [model.machine_id == machine_id]
    return []


def _text_match(model, query: str):
    return or_(
        model.command.icontains(query, autoescape=True),
        model.response.icontains(query, autoescape=True),
    )


async def insert_history_entry(
    db: AsyncSession,
    partition: schemas.Partition,
    command: str,
    response: str | None,
    machine_id: str,
    user_id: str | None,
    timestamp: int,
    metadata: schemas.CommandMetadata,
) -> str:
    """
    Insert one row into a single partition and commit it.

    Each partition keeps only the metadata fields it has columns for.
    """
    model = _partition_model(partition)
    fields = dict(
        command=command,
        response=response,
        machine_id=machine_id,
        user_id=user_id,
        timestamp=timestamp,
        session_id=metadata.session_id,
        status=metadata.status.value,
        request_id=metadata.request_id,
    )
    if model is models.HistoryGlobal:
        fields.update(
            tokens_used=metadata.tokens_used,
            execution_time_ms=metadata.execution_time_ms,
            tags=json.dumps(metadata.tags),
        )
    elif model is models.HistoryUser:
        fields.update(
            context=json.dumps(metadata.context),
            tokens_used=metadata.tokens_used,
            execution_time_ms=metadata.execution_time_ms,
        )
    else:
        fields.update(error_code=metadata.error_code)

    entry = model(**fields)
    db.add(entry)
    await db.commit()
    return entry.id


async def bump_machine_stats(
    db: AsyncSession, machine_id: str, now: int, session_id: str | None = None
) -> None:
    """Count one saved command against the machine and, if given, its session."""
    await db.execute(
        update(models.Machine)
        .where(models.Machine.machine_id == machine_id)
        .values(
            total_commands=models.Machine.total_commands + 1,
            last_seen=now,
        )
    )
    if session_id:
        await db.execute(
            update(models.Session)
            .where(models.Session.id == session_id)
            .values(command_count=models.Session.command_count + 1)
        )
    await db.commit()


async def upsert_command_cache(
    db: AsyncSession,
    command_hash: str,
    command: str,
    output: str | None,
    machine_id: str,
    now: int,
    execution_time_ms: int | None,
) -> None:
    """
    Insert or refresh a cache row in one statement.

    The running mean is computed by the database from the stored values, so
    concurrent upserts of the same command cannot lose samples.
    """
    sample = execution_time_ms or 0
    cache = models.CommandCache
    stmt = insert(cache).values(
        command_hash=command_hash,
        command=command,
        output=output,
        machine_id=machine_id,
        last_executed=now,
        execution_count=1,
        avg_execution_time_ms=sample,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[cache.command_hash],
        set_={
            "output": stmt.excluded.output,
            "last_executed": stmt.excluded.last_executed,
            "execution_count": cache.execution_count + 1,
            "avg_execution_time_ms": cast(
                func.coalesce(cache.avg_execution_time_ms, 0) * cache.execution_count
                + sample,
                Float,
            )
            / (cache.execution_count + 1),
        },
    )
    await db.execute(stmt)
    await db.commit()


async def get_cached_command(
    db: AsyncSession, command_hash: str, fresh_after: int
) -> models.CommandCache | None:
    """Return the cache row only if it was executed after `fresh_after`."""
    result = await db.scalars(
        select(models.CommandCache).where(
            models.CommandCache.command_hash == command_hash,
            models.CommandCache.last_executed > fresh_after,
        )
    )
    return result.first()


async def get_partition_history(
    db: AsyncSession,
    partition: schemas.Partition,
    user_id: str | None = None,
    machine_id: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[schemas.HistoryEntry]:
    """Most-recent-first page of one partition, scoped to its owner key."""
    model = _partition_model(partition)
    stmt = (
        select(model)
        .where(*_scope_filters(model, user_id, machine_id))
        .order_by(model.timestamp.desc(), text("rowid DESC"))
        .limit(limit)
        .offset(offset)
    )
    rows = await db.scalars(stmt)
    return [schemas.HistoryEntry.model_validate(row) for row in rows]


def _normalized_select(model, *criteria):
    columns = [literal(model.source).label("source")]
    for name in MERGED_COLUMNS:
        column = getattr(model, name, None)
        columns.append(column.label(name) if column is not None else null().label(name))
    return select(*columns).where(*criteria)


async def get_merged_history(
    db: AsyncSession,
    user_id: str | None,
    machine_id: str,
    since: int | None = None,
    query: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[schemas.HistoryEntry]:
    """
    UNION ALL of the three partitions, newest first, ties ordered by source
    and row id so pages are stable.

    The user partition only takes part when a user id is given. `since`
    bounds every branch to rows newer than that timestamp and `query` adds a
    substring match on command or response.
    """
    models_in_play = [models.HistoryGlobal, models.HistoryMachine]
    if user_id:
        models_in_play.insert(1, models.HistoryUser)

    branches = []
    for model in models_in_play:
        criteria = _scope_filters(model, user_id, machine_id)
        if since is not None:
            criteria.append(model.timestamp > since)
        if query is not None:
            criteria.append(_text_match(model, query))
        branches.append(_normalized_select(model, *criteria))

    merged = union_all(*branches).subquery("merged")
    stmt = (
        select(merged)
        .order_by(merged.c.timestamp.desc(), merged.c.source, merged.c.id)
        .limit(limit)
        .offset(offset)
    )
    result = await db.execute(stmt)
    return [schemas.HistoryEntry.model_validate(dict(row)) for row in result.mappings()]


async def search_partition(
    db: AsyncSession,
    partition: schemas.Partition,
    query: str,
    user_id: str | None = None,
    machine_id: str | None = None,
    limit: int = 20,
) -> list[schemas.HistoryEntry]:
    model = _partition_model(partition)
    stmt = (
        select(model)
        .where(*_scope_filters(model, user_id, machine_id))
        .where(_text_match(model, query))
        .order_by(model.timestamp.desc(), text("rowid DESC"))
        .limit(limit)
    )
    rows = await db.scalars(stmt)
    return [schemas.HistoryEntry.model_validate(row) for row in rows]


async def update_entry(
    db: AsyncSession,
    partition: schemas.Partition,
    entry_id: str,
    values: dict,
) -> int:
    """Update one row by id. Returns the number of rows touched."""
    model = _partition_model(partition)
    result = await db.execute(update(model).where(model.id == entry_id).values(**values))
    await db.commit()
    return result.rowcount


async def update_status_by_request(
    db: AsyncSession, request_id: str, values: dict
) -> int:
    """Apply `values` to every partition row carrying `request_id`."""
    touched = 0
    for model in models.PARTITION_MODELS.values():
        result = await db.execute(
            update(model).where(model.request_id == request_id).values(**values)
        )
        touched += result.rowcount
    await db.commit()
    return touched


async def backfill_missing_status(db: AsyncSession, before: int) -> int:
    """
    Give a status to rows written before status tracking existed.

    Rows without a response were never completed and count as cancelled; the
    user partition also recognises the explicit cancellation marker and the
    machine partition marks rows with an error code as errors. Only rows older
    than `before` with a NULL status are touched, so repeated runs are no-ops.
    """
    cancelled = schemas.CommandStatus.CANCELLED.value
    completed = schemas.CommandStatus.COMPLETED.value
    touched = 0
    for model in models.PARTITION_MODELS.values():
        whens = [(model.response.is_(None), cancelled)]
        if model is models.HistoryUser:
            whens.append((model.response == schemas.CANCELLED_RESPONSE, cancelled))
        elif model is models.HistoryMachine:
            whens.append(
                (model.error_code.is_not(None), schemas.CommandStatus.ERROR.value)
            )
        result = await db.execute(
            update(model)
            .where(model.status.is_(None), model.timestamp < before)
            .values(status=case(*whens, else_=completed))
        )
        touched += result.rowcount
    await db.commit()
    return touched


async def _count(db: AsyncSession, stmt) -> int:
    return (await db.scalar(stmt)) or 0


async def get_stats(
    db: AsyncSession,
    since: int,
    days: int,
    user_id: str | None,
    machine_id: str,
) -> schemas.HistoryStats:
    """
    Point-in-time counts over the window starting at `since`.

    Everything is recomputed from the history tables on each call.
    """
    g = models.HistoryGlobal
    global_commands = await _count(
        db, select(func.count()).select_from(g).where(g.timestamp > since)
    )

    user_commands = None
    if user_id:
        u = models.HistoryUser
        user_commands = await _count(
            db,
            select(func.count())
            .select_from(u)
            .where(u.user_id == user_id, u.timestamp > since),
        )

    m = models.HistoryMachine
    machine_commands = await _count(
        db,
        select(func.count())
        .select_from(m)
        .where(m.machine_id == machine_id, m.timestamp > since),
    )

    active_machines = await _count(
        db, select(func.count(g.machine_id.distinct())).where(g.timestamp > since)
    )
    active_users = await _count(
        db,
        select(func.count(g.user_id.distinct())).where(
            g.user_id.is_not(None), g.timestamp > since
        ),
    )

    usage_count = func.count().label("usage_count")
    top = await db.execute(
        select(g.command, usage_count)
        .where(g.timestamp > since)
        .group_by(g.command)
        .order_by(usage_count.desc(), g.command)
        .limit(10)
    )

    return schemas.HistoryStats(
        days=days,
        global_commands=global_commands,
        user_commands=user_commands,
        machine_commands=machine_commands,
        active_machines=active_machines,
        active_users=active_users,
        top_commands=[
            schemas.TopCommand(command=row.command, usage_count=row.usage_count)
            for row in top
        ],
    )


async def open_session(
    db: AsyncSession, session_id: str, machine_id: str, now: int
) -> None:
    db.add(models.Session(id=session_id, machine_id=machine_id, started_at=now))
    await db.commit()


async def set_session_user(db: AsyncSession, session_id: str, user_id: str | None) -> None:
    await db.execute(
        update(models.Session)
        .where(models.Session.id == session_id)
        .values(user_id=user_id)
    )
    await db.commit()


async def close_session(db: AsyncSession, session_id: str, now: int) -> None:
    """Set `ended_at` unless the session was already closed."""
    await db.execute(
        update(models.Session)
        .where(models.Session.id == session_id, models.Session.ended_at.is_(None))
        .values(ended_at=now)
    )
    await db.commit()
