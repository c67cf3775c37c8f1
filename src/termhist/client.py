"""
History client: the single entry point used by the orchestration layer.

The client owns one engine for its lifetime, the current operating mode and
the resolved user/machine ids. Writes are routed to one or more history
partitions according to the mode; reads come from the matching partition or,
in hybrid mode, from a merge of all three.

Mode behaviour:
- global:  one shared table for everyone
- user:    history follows the selected user across machines
- machine: history stays with the host
- hybrid:  every write lands in global and machine (and user, if one is set);
           reads merge the recent rows of all three
"""

import asyncio
import hashlib
import logging
import secrets
import time
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from . import crud, schemas
from .config import HistorySettings
from .database import build_engine, ensure_schema, has_single_connection, session_factory
from .errors import InvalidModeError, ModeRequiresUserError, PartialWriteError, UserNotFoundError
from .identity import MachineIdentity
from .schemas import CANCELLED_RESPONSE, CommandMetadata, CommandStatus, HistoryMode, Partition
from .users import UserDirectory

logger = logging.getLogger(__name__)

DAY = 86400

# Partitions written for each mode, the user partition only when a user is set
WRITE_PARTITIONS = {
    HistoryMode.GLOBAL: (Partition.GLOBAL,),
    HistoryMode.USER: (Partition.USER,),
    HistoryMode.MACHINE: (Partition.MACHINE,),
    HistoryMode.HYBRID: (Partition.GLOBAL, Partition.MACHINE, Partition.USER),
}


def hash_command(command: str) -> str:
    """Stable content hash used as the cache key."""
    return hashlib.sha256(command.encode("utf-8")).hexdigest()


class HistoryClient:
    """Persistence and query API over the partitioned history tables."""

    def __init__(
        self,
        settings: HistorySettings | None = None,
        machine_identity: MachineIdentity | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or HistorySettings()
        self.machine_identity = machine_identity or MachineIdentity(
            self.settings.machine_id_dir
        )
        self.clock = clock

        self.engine: AsyncEngine | None = None
        self.sessionmaker = None
        self.users: UserDirectory | None = None

        self.mode: HistoryMode = self.settings.history_mode
        self.user_id: str | None = None
        self.machine_id: str | None = None
        self.session_id: str | None = None

        if self.settings.debug:
            logging.getLogger("termhist").setLevel(logging.DEBUG)

    def now(self) -> int:
        return int(self.clock())

    async def initialize(self) -> None:
        """
        Connect, create the schema if needed, register this machine and open a session.

        Safe to call on every process start.
        """
        self.settings.validate_credentials()

        self.engine = build_engine(self.settings)
        self.sessionmaker = session_factory(self.engine)
        self.users = UserDirectory(self.sessionmaker)

        await ensure_schema(self.engine)

        self.machine_id = self.machine_identity.get_machine_id()
        async with self.sessionmaker() as db:
            await self.machine_identity.register_machine(db, now=self.now())
            migrated = await crud.backfill_missing_status(db, before=self.now())
        if migrated:
            logger.info("Backfilled status on %d history rows", migrated)

        self.session_id = self.generate_session_id()
        async with self.sessionmaker() as db:
            await crud.open_session(db, self.session_id, self.machine_id, self.now())

        logger.debug(
            "History client ready: mode=%s machine=%s session=%s",
            self.mode.value,
            self.machine_id,
            self.session_id,
        )

    def generate_session_id(self) -> str:
        return f"session-{int(self.clock() * 1000)}-{secrets.token_hex(8)}"

    async def set_user(self, username: str | None):
        """
        Select the user whose partition is used and switch to user mode.

        An empty username clears the user and goes back to global mode. An
        unknown or inactive user raises UserNotFoundError and leaves the
        current mode and user untouched.
        """
        if not username:
            self.user_id = None
            self.mode = HistoryMode.GLOBAL
            await self._record_session_user()
            return None

        user = await self.users.get_active_user(username)
        if user is None:
            raise UserNotFoundError(username)

        self.user_id = user.id
        self.mode = HistoryMode.USER
        await self._record_session_user()
        logger.debug("User set: %s (%s)", username, self.user_id)
        return user

    async def _record_session_user(self) -> None:
        async with self.sessionmaker() as db:
            await crud.set_session_user(db, self.session_id, self.user_id)

    def set_mode(self, mode: HistoryMode | str) -> None:
        try:
            new_mode = HistoryMode(mode)
        except ValueError:
            raise InvalidModeError(mode) from None
        self.mode = new_mode
        logger.debug("Mode changed to %s", new_mode.value)

    def _require_user(self) -> str:
        if not self.user_id:
            raise ModeRequiresUserError()
        return self.user_id

    async def save_command(
        self,
        command: str,
        response: str | None = None,
        metadata: CommandMetadata | None = None,
    ) -> schemas.WriteResult:
        """
        Record a command/response pair in the partitions of the current mode.

        Hybrid writes run concurrently, each in its own transaction. If some
        of them fail after others committed, nothing is rolled back and
        PartialWriteError reports which partitions diverged. If all of them
        fail, the first error propagates as is.

        Once the partition writes succeed, the machine counter is bumped
        exactly once and the command cache is refreshed unless
        `metadata.cache` is False.
        """
        metadata = (metadata or CommandMetadata()).model_copy()
        metadata.session_id = metadata.session_id or self.session_id

        if self.mode is HistoryMode.USER:
            self._require_user()

        partitions = [
            p
            for p in WRITE_PARTITIONS[self.mode]
            if p is not Partition.USER or self.user_id
        ]
        timestamp = self.now()
        written = await self._fan_out(partitions, command, response, timestamp, metadata)

        async with self.sessionmaker() as db:
            await crud.bump_machine_stats(
                db, self.machine_id, self.now(), session_id=self.session_id
            )

        if metadata.cache:
            await self.update_command_cache(
                command, response, execution_time_ms=metadata.execution_time_ms
            )

        entry_id = written[partitions[0]]
        logger.debug(
            "Command saved to %s history (%s)", self.mode.value, ", ".join(written)
        )
        return schemas.WriteResult(entry_id=entry_id, partitions=written)

    async def _insert(
        self,
        partition: Partition,
        command: str,
        response: str | None,
        timestamp: int,
        metadata: CommandMetadata,
    ) -> str:
        async with self.sessionmaker() as db:
            return await crud.insert_history_entry(
                db,
                partition,
                command=command,
                response=response,
                machine_id=self.machine_id,
                user_id=self.user_id,
                timestamp=timestamp,
                metadata=metadata,
            )

    async def _fan_out(self, partitions, command, response, timestamp, metadata):
        if has_single_connection(self.engine):
            # One shared connection cannot hold two transactions at once
            results = []
            for p in partitions:
                try:
                    results.append(
                        await self._insert(p, command, response, timestamp, metadata)
                    )
                except Exception as exc:
                    results.append(exc)
        else:
            results = await asyncio.gather(
                *(
                    self._insert(p, command, response, timestamp, metadata)
                    for p in partitions
                ),
                return_exceptions=True,
            )
        written = {}
        failed = {}
        for partition, result in zip(partitions, results):
            if isinstance(result, BaseException):
                failed[partition] = result
            else:
                written[partition] = result

        if failed and not written:
            raise next(iter(failed.values()))
        if failed:
            logger.error(
                "Partitions diverged: command committed to %s but failed on %s; "
                "no rollback was attempted",
                ", ".join(p.value for p in written),
                ", ".join(p.value for p in failed),
            )
            raise PartialWriteError(
                {p.value: row_id for p, row_id in written.items()},
                {p.value: exc for p, exc in failed.items()},
            )
        return written

    async def update_entry(
        self,
        entry_id: str,
        response: str | None = None,
        status: CommandStatus | None = None,
    ) -> bool:
        """Fill in the response and/or status of a row in the current mode's partitions."""
        values = {}
        if response is not None:
            values["response"] = response
        if status is not None:
            status = CommandStatus(status)
            values["status"] = status.value
            values["updated_at"] = self.now()
            if status in schemas.TERMINAL_STATUSES:
                values["completed_at"] = values["updated_at"]
        if not values:
            return True

        if self.mode is HistoryMode.USER:
            self._require_user()
        touched = 0
        async with self.sessionmaker() as db:
            for partition in WRITE_PARTITIONS[self.mode]:
                touched += await crud.update_entry(db, partition, entry_id, values)
        return touched > 0

    async def update_command_status(
        self,
        request_id: str,
        status: CommandStatus | str,
        response: str | None = None,
    ) -> int:
        """
        Move every partition row with `request_id` to `status`.

        Terminal statuses also stamp `completed_at`. Returns the number of
        rows updated across all partitions.
        """
        status = CommandStatus(status)
        now = self.now()
        values = {"status": status.value, "updated_at": now}
        if status in schemas.TERMINAL_STATUSES:
            values["completed_at"] = now
        if response:
            values["response"] = response

        async with self.sessionmaker() as db:
            return await crud.update_status_by_request(db, request_id, values)

    async def complete_command(self, request_id: str, response: str) -> int:
        return await self.update_command_status(
            request_id, CommandStatus.COMPLETED, response
        )

    async def cancel_command(self, request_id: str) -> int:
        return await self.update_command_status(
            request_id, CommandStatus.CANCELLED, CANCELLED_RESPONSE
        )

    async def update_command_cache(
        self,
        command: str,
        output: str | None,
        execution_time_ms: int | None = None,
    ) -> None:
        """Record an execution in the cache. Cache failures are logged, never raised."""
        try:
            async with self.sessionmaker() as db:
                await crud.upsert_command_cache(
                    db,
                    hash_command(command),
                    command,
                    output,
                    self.machine_id,
                    self.now(),
                    execution_time_ms,
                )
        except SQLAlchemyError as exc:
            logger.warning("Command cache update failed for %r: %s", command, exc)

    async def get_cached_command(self, command: str) -> schemas.CachedCommand | None:
        """
        Cached output for `command`, or None when missing or older than the TTL.

        An unreachable cache also reads as a miss so callers just recompute.
        """
        fresh_after = self.now() - self.settings.cache_ttl
        try:
            async with self.sessionmaker() as db:
                row = await crud.get_cached_command(
                    db, hash_command(command), fresh_after
                )
        except SQLAlchemyError as exc:
            logger.warning("Command cache lookup failed for %r: %s", command, exc)
            return None
        if row is None:
            return None
        return schemas.CachedCommand.model_validate(row)

    async def get_history(
        self, limit: int = 100, offset: int = 0
    ) -> list[schemas.HistoryEntry]:
        """Most-recent-first history for the current mode."""
        if self.mode is HistoryMode.HYBRID:
            since = self.now() - self.settings.history_window_days * DAY
            async with self.sessionmaker() as db:
                return await crud.get_merged_history(
                    db,
                    self.user_id,
                    self.machine_id,
                    since=since,
                    limit=limit,
                    offset=offset,
                )
        return await self.get_history_from_table(
            Partition(self.mode.value), limit, offset
        )

    async def get_history_from_table(
        self, partition: Partition | str, limit: int = 100, offset: int = 0
    ) -> list[schemas.HistoryEntry]:
        """Read one partition regardless of the current mode."""
        partition = Partition(partition)
        if partition is Partition.USER:
            self._require_user()
        async with self.sessionmaker() as db:
            return await crud.get_partition_history(
                db,
                partition,
                user_id=self.user_id,
                machine_id=self.machine_id,
                limit=limit,
                offset=offset,
            )

    async def search_history(
        self,
        query: str,
        mode: HistoryMode | str | None = None,
        limit: int = 20,
        user_id: str | None = None,
        machine_id: str | None = None,
    ) -> list[schemas.HistoryEntry]:
        """
        Case-insensitive substring search over command and response text.

        `mode` defaults to the current mode; hybrid searches every partition
        the hybrid read would show, without its recency window.
        """
        if mode is None:
            mode = self.mode
        else:
            try:
                mode = HistoryMode(mode)
            except ValueError:
                raise InvalidModeError(mode) from None

        user_id = user_id or self.user_id
        machine_id = machine_id or self.machine_id

        async with self.sessionmaker() as db:
            if mode is HistoryMode.HYBRID:
                return await crud.get_merged_history(
                    db, user_id, machine_id, query=query, limit=limit
                )
            if mode is HistoryMode.USER and not user_id:
                raise ModeRequiresUserError("User search requires a user id")
            return await crud.search_partition(
                db,
                Partition(mode.value),
                query,
                user_id=user_id,
                machine_id=machine_id,
                limit=limit,
            )

    async def get_stats(self, days: int = 30) -> schemas.HistoryStats:
        since = self.now() - days * DAY
        async with self.sessionmaker() as db:
            return await crud.get_stats(db, since, days, self.user_id, self.machine_id)

    async def close(self) -> None:
        """End the session and release the connection. Further calls are no-ops."""
        if self.engine is None:
            return
        if self.session_id:
            async with self.sessionmaker() as db:
                await crud.close_session(db, self.session_id, self.now())
        await self.engine.dispose()
        self.engine = None
        logger.debug("History client closed (session %s)", self.session_id)

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info):
        await self.close()
