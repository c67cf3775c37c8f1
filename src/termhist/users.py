"""
User directory for the history store.

Users carry no credentials; they only exist so history can be grouped per
person. Deactivated users are kept for their history but can no longer be
selected.
"""

import logging
import time

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from . import models, schemas
from .errors import UserExistsError, UserNotFoundError

logger = logging.getLogger(__name__)


class UserDirectory:
    """CRUD over the `users` table."""

    def __init__(self, sessionmaker: async_sessionmaker):
        self.sessionmaker = sessionmaker

    async def get_active_user(self, username: str) -> models.User | None:
        """Look up an active user. Inactive users are reported as missing."""
        async with self.sessionmaker() as db:
            result = await db.scalars(
                select(models.User).where(
                    models.User.username == username,
                    models.User.is_active.is_(True),
                )
            )
            return result.first()

    async def create_user(self, user: schemas.UserCreate) -> models.User:
        async with self.sessionmaker() as db:
            existing = await db.scalars(
                select(models.User).where(
                    or_(
                        models.User.username == user.username,
                        models.User.email == user.email,
                    )
                )
            )
            clash = existing.first()
            if clash is not None:
                if clash.username == user.username:
                    raise UserExistsError(f"User {user.username} already exists")
                raise UserExistsError(f"Email {user.email} is already in use")

            now = int(time.time())
            db_user = models.User(
                username=user.username,
                name=user.name,
                email=user.email,
                created_at=now,
                updated_at=now,
                is_active=True,
            )
            db.add(db_user)
            await db.commit()
            await db.refresh(db_user)
        logger.info("Created user %s", user.username)
        return db_user

    async def list_users(self, active_only: bool = True) -> list[models.User]:
        stmt = select(models.User).order_by(models.User.name)
        if active_only:
            stmt = stmt.where(models.User.is_active.is_(True))
        async with self.sessionmaker() as db:
            return list(await db.scalars(stmt))

    async def _set_active(self, username: str, active: bool) -> None:
        async with self.sessionmaker() as db:
            result = await db.execute(
                update(models.User)
                .where(models.User.username == username)
                .values(is_active=active, updated_at=int(time.time()))
            )
            await db.commit()
        if result.rowcount == 0:
            raise UserNotFoundError(username)
        logger.info("User %s %s", username, "reactivated" if active else "deactivated")

    async def deactivate_user(self, username: str) -> None:
        """Soft delete: the user and their history stay in the database."""
        await self._set_active(username, False)

    async def reactivate_user(self, username: str) -> None:
        await self._set_active(username, True)

    async def get_user_stats(self, username: str) -> schemas.UserStats:
        user = await self.get_active_user(username)
        if user is None:
            raise UserNotFoundError(username)

        h = models.HistoryUser
        async with self.sessionmaker() as db:
            totals = (
                await db.execute(
                    select(
                        func.count().label("total_commands"),
                        func.count(func.date(h.timestamp, "unixepoch").distinct()).label(
                            "active_days"
                        ),
                        func.min(h.timestamp).label("first_command"),
                        func.max(h.timestamp).label("last_command"),
                        func.sum(h.tokens_used).label("total_tokens"),
                    ).where(h.user_id == user.id)
                )
            ).one()

            usage_count = func.count().label("usage_count")
            prefix = func.substr(h.command, 1, 50).label("command")
            top = await db.execute(
                select(prefix, usage_count)
                .where(h.user_id == user.id)
                .group_by(prefix)
                .order_by(usage_count.desc())
                .limit(5)
            )
            top_commands = [
                schemas.TopCommand(command=row.command, usage_count=row.usage_count)
                for row in top
            ]

        return schemas.UserStats(
            username=username,
            total_commands=totals.total_commands,
            active_days=totals.active_days,
            first_command=totals.first_command,
            last_command=totals.last_command,
            total_tokens=totals.total_tokens,
            top_commands=top_commands,
        )
