"""
SQLAlchemy ORM models for the termhist database.

This module defines the fixed schema shared by every client:
- Users and machines (identity, created out-of-band or on first contact)
- Three independent history partitions: global, per-user and per-machine
- A command cache keyed by the hash of the command text
- Client sessions
"""

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text, text

from .database import Base

NOW = text("(strftime('%s', 'now'))")
RANDOM_ID = text("(hex(randomblob(16)))")


def new_id() -> str:
    """Client-side id with the same shape as hex(randomblob(16))."""
    return uuid.uuid4().hex.upper()


class User(Base):
    """
    A person whose history can be kept separately.

    Users have no password; `is_active = 0` hides them from lookups.
    """

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id, server_default=RANDOM_ID)
    username = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    created_at = Column(Integer, server_default=NOW)
    updated_at = Column(Integer, server_default=NOW)
    is_active = Column(Boolean, server_default=text("1"))


class Machine(Base):
    """A registered host. `total_commands` grows by one per saved command."""

    __tablename__ = "machines"

    machine_id = Column(String, primary_key=True)
    hostname = Column(String, nullable=False)
    ip_address = Column(String)
    os_info = Column(Text)  # JSON string
    first_seen = Column(Integer, server_default=NOW)
    last_seen = Column(Integer, server_default=NOW)
    total_commands = Column(Integer, server_default=text("0"))


class HistoryGlobal(Base):
    """Shared history visible to every machine and user."""

    __tablename__ = "history_global"
    source = "global"

    id = Column(String, primary_key=True, default=new_id, server_default=RANDOM_ID)
    command = Column(Text, nullable=False)
    response = Column(Text)
    machine_id = Column(String, ForeignKey("machines.machine_id"))
    user_id = Column(String, ForeignKey("users.id"))
    timestamp = Column(Integer, server_default=NOW)
    tokens_used = Column(Integer)
    execution_time_ms = Column(Integer)
    tags = Column(Text)  # JSON list
    session_id = Column(String)
    status = Column(String, server_default=text("'pending'"))
    request_id = Column(String)
    updated_at = Column(Integer)
    completed_at = Column(Integer)


class HistoryUser(Base):
    """History scoped to one user, across machines."""

    __tablename__ = "history_user"
    source = "user"

    id = Column(String, primary_key=True, default=new_id, server_default=RANDOM_ID)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    command = Column(Text, nullable=False)
    response = Column(Text)
    machine_id = Column(String, ForeignKey("machines.machine_id"))
    timestamp = Column(Integer, server_default=NOW)
    session_id = Column(String)
    context = Column(Text)  # JSON object
    tokens_used = Column(Integer)
    execution_time_ms = Column(Integer)
    status = Column(String, server_default=text("'pending'"))
    request_id = Column(String)
    updated_at = Column(Integer)
    completed_at = Column(Integer)


class HistoryMachine(Base):
    """History scoped to one machine, across users."""

    __tablename__ = "history_machine"
    source = "machine"

    id = Column(String, primary_key=True, default=new_id, server_default=RANDOM_ID)
    machine_id = Column(String, ForeignKey("machines.machine_id"), nullable=False)
    command = Column(Text, nullable=False)
    response = Column(Text)
    user_id = Column(String, ForeignKey("users.id"))
    timestamp = Column(Integer, server_default=NOW)
    error_code = Column(Integer)
    session_id = Column(String)
    status = Column(String, server_default=text("'pending'"))
    request_id = Column(String)
    updated_at = Column(Integer)
    completed_at = Column(Integer)


class CommandCache(Base):
    """Last output and running-average duration per distinct command text."""

    __tablename__ = "command_cache"

    command_hash = Column(String, primary_key=True)
    command = Column(Text, nullable=False)
    output = Column(Text)
    machine_id = Column(String)
    last_executed = Column(Integer)
    execution_count = Column(Integer, server_default=text("1"))
    avg_execution_time_ms = Column(Integer)


class Session(Base):
    """One running client. `ended_at` stays NULL while the client is open."""

    __tablename__ = "sessions"

    id = Column(String, primary_key=True)
    machine_id = Column(String, ForeignKey("machines.machine_id"), nullable=False)
    user_id = Column(String, ForeignKey("users.id"))
    started_at = Column(Integer, server_default=NOW)
    ended_at = Column(Integer)
    command_count = Column(Integer, server_default=text("0"))


PARTITION_MODELS = {
    "global": HistoryGlobal,
    "user": HistoryUser,
    "machine": HistoryMachine,
}

# Recency scans per partition key
Index("idx_history_global_timestamp", HistoryGlobal.timestamp.desc())
Index(
    "idx_history_global_machine",
    HistoryGlobal.machine_id,
    HistoryGlobal.timestamp.desc(),
)
Index("idx_history_user_lookup", HistoryUser.user_id, HistoryUser.timestamp.desc())
Index(
    "idx_history_machine_lookup",
    HistoryMachine.machine_id,
    HistoryMachine.timestamp.desc(),
)

# Status and request-id lookups for asynchronous completion
Index("idx_history_user_status", HistoryUser.status, HistoryUser.timestamp.desc())
Index("idx_history_user_request", HistoryUser.request_id)
Index("idx_history_user_request_unique", HistoryUser.request_id, unique=True)
Index(
    "idx_history_global_status", HistoryGlobal.status, HistoryGlobal.timestamp.desc()
)
Index("idx_history_global_request", HistoryGlobal.request_id)
Index(
    "idx_history_machine_status",
    HistoryMachine.status,
    HistoryMachine.timestamp.desc(),
)
