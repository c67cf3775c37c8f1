"""
Pydantic schemas for the termhist store and its API.

These schemas define the shape of the data passed into and returned from the
history client, and double as request/response bodies for the HTTP API.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HistoryMode(str, Enum):
    """Where writes go and which partitions reads come from."""

    GLOBAL = "global"
    USER = "user"
    MACHINE = "machine"
    HYBRID = "hybrid"


class Partition(str, Enum):
    """The three independent history tables."""

    GLOBAL = "global"
    USER = "user"
    MACHINE = "machine"


class CommandStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    # Legacy rows that recorded an error code before status tracking
    ERROR = "error"


CANCELLED_RESPONSE = "[Cancelled by user]"

TERMINAL_STATUSES = {
    CommandStatus.COMPLETED,
    CommandStatus.CANCELLED,
    CommandStatus.FAILED,
    CommandStatus.ERROR,
}


class CommandMetadata(BaseModel):
    """Optional metadata attached to a saved command."""

    session_id: str | None = None
    tokens_used: int | None = None
    execution_time_ms: int | None = None
    tags: list[str] = []
    context: dict[str, Any] = {}
    error_code: int | None = None
    status: CommandStatus = CommandStatus.PENDING
    request_id: str | None = None
    cache: bool = True  # False skips the command cache upsert


class SaveCommandRequest(BaseModel):
    """Schema for saving a command/response pair."""

    command: str
    response: str | None = None
    metadata: CommandMetadata = CommandMetadata()


class WriteResult(BaseModel):
    """Outcome of a save: the primary row id and the row written per partition."""

    entry_id: str | None
    partitions: dict[Partition, str]


class HistoryEntry(BaseModel):
    """
    A history row from any partition.

    Columns a partition does not have are None, so rows from a merged read
    share one shape.
    """

    source: Partition
    id: str
    command: str
    response: str | None = None
    machine_id: str | None = None
    user_id: str | None = None
    timestamp: int
    session_id: str | None = None
    tokens_used: int | None = None
    execution_time_ms: int | None = None
    tags: str | None = None
    context: str | None = None
    error_code: int | None = None
    status: str | None = None
    request_id: str | None = None
    updated_at: int | None = None
    completed_at: int | None = None

    model_config = ConfigDict(from_attributes=True)


class StatusUpdate(BaseModel):
    """Schema for completing or cancelling a command by request id."""

    request_id: str
    status: CommandStatus
    response: str | None = None


class CachedCommand(BaseModel):
    command: str
    output: str | None = None
    machine_id: str | None = None
    last_executed: int
    execution_count: int
    avg_execution_time_ms: float | None = None

    model_config = ConfigDict(from_attributes=True)


class TopCommand(BaseModel):
    command: str
    usage_count: int


class HistoryStats(BaseModel):
    """Counts over a rolling window of days."""

    days: int
    global_commands: int
    user_commands: int | None = None
    machine_commands: int
    active_machines: int
    active_users: int
    top_commands: list[TopCommand] = []


class ModeRequest(BaseModel):
    mode: str


class SetUserRequest(BaseModel):
    username: str | None = None


class UserCreate(BaseModel):
    """Schema used for creating a new user. All fields are required."""

    username: str = Field(min_length=1, pattern=r"^[a-zA-Z0-9_-]+$")
    name: str = Field(min_length=1)
    email: str = Field(pattern=r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class User(BaseModel):
    id: str
    username: str
    name: str
    email: str
    created_at: int | None = None
    updated_at: int | None = None
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)


class UserStats(BaseModel):
    username: str
    total_commands: int
    active_days: int
    first_command: int | None = None
    last_command: int | None = None
    total_tokens: int | None = None
    top_commands: list[TopCommand] = []


class MachineInfo(BaseModel):
    machine_id: str
    hostname: str
    ip_address: str
    os_info: dict[str, Any]
