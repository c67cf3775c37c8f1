"""Exception types raised by the termhist store."""


class HistoryStoreError(Exception):
    """Base class for every error raised by termhist itself."""


class ConfigError(HistoryStoreError):
    """Required connection settings are missing or unusable."""


class UserNotFoundError(HistoryStoreError):
    """The username does not exist or the user is inactive."""

    def __init__(self, username: str):
        self.username = username
        super().__init__(
            f"User {username} not found. "
            f"Create it first with: termhist user create --username {username}"
        )


class UserExistsError(HistoryStoreError):
    """A user with the same username or email already exists."""


class InvalidModeError(HistoryStoreError, ValueError):
    def __init__(self, mode):
        from .schemas import HistoryMode

        self.mode = mode
        valid = ", ".join(m.value for m in HistoryMode)
        super().__init__(f"Invalid mode: {mode}. Valid modes: {valid}")


class ModeRequiresUserError(HistoryStoreError):
    """User mode was used before a user was resolved."""

    def __init__(self, message: str = "User mode requires a user to be set"):
        super().__init__(message)


class PartialWriteError(HistoryStoreError):
    """
    A fan-out write committed to some partitions and failed on others.

    The committed rows are not rolled back, so the partitions have diverged
    and need manual reconciliation.

    Attributes:
        committed: partition name -> id of the row that was written.
        failed: partition name -> exception raised by that partition.
    """

    def __init__(self, committed: dict[str, str], failed: dict[str, BaseException]):
        self.committed = committed
        self.failed = failed
        reasons = "; ".join(f"{name}: {exc!r}" for name, exc in failed.items())
        super().__init__(
            f"Partial write: committed to {sorted(committed)}, "
            f"failed on {sorted(failed)} ({reasons})"
        )


INPUT_ERRORS = (
    ConfigError,
    UserNotFoundError,
    UserExistsError,
    InvalidModeError,
    ModeRequiresUserError,
)


def is_input_error(exc: BaseException) -> bool:
    """True for errors the caller fixes by changing input, False for degraded-system errors."""
    return isinstance(exc, INPUT_ERRORS)
