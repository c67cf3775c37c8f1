"""Main FastAPI application for the termhist server."""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from . import schemas
from .client import HistoryClient
from .config import HistorySettings
from .errors import (
    InvalidModeError,
    ModeRequiresUserError,
    PartialWriteError,
    UserExistsError,
    UserNotFoundError,
)
from .identity import MachineIdentity

# "Fix your input" errors and their status codes
INPUT_ERROR_STATUS = {
    UserNotFoundError: 404,
    UserExistsError: 409,
    InvalidModeError: 422,
    ModeRequiresUserError: 409,
}


def create_app(
    settings: HistorySettings | None = None,
    machine_identity: MachineIdentity | None = None,
) -> FastAPI:
    """Build the API around one history client that lives as long as the app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = HistoryClient(settings, machine_identity=machine_identity)
        await client.initialize()
        app.state.history = client
        try:
            yield
        finally:
            await client.close()

    app = FastAPI(
        title="termhist API",
        description="API for recording and querying command history.",
        lifespan=lifespan,
    )

    for exc_type, status_code in INPUT_ERROR_STATUS.items():
        app.add_exception_handler(exc_type, _input_error_handler(status_code))
    app.add_exception_handler(PartialWriteError, _partial_write_handler)
    app.add_exception_handler(OperationalError, _degraded_handler)

    _register_routes(app)
    return app


def _input_error_handler(status_code: int):
    async def handler(request: Request, exc: Exception):
        return JSONResponse(
            status_code=status_code, content={"detail": str(exc), "kind": "input"}
        )

    return handler


async def _partial_write_handler(request: Request, exc: PartialWriteError):
    return JSONResponse(
        status_code=503,
        content={
            "detail": str(exc),
            "kind": "degraded",
            "committed": exc.committed,
            "failed": sorted(exc.failed),
        },
    )


async def _degraded_handler(request: Request, exc: Exception):
    return JSONResponse(
        status_code=503, content={"detail": "Database unavailable", "kind": "degraded"}
    )


# Dependency
def get_client(request: Request) -> HistoryClient:
    """FastAPI dependency to get the application's history client."""
    return request.app.state.history


def _register_routes(app: FastAPI) -> None:
    @app.post("/history", response_model=schemas.WriteResult)
    async def save_command(
        request: schemas.SaveCommandRequest,
        client: HistoryClient = Depends(get_client),
    ):
        """Save a command in the partitions of the current mode."""
        return await client.save_command(
            request.command, request.response, request.metadata
        )

    @app.get("/history", response_model=list[schemas.HistoryEntry])
    async def get_history(
        limit: int = 100, offset: int = 0, client: HistoryClient = Depends(get_client)
    ):
        """Get the most recent history for the current mode."""
        return await client.get_history(limit=limit, offset=offset)

    @app.get("/history/search", response_model=list[schemas.HistoryEntry])
    async def search_history(
        q: str,
        mode: str | None = None,
        limit: int = 20,
        client: HistoryClient = Depends(get_client),
    ):
        """Search command and response text."""
        return await client.search_history(q, mode=mode, limit=limit)

    @app.get("/history/{partition}", response_model=list[schemas.HistoryEntry])
    async def get_partition_history(
        partition: schemas.Partition,
        limit: int = 100,
        offset: int = 0,
        client: HistoryClient = Depends(get_client),
    ):
        """Read a single partition regardless of the current mode."""
        return await client.get_history_from_table(partition, limit, offset)

    @app.post("/history/status", response_model=dict)
    async def update_status(
        update: schemas.StatusUpdate, client: HistoryClient = Depends(get_client)
    ):
        """Complete, cancel or fail a command by its request id."""
        updated = await client.update_command_status(
            update.request_id, update.status, update.response
        )
        if updated == 0:
            raise HTTPException(status_code=404, detail="Request not found")
        return {"updated": updated}

    @app.get("/cache", response_model=schemas.CachedCommand)
    async def get_cached_command(
        command: str, client: HistoryClient = Depends(get_client)
    ):
        """Get the cached output of a command if it is still fresh."""
        cached = await client.get_cached_command(command)
        if cached is None:
            raise HTTPException(status_code=404, detail="Not cached")
        return cached

    @app.get("/stats", response_model=schemas.HistoryStats)
    async def get_stats(days: int = 30, client: HistoryClient = Depends(get_client)):
        """Get command counts over the last `days` days."""
        return await client.get_stats(days)

    @app.get("/mode", response_model=dict)
    async def get_mode(client: HistoryClient = Depends(get_client)):
        return {
            "mode": client.mode.value,
            "user_id": client.user_id,
            "machine_id": client.machine_id,
            "session_id": client.session_id,
        }

    @app.put("/mode", response_model=dict)
    async def set_mode(
        request: schemas.ModeRequest, client: HistoryClient = Depends(get_client)
    ):
        client.set_mode(request.mode)
        return {"mode": client.mode.value}

    @app.put("/user", response_model=dict)
    async def set_user(
        request: schemas.SetUserRequest, client: HistoryClient = Depends(get_client)
    ):
        """Select the current user, or clear it with an empty username."""
        await client.set_user(request.username)
        return {"mode": client.mode.value, "user_id": client.user_id}

    @app.post("/users", response_model=schemas.User)
    async def create_user(
        user: schemas.UserCreate, client: HistoryClient = Depends(get_client)
    ):
        return await client.users.create_user(user)

    @app.get("/users", response_model=list[schemas.User])
    async def list_users(
        active_only: bool = True, client: HistoryClient = Depends(get_client)
    ):
        return await client.users.list_users(active_only=active_only)

    @app.delete("/users/{username}", response_model=dict)
    async def deactivate_user(username: str, client: HistoryClient = Depends(get_client)):
        """Deactivate a user. Their history is kept."""
        await client.users.deactivate_user(username)
        return {"username": username, "is_active": False}

    @app.get("/users/{username}/stats", response_model=schemas.UserStats)
    async def get_user_stats(username: str, client: HistoryClient = Depends(get_client)):
        return await client.users.get_user_stats(username)


app = create_app()
