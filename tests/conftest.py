import pytest
import pytest_asyncio
from sqlalchemy import func, select

from termhist import models, schemas
from termhist.client import HistoryClient
from termhist.config import HistorySettings
from termhist.identity import MachineIdentity

START = 1_700_000_000


class FakeClock:
    """Deterministic replacement for time.time()."""

    def __init__(self, start: float = START):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return HistorySettings(
        turso_url=f"file:{tmp_path / 'history.db'}",
        turso_token=None,
        history_mode="global",
        machine_id_dir=tmp_path / "home",
    )


@pytest.fixture
def machine_identity(tmp_path):
    home = tmp_path / "home"
    home.mkdir(exist_ok=True)
    (home / "machine-id").write_text("M1")
    return MachineIdentity(home)


@pytest_asyncio.fixture
async def client(settings, machine_identity, clock):
    history = HistoryClient(settings, machine_identity=machine_identity, clock=clock)
    await history.initialize()
    yield history
    await history.close()


async def create_user(client, username, active=True):
    user = await client.users.create_user(
        schemas.UserCreate(
            username=username, name=username.title(), email=f"{username}@example.com"
        )
    )
    if not active:
        await client.users.deactivate_user(username)
    return user


async def count_rows(client, model, **filters):
    async with client.sessionmaker() as db:
        stmt = select(func.count()).select_from(model)
        for name, value in filters.items():
            stmt = stmt.where(getattr(model, name) == value)
        return await db.scalar(stmt)


async def get_machine(client):
    async with client.sessionmaker() as db:
        return await db.get(models.Machine, client.machine_id)


async def get_session(client, session_id=None):
    async with client.sessionmaker() as db:
        return await db.get(models.Session, session_id or client.session_id)
