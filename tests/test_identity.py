import pytest

from conftest import create_user
from termhist import database, schemas
from termhist.config import HistorySettings
from termhist.database import build_engine, engine_url
from termhist.errors import ConfigError, UserExistsError, UserNotFoundError, is_input_error
from termhist.identity import MachineIdentity


def test_machine_id_is_generated_once_and_cached(tmp_path):
    identity = MachineIdentity(tmp_path / "home")

    first = identity.get_machine_id()

    assert len(first) == 64
    assert (tmp_path / "home" / "machine-id").read_text() == first
    assert MachineIdentity(tmp_path / "home").get_machine_id() == first


def test_machine_id_cache_wins_over_generation(machine_identity):
    assert machine_identity.get_machine_id() == "M1"


def test_invalidate_cache(tmp_path):
    identity = MachineIdentity(tmp_path)
    identity.get_machine_id()

    assert identity.invalidate_cache() is True
    assert identity.invalidate_cache() is False
    assert not (tmp_path / "machine-id").exists()


def test_machine_info(machine_identity):
    info = machine_identity.get_machine_info()
    assert info.machine_id == "M1"
    assert info.hostname
    assert "platform" in info.os_info


def test_settings_reject_unknown_mode():
    with pytest.raises(ValueError):
        HistorySettings(turso_url="file:x.db", history_mode="everywhere")


def test_local_urls_need_no_token():
    HistorySettings(turso_url="file:x.db", turso_token=None).validate_credentials()
    HistorySettings(turso_url="sqlite:///x.db", turso_token=None).validate_credentials()


def test_replica_mode_needs_token():
    settings = HistorySettings(
        turso_url="file:replica.db",
        turso_token=None,
        turso_sync_url="libsql://history.example.turso.io",
    )
    with pytest.raises(ConfigError):
        settings.validate_credentials()


@pytest.mark.parametrize(
    "url, expected",
    [
        ("file:/tmp/h.db", "sqlite+aiosqlite:////tmp/h.db"),
        ("sqlite:///h.db", "sqlite+aiosqlite:///h.db"),
        ("sqlite+aiosqlite:///h.db", "sqlite+aiosqlite:///h.db"),
        (":memory:", "sqlite+aiosqlite://"),
    ],
)
def test_engine_url(url, expected):
    assert engine_url(url) == expected


def test_replica_sync_config_reaches_engine(monkeypatch):
    captured = {}

    def fake_create_async_engine(url, **kwargs):
        captured.update(url=url, **kwargs)
        return object()

    monkeypatch.setattr(database, "create_async_engine", fake_create_async_engine)
    settings = HistorySettings(
        turso_url="sqlite+libsql:///replica.db",
        turso_token="tok",
        turso_sync_url="libsql://history.example.turso.io",
        turso_sync_interval=15,
    )

    build_engine(settings)

    assert captured["url"] == "sqlite+libsql:///replica.db"
    assert captured["connect_args"] == {
        "sync_url": "libsql://history.example.turso.io",
        "sync_interval": 15,
        "auth_token": "tok",
    }


def test_sync_url_on_plain_sqlite_file_is_rejected():
    settings = HistorySettings(
        turso_url="file:/tmp/replica.db",
        turso_token="tok",
        turso_sync_url="libsql://history.example.turso.io",
    )
    with pytest.raises(ConfigError, match="TURSO_SYNC_URL"):
        build_engine(settings)


def test_error_classification():
    assert is_input_error(UserNotFoundError("zed"))
    assert is_input_error(UserExistsError("dup"))
    assert is_input_error(ConfigError("missing"))
    assert not is_input_error(ConnectionError("offline"))


@pytest.mark.asyncio
async def test_create_user_rejects_duplicates(client):
    await create_user(client, "rita")

    with pytest.raises(UserExistsError, match="rita"):
        await create_user(client, "rita")
    with pytest.raises(UserExistsError, match="Email"):
        await client.users.create_user(
            schemas.UserCreate(username="rita2", name="Rita", email="rita@example.com")
        )


def test_user_create_validates_fields():
    with pytest.raises(ValueError):
        schemas.UserCreate(username="bad name", name="Bad", email="bad@example.com")
    with pytest.raises(ValueError):
        schemas.UserCreate(username="good", name="Good", email="not-an-email")


@pytest.mark.asyncio
async def test_list_deactivate_and_reactivate_users(client):
    await create_user(client, "sam")
    await create_user(client, "tess")

    await client.users.deactivate_user("tess")

    assert [u.username for u in await client.users.list_users()] == ["sam"]
    assert {u.username for u in await client.users.list_users(active_only=False)} == {
        "sam",
        "tess",
    }
    assert await client.users.get_active_user("tess") is None

    await client.users.reactivate_user("tess")
    assert (await client.users.get_active_user("tess")).username == "tess"


@pytest.mark.asyncio
async def test_deactivate_unknown_user(client):
    with pytest.raises(UserNotFoundError):
        await client.users.deactivate_user("ghost")


@pytest.mark.asyncio
async def test_user_stats(client, clock):
    await create_user(client, "uma")
    await client.set_user("uma")
    for command in ("ls", "ls", "pwd"):
        await client.save_command(command, "", schemas.CommandMetadata(tokens_used=5))
        clock.advance(60)

    stats = await client.users.get_user_stats("uma")

    assert stats.total_commands == 3
    assert stats.active_days == 1
    assert stats.total_tokens == 15
    assert stats.top_commands[0].command == "ls"
    assert stats.top_commands[0].usage_count == 2
