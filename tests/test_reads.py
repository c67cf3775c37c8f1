import pytest

from conftest import create_user
from termhist.errors import InvalidModeError
from termhist.schemas import Partition

DAY = 86400


@pytest.mark.asyncio
async def test_global_history_is_newest_first_and_paginated(client, clock):
    for i in range(5):
        await client.save_command(f"echo {i}", str(i))
        clock.advance(1)

    first_page = await client.get_history(limit=2, offset=0)
    second_page = await client.get_history(limit=2, offset=2)

    assert [e.command for e in first_page] == ["echo 4", "echo 3"]
    assert [e.command for e in second_page] == ["echo 2", "echo 1"]


@pytest.mark.asyncio
async def test_machine_history_only_shows_this_machine(client):
    client.set_mode("machine")
    await client.save_command("ls", "")

    entries = await client.get_history()
    assert [e.machine_id for e in entries] == ["M1"]
    assert entries[0].source == Partition.MACHINE


@pytest.mark.asyncio
async def test_user_history_only_shows_that_user(client, clock):
    await create_user(client, "kim")
    await create_user(client, "lee")

    await client.set_user("kim")
    await client.save_command("kim's command", "")
    clock.advance(1)
    await client.set_user("lee")
    await client.save_command("lee's command", "")

    assert [e.command for e in await client.get_history()] == ["lee's command"]
    await client.set_user("kim")
    assert [e.command for e in await client.get_history()] == ["kim's command"]


@pytest.mark.asyncio
async def test_hybrid_read_merges_partitions_newest_first(client, clock):
    await create_user(client, "mia")

    client.set_mode("global")
    await client.save_command("global one", "")
    clock.advance(10)
    await client.set_user("mia")
    await client.save_command("user one", "")
    clock.advance(10)
    client.set_mode("machine")
    await client.save_command("machine one", "")
    clock.advance(10)
    client.set_mode("global")
    await client.save_command("global two", "")
    clock.advance(10)

    client.set_mode("hybrid")
    entries = await client.get_history()

    assert [(e.command, e.source) for e in entries] == [
        ("global two", Partition.GLOBAL),
        ("machine one", Partition.MACHINE),
        ("user one", Partition.USER),
        ("global one", Partition.GLOBAL),
    ]
    timestamps = [e.timestamp for e in entries]
    assert timestamps == sorted(timestamps, reverse=True)
    assert len(set(timestamps)) == len(timestamps)


@pytest.mark.asyncio
async def test_hybrid_read_normalizes_missing_columns(client):
    await create_user(client, "ned")
    await client.set_user("ned")
    client.set_mode("hybrid")
    await client.save_command("make", "")

    by_source = {e.source: e for e in await client.get_history()}
    assert set(by_source) == set(Partition)
    assert by_source[Partition.MACHINE].tokens_used is None
    assert by_source[Partition.MACHINE].tags is None
    assert by_source[Partition.GLOBAL].context is None
    assert by_source[Partition.GLOBAL].error_code is None


@pytest.mark.asyncio
async def test_hybrid_read_without_user_skips_user_branch(client, clock):
    await create_user(client, "olga")
    await client.set_user("olga")
    await client.save_command("only in user", "")
    await client.set_user(None)
    clock.advance(1)

    client.set_mode("hybrid")
    entries = await client.get_history()

    assert entries == []


@pytest.mark.asyncio
async def test_hybrid_read_is_bounded_to_recent_window(client, clock):
    client.set_mode("hybrid")
    await client.save_command("old", "")
    clock.advance(8 * DAY)
    await client.save_command("recent", "")

    assert [e.command for e in await client.get_history()] == ["recent", "recent"]

    # The window only applies to the merged read
    client.set_mode("global")
    assert [e.command for e in await client.get_history()] == ["recent", "old"]


@pytest.mark.asyncio
async def test_hybrid_window_is_configurable(client, clock):
    client.settings.history_window_days = 30
    client.set_mode("hybrid")
    await client.save_command("old", "")
    clock.advance(8 * DAY)

    assert len(await client.get_history()) == 2


@pytest.mark.asyncio
async def test_search_is_case_insensitive_on_command_and_response(client, clock):
    await client.save_command("Docker ps", "CONTAINER ID")
    clock.advance(1)
    await client.save_command("kubectl get pods", "no docker here")
    clock.advance(1)
    await client.save_command("ls", "files")

    results = await client.search_history("DOCKER")

    assert [e.command for e in results] == ["kubectl get pods", "Docker ps"]


@pytest.mark.asyncio
async def test_search_treats_wildcards_literally(client):
    await client.save_command("df", "usage 100%")
    await client.save_command("du", "usage 1000")

    results = await client.search_history("100%")

    assert [e.command for e in results] == ["df"]


@pytest.mark.asyncio
async def test_search_respects_limit(client, clock):
    for i in range(5):
        await client.save_command(f"git log {i}", "")
        clock.advance(1)

    assert len(await client.search_history("git", limit=3)) == 3


@pytest.mark.asyncio
async def test_search_scoped_to_requested_mode(client):
    client.set_mode("machine")
    await client.save_command("machine-only grep", "")
    client.set_mode("global")

    assert await client.search_history("grep") == []
    results = await client.search_history("grep", mode="machine")
    assert [e.source for e in results] == [Partition.MACHINE]


@pytest.mark.asyncio
async def test_hybrid_search_merges_partitions(client, clock):
    await create_user(client, "pam")
    await client.set_user("pam")
    client.set_mode("hybrid")
    await client.save_command("find . -name '*.py'", "")
    clock.advance(30 * DAY)

    results = await client.search_history("find")

    assert {e.source for e in results} == set(Partition)


@pytest.mark.asyncio
async def test_search_rejects_unknown_mode(client):
    with pytest.raises(InvalidModeError):
        await client.search_history("x", mode="everything")


@pytest.mark.asyncio
async def test_stats_over_rolling_window(client, clock):
    await create_user(client, "quinn")
    await client.set_user("quinn")
    client.set_mode("hybrid")

    await client.save_command("ancient", "")
    clock.advance(10 * DAY)
    for command in ("git pull", "git pull", "make", "git pull", "make", "ls"):
        await client.save_command(command, "")
        clock.advance(1)

    stats = await client.get_stats(days=7)

    assert stats.days == 7
    assert stats.global_commands == 6
    assert stats.user_commands == 6
    assert stats.machine_commands == 6
    assert stats.active_machines == 1
    assert stats.active_users == 1
    assert [(t.command, t.usage_count) for t in stats.top_commands] == [
        ("git pull", 3),
        ("make", 2),
        ("ls", 1),
    ]

    assert (await client.get_stats(days=30)).global_commands == 7


@pytest.mark.asyncio
async def test_stats_without_user(client):
    await client.save_command("ls", "")

    stats = await client.get_stats()

    assert stats.user_commands is None
    assert stats.active_users == 0
    assert stats.global_commands == 1
    assert stats.machine_commands == 0


@pytest.mark.asyncio
async def test_hybrid_pages_order_tied_rows_stably(client):
    await create_user(client, "pia")
    await client.set_user("pia")
    client.set_mode("hybrid")
    result = await client.save_command("make test", "")

    pages = [await client.get_history(limit=1, offset=i) for i in range(3)]

    assert [(page[0].source, page[0].id) for page in pages] == [
        (Partition.GLOBAL, result.partitions[Partition.GLOBAL]),
        (Partition.MACHINE, result.partitions[Partition.MACHINE]),
        (Partition.USER, result.partitions[Partition.USER]),
    ]
