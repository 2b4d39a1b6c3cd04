import asyncio

import pytest

from classroom.realtime import Broadcaster, ChangeEvent, LiveTable, pump


def chapter(pk, order, title="Intro", status="draft"):
    return {"id": pk, "order_index": order, "title": title, "status": status}


def test_optimistic_insert_then_echo_keeps_one_row():
    table = LiveTable(sort_key="order_index")
    table.apply_local(chapter(1, 1))
    table.apply(ChangeEvent("chapters", "INSERT", None, chapter(1, 1, title="Intro (server)")))

    assert len(table) == 1
    assert table.get(1)["title"] == "Intro (server)"


def test_echo_of_identical_row_is_not_a_change():
    table = LiveTable()
    table.load([chapter(1, 1)])
    assert table.apply(ChangeEvent("chapters", "INSERT", None, chapter(1, 1))) is False


def test_update_and_delete():
    table = LiveTable(sort_key="order_index")
    table.load([chapter(1, 1), chapter(2, 2)])

    assert table.apply(ChangeEvent("chapters", "UPDATE", chapter(2, 2), chapter(2, 2, status="published")))
    assert table.get(2)["status"] == "published"

    assert table.apply(ChangeEvent("chapters", "DELETE", chapter(1, 1), None))
    assert [r["id"] for r in table.rows()] == [2]
    # deleting again is a no-op
    assert table.apply(ChangeEvent("chapters", "DELETE", chapter(1, 1), None)) is False


def test_rows_sorted_by_sort_key():
    table = LiveTable(sort_key="order_index")
    table.load([chapter(1, 3), chapter(2, 1), chapter(3, 2)])
    assert [r["id"] for r in table.rows()] == [2, 3, 1]


def test_rows_are_copies():
    table = LiveTable()
    table.load([chapter(1, 1)])
    table.rows()[0]["title"] = "changed"
    assert table.get(1)["title"] == "Intro"


def test_unknown_event_type_rejected_on_subscribe():
    with pytest.raises(ValueError):
        Broadcaster().subscribe("chapters", ["TRUNCATE"])


@pytest.mark.anyio
async def test_channel_only_gets_its_table_and_types():
    hub = Broadcaster()
    inserts = hub.subscribe("chapters", ["INSERT"])

    hub.publish(ChangeEvent("feedback", "INSERT", None, {"id": 1}))
    hub.publish(ChangeEvent("chapters", "DELETE", {"id": 1}, None))
    hub.publish(ChangeEvent("chapters", "INSERT", None, {"id": 2}))

    event = await asyncio.wait_for(inserts.__anext__(), 1)
    assert event.new == {"id": 2}
    assert inserts.queue.empty()

    inserts.close()
    assert hub.subscribers == []


@pytest.mark.anyio
async def test_pump_feeds_live_table():
    hub = Broadcaster()
    table = LiveTable(sort_key="order_index")
    channel = hub.subscribe("chapters")
    task = asyncio.create_task(pump(channel, table))

    hub.publish(ChangeEvent("chapters", "INSERT", None, chapter(5, 1)))
    for _ in range(10):
        await asyncio.sleep(0)
    assert table.get(5) is not None

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
