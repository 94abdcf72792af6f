import pytest

from gateway.core.db import GatewayStore
from gateway.core.events import EventLog

TTL = 1_000


@pytest.fixture
async def events(anyio_backend):
    store = GatewayStore(":memory:")
    await store.open()
    yield EventLog(store, ttl_ms=TTL)
    await store.close()


@pytest.mark.anyio
async def test_append_assigns_increasing_ids(events, clock):
    first = await events.append("127.0.0.1", "/a", clock(), method="POST", request_id="r1")
    second = await events.append("127.0.0.1", "/b", clock())

    assert second.id > first.id
    assert first.expires_at == clock() + TTL
    assert first.method == "POST"
    assert first.request_id == "r1"


@pytest.mark.anyio
async def test_sweep_deletes_rows_at_or_past_expiry(events, clock):
    await events.append("a", "/old", clock())
    clock.advance(500)
    await events.append("a", "/new", clock())

    removed = await events.sweep(clock() + 500)
    page = await events.poll(None, 10, clock())

    assert removed == 1
    assert [event.path for event in page.events] == ["/new"]


@pytest.mark.anyio
async def test_poll_pages_forward_from_cursor(events, clock):
    for index in range(5):
        await events.append("a", f"/{index}", clock())

    latest = await events.poll(None, 2, clock())
    assert [event.path for event in latest.events] == ["/3", "/4"]

    first_page = await events.poll(0, 3, clock())
    assert [event.path for event in first_page.events] == ["/0", "/1", "/2"]
    next_page = await events.poll(first_page.cursor, 3, clock())
    assert [event.path for event in next_page.events] == ["/3", "/4"]

    empty = await events.poll(next_page.cursor, 3, clock())
    assert empty.events == []
    assert empty.cursor == next_page.cursor


@pytest.mark.anyio
async def test_poll_hides_expired_rows_before_sweep(events, clock):
    await events.append("a", "/gone", clock())

    page = await events.poll(None, 10, clock() + TTL)

    assert page.events == []
    assert page.cursor == 0
