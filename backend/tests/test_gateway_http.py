import asyncio

import anyio
import pytest

from gateway.core.config import RateLimitConfig
from gateway.core.handler import GatewayResponse, HandlerError
from helpers import CountingHandler, audit_actions, gateway_client, make_config

TOKEN = "t0ken"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.mark.anyio
async def test_rate_limit_and_allowlist_scenario(clock):
    config = make_config(token=TOKEN, rate_limit=RateLimitConfig(window_ms=60_000, max=2))
    handler = CountingHandler()

    async with gateway_client(config, handler, clock=clock, client_ips=("127.0.0.1", "10.0.0.5")) as (
        clients,
        pipeline,
    ):
        local = clients["127.0.0.1"]
        first = await local.get("/ping", headers=AUTH)
        second = await local.get("/ping", headers=AUTH)
        third = await local.get("/ping", headers=AUTH)
        outsider = await clients["10.0.0.5"].get("/ping", headers=AUTH)
        audit = await audit_actions(pipeline)

    assert [first.status_code, second.status_code, third.status_code] == [200, 200, 429]
    assert third.json()["error"]["code"] == "ERR_RATE_LIMIT"
    assert third.json()["retryAfterMs"] == 40_000
    assert third.headers["Retry-After"] == "40"
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert outsider.status_code == 403
    assert outsider.json() == {"ok": False, "error": {"code": "ERR_FORBIDDEN", "message": "IP not allowed"}}
    assert len(handler.calls) == 2
    assert audit == [("rate_limited", "denied", "/ping"), ("forbidden", "denied", "/ping")]


@pytest.mark.anyio
async def test_window_resets_once_the_clock_moves_on(clock):
    config = make_config(rate_limit=RateLimitConfig(window_ms=1_000, max=1))

    async with gateway_client(config, CountingHandler(), clock=clock) as (clients, _pipeline):
        client = clients["127.0.0.1"]
        assert (await client.get("/a")).status_code == 200
        assert (await client.get("/a")).status_code == 429
        clock.advance(1_000)
        assert (await client.get("/a")).status_code == 200


@pytest.mark.anyio
async def test_health_skips_token_and_allowlist(clock):
    config = make_config(token=TOKEN, allowlist=[])

    async with gateway_client(config, CountingHandler(), clock=clock) as (clients, _pipeline):
        response = await clients["127.0.0.1"].get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["version"]
    assert body["uptimeSeconds"] >= 0


@pytest.mark.anyio
async def test_health_reports_store_failure(clock):
    async with gateway_client(make_config(), CountingHandler(), clock=clock) as (clients, pipeline):
        await pipeline.store.close()
        response = await clients["127.0.0.1"].get("/health")

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "ERR_STORE_UNAVAILABLE"


@pytest.mark.anyio
async def test_token_is_required_and_checked(clock):
    handler = CountingHandler()

    async with gateway_client(make_config(token=TOKEN), handler, clock=clock) as (clients, pipeline):
        client = clients["127.0.0.1"]
        missing = await client.get("/data")
        wrong = await client.get("/data", headers={"Authorization": "Bearer nope"})
        bearer = await client.get("/data", headers=AUTH)
        custom = await client.get("/data", headers={"X-Gateway-Token": TOKEN})
        audit = await audit_actions(pipeline)

    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "ERR_UNAUTHORIZED"
    assert wrong.status_code == 401
    assert bearer.status_code == 200
    assert custom.status_code == 200
    assert len(handler.calls) == 2
    assert audit == [("unauthorized", "denied", "/data")] * 2


@pytest.mark.anyio
async def test_idempotent_post_runs_handler_once(clock):
    handler = CountingHandler()
    headers = {"Idempotency-Key": "order-1"}

    async with gateway_client(make_config(), handler, clock=clock) as (clients, _pipeline):
        client = clients["127.0.0.1"]
        first = await client.post("/orders", json={"sku": "a"}, headers=headers)
        second = await client.post("/orders", json={"sku": "a"}, headers=headers)

    assert first.status_code == 201
    assert second.status_code == 201
    assert second.content == first.content
    assert second.headers["Idempotent-Replay"] == "true"
    assert "Idempotent-Replay" not in first.headers
    assert len(handler.calls) == 1


@pytest.mark.anyio
async def test_replay_keeps_handler_headers(clock):
    calls = {"count": 0}

    async def create(request):
        calls["count"] += 1
        response = GatewayResponse.json({"id": 7}, status_code=201)
        response.headers["Location"] = "/orders/7"
        return response

    headers = {"Idempotency-Key": "order-7"}
    async with gateway_client(make_config(), create, clock=clock) as (clients, _pipeline):
        client = clients["127.0.0.1"]
        first = await client.post("/orders", json={}, headers=headers)
        replay = await client.post("/orders", json={}, headers=headers)

    assert first.headers["Location"] == "/orders/7"
    assert replay.headers["Location"] == "/orders/7"
    assert replay.headers["Idempotent-Replay"] == "true"
    assert calls["count"] == 1


@pytest.mark.anyio
async def test_reused_key_with_other_payload_conflicts(clock):
    handler = CountingHandler()
    headers = {"Idempotency-Key": "order-1"}

    async with gateway_client(make_config(), handler, clock=clock) as (clients, pipeline):
        client = clients["127.0.0.1"]
        first = await client.post("/orders", json={"sku": "a"}, headers=headers)
        conflict = await client.post("/orders", json={"sku": "b"}, headers=headers)
        replay = await client.post("/orders", json={"sku": "a"}, headers=headers)
        audit = await audit_actions(pipeline)

    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "ERR_IDEMPOTENCY_CONFLICT"
    assert replay.content == first.content
    assert len(handler.calls) == 1
    assert audit == [("idempotency_conflict", "denied", "/orders")]


@pytest.mark.anyio
async def test_mutating_requests_need_a_key(clock):
    handler = CountingHandler()

    async with gateway_client(make_config(), handler, clock=clock) as (clients, pipeline):
        client = clients["127.0.0.1"]
        post = await client.post("/orders", json={"sku": "a"})
        delete = await client.delete("/orders/1")
        get = await client.get("/orders")
        audit = await audit_actions(pipeline)

    assert post.status_code == 400
    assert post.json()["error"]["code"] == "ERR_IDEMPOTENCY_KEY_REQUIRED"
    assert delete.status_code == 400
    assert get.status_code == 200
    assert len(handler.calls) == 1
    assert audit == [
        ("idempotency_key_missing", "denied", "/orders"),
        ("idempotency_key_missing", "denied", "/orders/1"),
    ]


@pytest.mark.anyio
async def test_handler_error_is_reported_and_not_cached(clock):
    attempts = {"count": 0}

    async def flaky(request):
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise HandlerError(503, "upstream unavailable")
        return GatewayResponse.json({"ok": True}, status_code=201)

    headers = {"Idempotency-Key": "retry-me"}
    async with gateway_client(make_config(), flaky, clock=clock) as (clients, pipeline):
        client = clients["127.0.0.1"]
        failed = await client.post("/jobs", json={}, headers=headers)
        retried = await client.post("/jobs", json={}, headers=headers)
        audit = await audit_actions(pipeline)

    assert failed.status_code == 503
    assert failed.json() == {
        "ok": False,
        "error": {"code": "ERR_HANDLER", "message": "upstream unavailable"},
    }
    assert retried.status_code == 201
    assert attempts["count"] == 2
    assert audit == [("handler_failed", "503", "/jobs")]


@pytest.mark.anyio
async def test_unexpected_handler_exception_is_500(clock):
    def broken(request):
        raise RuntimeError("boom")

    async with gateway_client(make_config(), broken, clock=clock) as (clients, _pipeline):
        response = await clients["127.0.0.1"].get("/x")

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "ERR_HANDLER"


@pytest.mark.anyio
async def test_server_error_responses_are_not_replayed(clock):
    calls = {"count": 0}

    def sync_handler(request):
        calls["count"] += 1
        return GatewayResponse.json({"call": calls["count"]}, status_code=500 if calls["count"] == 1 else 200)

    headers = {"Idempotency-Key": "k"}
    async with gateway_client(make_config(), sync_handler, clock=clock) as (clients, pipeline):
        client = clients["127.0.0.1"]
        first = await client.put("/thing", content=b"x", headers=headers)
        record = await pipeline.broker.get("k")
        second = await client.put("/thing", content=b"x", headers=headers)

    assert first.status_code == 500
    assert record.status == "failed"
    assert second.status_code == 200
    assert calls["count"] == 2


@pytest.mark.anyio
async def test_concurrent_duplicates_share_one_execution(clock):
    calls = {"count": 0}

    async def slow(request):
        calls["count"] += 1
        await anyio.sleep(0.1)
        return GatewayResponse.json({"call": calls["count"]}, status_code=201)

    headers = {"Idempotency-Key": "same"}
    async with gateway_client(make_config(), slow, clock=clock) as (clients, _pipeline):
        client = clients["127.0.0.1"]
        responses = await asyncio.gather(
            *(client.post("/pay", json={"amount": 5}, headers=headers) for _ in range(3))
        )

    assert calls["count"] == 1
    assert {response.status_code for response in responses} == {201}
    assert {response.content for response in responses} == {b'{"call":1}'}


@pytest.mark.anyio
async def test_waiting_duplicate_gets_in_progress_after_timeout(clock):
    release = anyio.Event()

    async def blocked(request):
        await release.wait()
        return GatewayResponse.json({"ok": True})

    config = make_config(idempotency_wait_timeout_ms=50)
    headers = {"Idempotency-Key": "slow"}
    async with gateway_client(config, blocked, clock=clock) as (clients, pipeline):
        client = clients["127.0.0.1"]
        holder = asyncio.ensure_future(client.post("/pay", content=b"1", headers=headers))
        await anyio.sleep(0.02)
        duplicate = await client.post("/pay", content=b"1", headers=headers)
        release.set()
        first = await holder
        audit = await audit_actions(pipeline)

    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "ERR_IDEMPOTENCY_IN_PROGRESS"
    assert duplicate.headers["Retry-After"] == "1"
    assert duplicate.json()["retryAfterMs"] == 10
    assert first.status_code == 200
    assert audit == [("idempotency_in_progress", "denied", "/pay")]


@pytest.mark.anyio
async def test_oversized_body_is_rejected(clock):
    handler = CountingHandler()

    async with gateway_client(make_config(max_body_bytes=10), handler, clock=clock) as (clients, _pipeline):
        response = await clients["127.0.0.1"].post(
            "/upload", content=b"x" * 11, headers={"Idempotency-Key": "big"}
        )

    assert response.status_code == 413
    assert response.json()["error"]["code"] == "ERR_PAYLOAD_TOO_LARGE"
    assert handler.calls == []


@pytest.mark.anyio
async def test_chunked_body_is_cut_off_at_the_limit(clock):
    handler = CountingHandler()
    sent = {"chunks": 0}

    async def upload():
        for _ in range(200):
            sent["chunks"] += 1
            yield b"x" * 1000

    config = make_config(max_body_bytes=2_500)
    async with gateway_client(config, handler, clock=clock) as (clients, pipeline):
        response = await clients["127.0.0.1"].post(
            "/upload", content=upload(), headers={"Idempotency-Key": "stream"}
        )
        page = await pipeline.events.poll(None, 10, clock())

    assert response.status_code == 413
    assert response.json()["error"]["code"] == "ERR_PAYLOAD_TOO_LARGE"
    assert sent["chunks"] <= 4
    assert handler.calls == []
    assert page.events == []


@pytest.mark.anyio
async def test_chunked_body_within_limit_reaches_handler(clock):
    handler = CountingHandler()

    async def upload():
        yield b'{"sku":'
        yield b' "a"}'

    async with gateway_client(make_config(max_body_bytes=100), handler, clock=clock) as (clients, _pipeline):
        response = await clients["127.0.0.1"].post(
            "/orders", content=upload(), headers={"Idempotency-Key": "small"}
        )

    assert response.status_code == 201
    assert response.json()["body"] == {"sku": "a"}
    assert handler.calls[0].body == b'{"sku": "a"}'


@pytest.mark.anyio
async def test_admitted_requests_are_polled_from_the_event_log(clock):
    config = make_config(token=TOKEN)

    async with gateway_client(config, CountingHandler(), clock=clock) as (clients, _pipeline):
        client = clients["127.0.0.1"]
        await client.get("/one", headers=AUTH)
        await client.post("/two", json={}, headers={**AUTH, "Idempotency-Key": "e"})
        denied = await client.get("/events/poll")
        page = await client.get("/events/poll", params={"since": 0}, headers=AUTH)
        after = await client.get("/events/poll", params={"since": page.json()["cursor"]}, headers=AUTH)

    assert denied.status_code == 401
    body = page.json()
    assert body["ok"] is True
    assert [(event["method"], event["path"]) for event in body["events"]] == [
        ("GET", "/one"),
        ("POST", "/two"),
    ]
    assert body["events"][0]["identity"] == "127.0.0.1"
    assert body["events"][0]["acceptedAt"] == clock()
    assert after.json()["events"] == []


@pytest.mark.anyio
async def test_expired_rows_are_swept(clock):
    config = make_config(event_ttl_ms=1_000, idempotency_ttl_ms=1_000)
    handler = CountingHandler()
    headers = {"Idempotency-Key": "ttl"}

    async with gateway_client(config, handler, clock=clock) as (clients, pipeline):
        client = clients["127.0.0.1"]
        await client.post("/orders", json={}, headers=headers)
        clock.advance(1_000)
        result = await pipeline.sweep()
        record = await pipeline.broker.get("ttl")
        again = await client.post("/orders", json={}, headers=headers)

    assert result.events == 1
    assert result.idempotency == 1
    assert record is None
    assert "Idempotent-Replay" not in again.headers
    assert len(handler.calls) == 2


@pytest.mark.anyio
async def test_request_id_is_echoed_or_generated(clock):
    async with gateway_client(make_config(), CountingHandler(), clock=clock) as (clients, pipeline):
        client = clients["127.0.0.1"]
        supplied = await client.get("/a", headers={"X-Request-ID": "abc-123"})
        generated = await client.get("/b")
        page = await pipeline.events.poll(None, 10, clock())

    assert supplied.headers["X-Request-ID"] == "abc-123"
    assert len(generated.headers["X-Request-ID"]) == 32
    assert [event.request_id for event in page.events] == ["abc-123", generated.headers["X-Request-ID"]]
