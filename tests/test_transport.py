import asyncio
import random
from datetime import datetime, timezone

import httpx
import pytest

from comment_tree_crawler.errors import (
    AuthenticationFailed,
    CeilingReached,
    FetchError,
    MalformedPayload,
    NotFound,
    RateLimited,
    TerminalHttpError,
    TransientNetworkError,
)
from comment_tree_crawler.transport import ApiRequest, RateLimitedTransport, parse_retry_after


URL = "https://api.example.test/thing"


def scripted(responses, calls):
    """Handler returning the scripted responses in order (the last one repeats)."""

    def handler(request):
        calls.append(request)
        item = responses[min(len(calls) - 1, len(responses) - 1)]
        if isinstance(item, Exception):
            raise item
        return item

    return handler


def test_retries_503_then_succeeds(make_transport, make_ctx, sleeps):
    calls = []
    transport = make_transport(scripted([httpx.Response(503), httpx.Response(503), httpx.Response(200, json={"ok": 1})], calls))

    async def run():
        return await transport.get_json(make_ctx(), ApiRequest("GET", URL))

    assert asyncio.run(run()) == {"ok": 1}
    assert len(calls) == 3
    assert len(sleeps) == 2
    assert 0.5 <= sleeps[0] <= 1.0
    assert 1.0 <= sleeps[1] <= 2.0


def test_retry_after_header_is_honoured(make_transport, make_ctx, sleeps):
    calls = []
    transport = make_transport(
        scripted([httpx.Response(429, headers={"Retry-After": "7"}), httpx.Response(200, json=[])], calls)
    )

    async def run():
        return await transport.get_json(make_ctx(), ApiRequest("GET", URL))

    assert asyncio.run(run()) == []
    assert sleeps == [7.0]


def test_rate_limited_after_retries_exhausted(make_transport, make_ctx):
    calls = []
    transport = make_transport(scripted([httpx.Response(429, headers={"Retry-After": "30"})], calls), max_retries=2)

    async def run():
        await transport.execute(make_ctx(), ApiRequest("GET", URL))

    with pytest.raises(RateLimited) as info:
        asyncio.run(run())
    assert info.value.retry_after == 30.0
    assert len(calls) == 3


def test_bad_gateway_exhausted_is_transient(make_transport, make_ctx):
    calls = []
    transport = make_transport(scripted([httpx.Response(502)], calls), max_retries=1)

    async def run():
        await transport.execute(make_ctx(), ApiRequest("GET", URL))

    with pytest.raises(TransientNetworkError):
        asyncio.run(run())
    assert len(calls) == 2


def test_terminal_statuses_are_not_retried(make_transport, make_ctx, sleeps):
    for status, exc in ((404, NotFound), (410, NotFound), (400, TerminalHttpError), (403, TerminalHttpError)):
        calls = []
        transport = make_transport(scripted([httpx.Response(status)], calls))

        async def run():
            await transport.execute(make_ctx(), ApiRequest("GET", URL))

        with pytest.raises(exc):
            asyncio.run(run())
        assert len(calls) == 1
    assert sleeps == []


def test_connection_errors_are_retried(make_transport, make_ctx):
    calls = []
    boom = httpx.ConnectError("reset")
    transport = make_transport(scripted([boom, boom, httpx.Response(200, json={})], calls))

    async def run():
        return await transport.get_json(make_ctx(), ApiRequest("GET", URL))

    assert asyncio.run(run()) == {}
    assert len(calls) == 3


def test_connection_errors_exhausted(make_transport, make_ctx):
    calls = []
    transport = make_transport(scripted([httpx.ReadTimeout("slow")], calls), max_retries=2)

    async def run():
        await transport.execute(make_ctx(), ApiRequest("GET", URL))

    with pytest.raises(TransientNetworkError):
        asyncio.run(run())
    assert len(calls) == 3


@pytest.mark.parametrize("error", [httpx.DecodingError("bad gzip stream"), httpx.TooManyRedirects("loop")])
def test_other_http_errors_fail_without_retry(make_transport, make_ctx, sleeps, error):
    calls = []
    transport = make_transport(scripted([error, httpx.Response(200, json={})], calls))

    async def run():
        await transport.execute(make_ctx(), ApiRequest("GET", URL))

    with pytest.raises(FetchError) as exc:
        asyncio.run(run())
    assert exc.value.kind == "fetch_failed"
    assert not isinstance(exc.value, TransientNetworkError)
    assert len(calls) == 1
    assert sleeps == []


def test_retry_budget_is_per_context(make_transport, make_ctx):
    calls = []
    transport = make_transport(scripted([httpx.Response(503)], calls), max_retries=10)

    async def run():
        first = make_ctx(retry_budget=1)
        with pytest.raises(RateLimited):
            await transport.execute(first, ApiRequest("GET", URL))
        used = len(calls)
        second = make_ctx(retry_budget=3)
        with pytest.raises(RateLimited):
            await transport.execute(second, ApiRequest("GET", URL))
        return used, len(calls) - used, first.retries_used, second.retries_used

    assert asyncio.run(run()) == (2, 4, 1, 3)


def test_request_ceiling_is_a_soft_stop(make_transport, make_ctx):
    calls = []
    transport = make_transport(scripted([httpx.Response(200, json={})], calls))

    async def run():
        ctx = make_ctx(max_requests=2)
        await transport.execute(ctx, ApiRequest("GET", URL))
        await transport.execute(ctx, ApiRequest("GET", URL))
        with pytest.raises(CeilingReached):
            await transport.execute(ctx, ApiRequest("GET", URL))
        return ctx

    ctx = asyncio.run(run())
    assert len(calls) == 2
    assert ctx.stop_kind == "request_ceiling"
    assert ctx.may_be_incomplete


def test_401_refreshes_once_then_retries(make_transport, make_ctx, fake_auth):
    calls = []

    def handler(request):
        calls.append(request.headers.get("Authorization"))
        if request.headers.get("Authorization") == "Bearer tok1":
            return httpx.Response(401)
        return httpx.Response(200, json={"ok": True})

    transport = make_transport(handler)

    async def run():
        return await transport.get_json(make_ctx(authenticator=fake_auth), ApiRequest("GET", URL))

    assert asyncio.run(run()) == {"ok": True}
    assert calls == ["Bearer tok1", "Bearer tok2"]
    assert fake_auth.invalidated == ["tok1"]


def test_401_after_refresh_is_terminal(make_transport, make_ctx, fake_auth):
    calls = []
    transport = make_transport(scripted([httpx.Response(401)], calls))

    async def run():
        await transport.execute(make_ctx(authenticator=fake_auth), ApiRequest("GET", URL))

    with pytest.raises(AuthenticationFailed):
        asyncio.run(run())
    assert len(calls) == 2


def test_unauthenticated_requests_skip_the_token(make_transport, make_ctx, fake_auth):
    seen = []

    def handler(request):
        seen.append(request.headers.get("Authorization"))
        return httpx.Response(200, json={})

    transport = make_transport(handler)

    async def run():
        await transport.execute(make_ctx(authenticator=fake_auth), ApiRequest("GET", URL, authenticated=False))

    asyncio.run(run())
    assert seen == [None]
    assert fake_auth.issued == 0


def test_invalid_json_is_malformed(make_transport, make_ctx):
    transport = make_transport(lambda request: httpx.Response(200, text="<html>"))

    async def run():
        await transport.get_json(make_ctx(), ApiRequest("GET", URL))

    with pytest.raises(MalformedPayload):
        asyncio.run(run())


def test_parse_retry_after():
    now = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
    assert parse_retry_after("12") == 12.0
    assert parse_retry_after("Mon, 01 Jan 2024 00:00:30 GMT", now=now) == 30.0
    assert parse_retry_after("Mon, 01 Jan 2023 00:00:30 GMT", now=now) == 0.0
    assert parse_retry_after("soon") is None
    assert parse_retry_after(None) is None


def test_backoff_delay_is_capped():
    transport = RateLimitedTransport(httpx.AsyncClient(), backoff_base=1.0, max_backoff=10.0, rng=random.Random(1))
    for attempt in range(10):
        delay = transport.backoff_delay(attempt)
        ceiling = min(10.0, 2 ** attempt)
        assert ceiling / 2 <= delay <= ceiling
    assert transport.backoff_delay(0, retry_after=3600) == 10.0
