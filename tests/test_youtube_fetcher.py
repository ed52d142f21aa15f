import asyncio

import httpx
import pytest

from comment_tree_crawler.auth import StaticCredentialStore
from comment_tree_crawler.errors import NotFound
from comment_tree_crawler.models import ThreadReference
from comment_tree_crawler.orchestrator import AggregationOrchestrator
from comment_tree_crawler.youtube_fetcher import YouTubeFetcher


VIDEO = "dQw4w9WgXcQ"


def video_payload():
    return {
        "items": [
            {
                "id": VIDEO,
                "snippet": {
                    "title": "Launch video",
                    "description": "what we shipped",
                    "channelId": "UC1",
                    "channelTitle": "Product Team",
                    "publishedAt": "2024-03-01T10:00:00Z",
                },
                "statistics": {"viewCount": "1000", "likeCount": "50", "commentCount": "6"},
            }
        ]
    }


def comment(cid, minute, parent=None, likes=0):
    snippet = {
        "authorDisplayName": f"@{cid}",
        "authorChannelId": {"value": f"UC-{cid}"},
        "textOriginal": f"text {cid}",
        "textDisplay": f"text {cid}",
        "publishedAt": f"2024-03-01T11:{minute:02d}:00Z",
        "likeCount": likes,
    }
    if parent:
        snippet["parentId"] = parent
    return {"id": cid, "snippet": snippet}


def thread(cid, minute, total_replies=0, inline=()):
    item = {
        "id": cid,
        "snippet": {"videoId": VIDEO, "topLevelComment": comment(cid, minute), "totalReplyCount": total_replies},
    }
    if inline:
        item["replies"] = {"comments": list(inline)}
    return item


def route(request):
    return request.url.path.rsplit("/", 1)[-1]


def test_pages_threads_and_expands_truncated_replies(make_transport, make_ctx):
    calls = []
    thread_pages = {
        None: {"items": [thread("t1", 1, total_replies=3, inline=[comment("t1.a", 2, parent="t1")])], "nextPageToken": "P2"},
        "P2": {"items": [thread("t2", 3), thread("t3", 4, total_replies=1, inline=[comment("t3.a", 5, parent="t3")])]},
    }
    reply_pages = {
        None: {"items": [comment("t1.a", 2, parent="t1"), comment("t1.b", 6, parent="t1")], "nextPageToken": "R2"},
        "R2": {"items": [comment("t1.c", 7, parent="t1")]},
    }

    def handler(request):
        params = request.url.params
        calls.append((route(request), dict(params)))
        if route(request) == "videos":
            return httpx.Response(200, json=video_payload())
        if route(request) == "commentThreads":
            return httpx.Response(200, json=thread_pages[params.get("pageToken")])
        return httpx.Response(200, json=reply_pages[params.get("pageToken")])

    fetcher = YouTubeFetcher(make_transport(handler), api_key="KEY")

    async def run():
        ctx = make_ctx("youtube", VIDEO)
        fetched = await fetcher.fetch_thread(VIDEO, ctx)
        return ctx, fetched

    ctx, fetched = asyncio.run(run())
    parents = {n.id: n.parent_id for n in fetched.nodes}
    assert parents == {
        "t1": VIDEO,
        "t1.a": "t1",
        "t2": VIDEO,
        "t3": VIDEO,
        "t3.a": "t3",
        "t1.b": "t1",
        "t1.c": "t1",
    }
    assert fetched.root.metadata["title"] == "Launch video"
    assert fetched.root.author == "Product Team"
    assert fetched.root.score == 50
    assert fetched.nodes[0].metadata["url"] == f"https://www.youtube.com/watch?v={VIDEO}&lc=t1"
    assert not ctx.may_be_incomplete

    assert all(p["key"] == "KEY" for _, p in calls)
    assert [r for r, _ in calls] == ["videos", "commentThreads", "commentThreads", "comments", "comments"]
    assert calls[2][1]["pageToken"] == "P2"
    assert calls[3][1]["parentId"] == "t1"
    assert calls[4][1]["pageToken"] == "R2"


def test_unexpanded_replies_mark_the_result_incomplete(make_transport, make_ctx):
    def handler(request):
        if route(request) == "videos":
            return httpx.Response(200, json=video_payload())
        if route(request) == "commentThreads":
            return httpx.Response(200, json={"items": [thread("t1", 1, total_replies=8, inline=[comment("t1.a", 2, parent="t1")])]})
        raise AssertionError("replies must not be requested")

    fetcher = YouTubeFetcher(make_transport(handler), api_key="KEY", expand_replies=False)

    async def run():
        ctx = make_ctx("youtube", VIDEO)
        await fetcher.fetch_thread(VIDEO, ctx)
        return ctx

    ctx = asyncio.run(run())
    assert ctx.processed == 2
    assert [(s.node_id, s.reason) for s in ctx.skipped] == [("t1", "replies_not_expanded")]
    assert ctx.may_be_incomplete


def test_failed_reply_page_is_skipped_and_other_threads_continue(make_transport, make_ctx):
    def handler(request):
        if route(request) == "videos":
            return httpx.Response(200, json=video_payload())
        if route(request) == "commentThreads":
            return httpx.Response(
                200,
                json={"items": [thread("t1", 1, total_replies=4), thread("t2", 2, total_replies=1)]},
            )
        if request.url.params["parentId"] == "t1":
            return httpx.Response(403)
        return httpx.Response(200, json={"items": [comment("t2.a", 3, parent="t2")]})

    fetcher = YouTubeFetcher(make_transport(handler), api_key="KEY")

    async def run():
        ctx = make_ctx("youtube", VIDEO)
        fetched = await fetcher.fetch_thread(VIDEO, ctx)
        return ctx, fetched

    ctx, fetched = asyncio.run(run())
    assert [n.id for n in fetched.nodes] == ["t1", "t2", "t2.a"]
    assert [(s.node_id, s.reason) for s in ctx.skipped] == [("t1", "follow_up_failed")]
    assert ctx.stop_kind is None


def test_rate_limit_between_pages_keeps_what_was_fetched(make_transport, make_ctx):
    def handler(request):
        if route(request) == "videos":
            return httpx.Response(200, json=video_payload())
        if request.url.params.get("pageToken"):
            return httpx.Response(429, headers={"Retry-After": "30"})
        return httpx.Response(200, json={"items": [thread("t1", 1), thread("t2", 2)], "nextPageToken": "P2"})

    fetcher = YouTubeFetcher(make_transport(handler, max_retries=0), api_key="KEY")

    async def run():
        ctx = make_ctx("youtube", VIDEO)
        await fetcher.fetch_thread(VIDEO, ctx)
        return ctx

    ctx = asyncio.run(run())
    assert ctx.processed == 2
    assert ctx.stop_kind == "rate_limited"
    assert ctx.stop_reason.startswith("rate limit reached after processing 2 nodes")


def test_unknown_video_is_not_found(make_transport, make_ctx):
    fetcher = YouTubeFetcher(make_transport(lambda request: httpx.Response(200, json={"items": []})), api_key="KEY")

    async def run():
        await fetcher.fetch_thread(VIDEO, make_ctx("youtube", VIDEO))

    with pytest.raises(NotFound):
        asyncio.run(run())


def test_missing_api_key_fails_authentication(make_transport):
    transport = make_transport(lambda request: httpx.Response(200, json=video_payload()))
    orchestrator = AggregationOrchestrator(
        {"youtube": YouTubeFetcher(transport, api_key="")},
        transport=transport,
        credential_store=StaticCredentialStore({}),
    )

    outcome = asyncio.run(orchestrator.aggregate(ThreadReference(f"https://youtu.be/{VIDEO}")))

    assert not outcome.ok
    assert outcome.kind == "authentication_failed"


def test_parse_reference():
    fetcher = YouTubeFetcher(None, api_key="KEY")
    assert fetcher.parse_reference(f"https://www.youtube.com/watch?v={VIDEO}&t=42s") == VIDEO
    assert fetcher.parse_reference(f"https://youtu.be/{VIDEO}?si=abc") == VIDEO
    assert fetcher.parse_reference(f"https://www.youtube.com/live/{VIDEO}") == VIDEO
    assert fetcher.parse_reference(VIDEO) == VIDEO
