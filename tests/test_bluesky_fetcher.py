import asyncio

import httpx
import pytest

from comment_tree_crawler.bluesky_fetcher import BLOCKED_TYPE, NOT_FOUND_TYPE, BlueskyFetcher
from comment_tree_crawler.errors import NotFound


ROOT_URI = "at://alice.bsky.social/app.bsky.feed.post/3kroot"


def uri(rkey):
    return f"at://bob.bsky.social/app.bsky.feed.post/{rkey}"


def post(post_uri, text, created, parent=None, reply_count=0, likes=0):
    record = {"text": text, "createdAt": created}
    if parent:
        record["reply"] = {"root": {"uri": ROOT_URI}, "parent": {"uri": parent}}
    return {
        "uri": post_uri,
        "cid": "cid-" + post_uri[-4:],
        "author": {"did": "did:plc:x", "handle": post_uri.split("/")[2], "displayName": "X"},
        "record": record,
        "replyCount": reply_count,
        "likeCount": likes,
        "indexedAt": created,
    }


def view(p, replies=None):
    out = {"$type": "app.bsky.feed.defs#threadViewPost", "post": p}
    if replies is not None:
        out["replies"] = replies
    return out


def root_thread():
    return view(
        post(ROOT_URI, "root", "2024-03-01T10:00:00.000Z", reply_count=5, likes=9),
        replies=[
            view(
                post(uri("r1"), "first", "2024-03-01T10:01:00Z", parent=ROOT_URI, reply_count=1),
                replies=[view(post(uri("r2"), "nested", "2024-03-01T10:02:00Z", parent=uri("r1")), replies=[])],
            ),
            {"$type": NOT_FOUND_TYPE, "uri": uri("gone"), "notFound": True},
            {"$type": BLOCKED_TYPE, "uri": uri("blk"), "blocked": True},
            # cut off at the depth boundary: replies omitted although replyCount > 0
            view(post(uri("r4"), "deep", "2024-03-01T10:04:00Z", parent=ROOT_URI, reply_count=1)),
            # no reply ref in the record: structural parent is used
            view(post(uri("r6"), "no ref", "2024-03-01T10:06:00Z"), replies=[]),
        ],
    )


def follow_up_thread():
    return view(
        post(uri("r4"), "deep", "2024-03-01T10:04:00Z", parent=ROOT_URI, reply_count=1),
        replies=[view(post(uri("r5"), "deeper", "2024-03-01T10:05:00Z", parent=uri("r4")), replies=[])],
    )


def test_walks_tree_and_follows_truncated_branches(make_transport, make_ctx):
    asked = []

    def handler(request):
        target = request.url.params["uri"]
        asked.append(target)
        if target == ROOT_URI:
            return httpx.Response(200, json={"thread": root_thread()})
        if target == uri("r4"):
            return httpx.Response(200, json={"thread": follow_up_thread()})
        return httpx.Response(400, json={"error": "NotFound"})

    fetcher = BlueskyFetcher(make_transport(handler))

    async def run():
        ctx = make_ctx("bluesky", ROOT_URI)
        fetched = await fetcher.fetch_thread(ROOT_URI, ctx)
        return ctx, fetched

    ctx, fetched = asyncio.run(run())

    assert asked == [ROOT_URI, uri("r4")]
    assert fetched.root.id == ROOT_URI
    assert fetched.root.score == 9
    assert fetched.root.published_at.isoformat() == "2024-03-01T10:00:00+00:00"
    parents = {n.id: n.parent_id for n in fetched.nodes}
    assert parents == {
        uri("r1"): ROOT_URI,
        uri("r2"): uri("r1"),
        uri("r4"): ROOT_URI,
        uri("r5"): uri("r4"),
        uri("r6"): ROOT_URI,
    }
    assert sorted(s.reason for s in ctx.skipped) == ["blocked", "not_found"]
    assert fetched.nodes[0].metadata["url"] == "https://bsky.app/profile/bob.bsky.social/post/r1"


def test_failed_follow_up_is_skipped(make_transport, make_ctx):
    def handler(request):
        if request.url.params["uri"] == ROOT_URI:
            return httpx.Response(200, json={"thread": root_thread()})
        return httpx.Response(200, json={"thread": {"$type": NOT_FOUND_TYPE, "uri": uri("r4"), "notFound": True}})

    fetcher = BlueskyFetcher(make_transport(handler))

    async def run():
        ctx = make_ctx("bluesky", ROOT_URI)
        await fetcher.fetch_thread(ROOT_URI, ctx)
        return ctx

    ctx = asyncio.run(run())
    assert "follow_up_failed" in [s.reason for s in ctx.skipped]
    assert ctx.stop_kind is None
    assert ctx.processed == 4


def test_missing_root_is_not_found(make_transport, make_ctx):
    fetcher = BlueskyFetcher(make_transport(lambda request: httpx.Response(400, json={"error": "NotFound"})))

    async def run():
        await fetcher.fetch_thread(ROOT_URI, make_ctx("bluesky", ROOT_URI))

    with pytest.raises(NotFound):
        asyncio.run(run())


def test_parse_reference():
    fetcher = BlueskyFetcher(None)
    assert fetcher.parse_reference("https://bsky.app/profile/alice.bsky.social/post/3kroot") == ROOT_URI
    assert fetcher.parse_reference(ROOT_URI) == ROOT_URI
