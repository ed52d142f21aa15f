from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set

from .config import BLUESKY_PDS_URL, BLUESKY_THREAD_DEPTH, BLUESKY_WEB_URL
from .context import FetchContext
from .errors import FetchError, MalformedPayload, NotFound, RateLimited, TerminalHttpError
from .fetchers import FetchedThread, PlatformFetcher, as_int
from .models import RawNode, parse_iso_datetime
from .url_parsers import parse_bluesky_uri


NOT_FOUND_TYPE = "app.bsky.feed.defs#notFoundPost"
BLOCKED_TYPE = "app.bsky.feed.defs#blockedPost"


def _declared_parent(post: Dict[str, Any]) -> Optional[str]:
    record = post.get("record")
    if not isinstance(record, dict):
        return None
    reply = record.get("reply")
    if not isinstance(reply, dict):
        return None
    parent = reply.get("parent")
    if not isinstance(parent, dict):
        return None
    return parent.get("uri") or None


class BlueskyFetcher(PlatformFetcher):
    """
    Strict-tree strategy over ``app.bsky.feed.getPostThread``.

    The payload is already nested; it is walked depth-first. Posts cut off at
    the depth boundary (``replyCount`` > 0 but no ``replies``) are queued and
    fetched with a follow-up thread call.
    """

    platform = "bluesky"
    requires_auth = True

    def __init__(self, transport, *, depth: int = BLUESKY_THREAD_DEPTH, log_callback=None):
        super().__init__(transport, log_callback=log_callback)
        self.depth = max(1, min(1000, int(depth)))

    def _parse(self, id_or_url: str) -> Optional[str]:
        return parse_bluesky_uri(id_or_url)

    async def _get_thread(self, ctx: FetchContext, uri: str) -> Dict[str, Any]:
        try:
            data = await self._get_json(
                ctx,
                f"{BLUESKY_PDS_URL}/xrpc/app.bsky.feed.getPostThread",
                params={"uri": uri, "depth": self.depth, "parentHeight": 0},
            )
        except TerminalHttpError as e:
            # the xrpc endpoint answers 400 {"error": "NotFound"} for missing posts
            if e.status_code == 400:
                raise NotFound(f"bluesky post {uri} not found", platform=self.platform) from e
            raise
        thread = data.get("thread") if isinstance(data, dict) else None
        if not isinstance(thread, dict):
            raise MalformedPayload(f"no thread in response for {uri}", platform=self.platform)
        ptype = thread.get("$type", "")
        if ptype in (NOT_FOUND_TYPE, BLOCKED_TYPE):
            raise NotFound(f"bluesky post {uri} unavailable ({ptype.rsplit('#', 1)[-1]})", platform=self.platform)
        post = thread.get("post")
        if not isinstance(post, dict) or not post.get("uri"):
            raise MalformedPayload(f"thread without post for {uri}", platform=self.platform)
        return thread

    async def fetch_thread(self, thread_id: str, ctx: FetchContext) -> FetchedThread:
        thread = await self._get_thread(ctx, thread_id)
        root = self._node(thread["post"], parent_id=None)
        ctx.set_root(root)

        follow_ups: Deque[str] = deque()
        queued: Set[str] = set()
        try:
            self._walk(ctx, thread, follow_ups, queued)
            while follow_ups and not ctx.stopped:
                uri = follow_ups.popleft()
                try:
                    sub = await self._get_thread(ctx, uri)
                except RateLimited:
                    raise
                except (NotFound, MalformedPayload, TerminalHttpError) as e:
                    ctx.skip(uri, "follow_up_failed", str(e))
                    continue
                self._walk(ctx, sub, follow_ups, queued)
        except FetchError as e:
            self.record_stop(ctx, e)

        self._log(f"bluesky {thread_id}: posts fetched={ctx.processed} requests={ctx.requests_made}")
        return FetchedThread(root=root, nodes=list(ctx.nodes))

    def _walk(self, ctx: FetchContext, thread: Dict[str, Any], follow_ups: Deque[str], queued: Set[str]) -> None:
        # iterative DFS; Bluesky threads can be up to 1000 levels deep
        stack: List[Dict[str, Any]] = [thread]
        top = thread
        while stack:
            view = stack.pop()
            view_post = view.get("post") or {}
            structural_parent = view_post.get("uri") or (ctx.root.id if ctx.root else None)
            replies = view.get("replies")

            if replies is None:
                reply_count = as_int(view_post.get("replyCount")) or 0
                if view is not top and reply_count > 0 and structural_parent and structural_parent not in queued:
                    queued.add(structural_parent)
                    follow_ups.append(structural_parent)
                continue
            if not isinstance(replies, list):
                ctx.skip(structural_parent or "", "malformed", "replies is not a list")
                continue

            for reply in replies:
                if not isinstance(reply, dict):
                    ctx.skip("", "malformed", "reply is not an object")
                    continue
                rtype = reply.get("$type", "")
                if rtype == NOT_FOUND_TYPE:
                    ctx.skip(str(reply.get("uri") or ""), "not_found", "reply no longer available")
                    continue
                if rtype == BLOCKED_TYPE:
                    ctx.skip(str(reply.get("uri") or ""), "blocked", "reply hidden by a block")
                    continue
                post = reply.get("post")
                if not isinstance(post, dict) or not post.get("uri"):
                    ctx.skip("", "malformed", "reply without post uri")
                    continue
                parent_id = _declared_parent(post) or structural_parent
                ctx.accept(self._node(post, parent_id=parent_id))
                stack.append(reply)

    def _node(self, post: Dict[str, Any], *, parent_id: Optional[str]) -> RawNode:
        record = post.get("record") if isinstance(post.get("record"), dict) else {}
        author = post.get("author") if isinstance(post.get("author"), dict) else {}
        uri = str(post["uri"])
        handle = author.get("handle") or ""
        rkey = uri.rsplit("/", 1)[-1]
        return RawNode(
            id=uri,
            parent_id=parent_id,
            author=handle or author.get("did") or "[deleted]",
            body=record.get("text", "") or "",
            published_at=parse_iso_datetime(record.get("createdAt")) or parse_iso_datetime(post.get("indexedAt")),
            score=as_int(post.get("likeCount")),
            metadata={
                "cid": post.get("cid"),
                "author_did": author.get("did"),
                "author_name": author.get("displayName") or handle,
                "reply_count": as_int(post.get("replyCount")) or 0,
                "repost_count": as_int(post.get("repostCount")) or 0,
                "url": f"{BLUESKY_WEB_URL}/profile/{handle or author.get('did', '')}/post/{rkey}",
            },
        )
