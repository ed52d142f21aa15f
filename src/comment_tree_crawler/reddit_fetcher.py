from typing import Any, Dict, List, Optional

from .config import EXPAND_MORE, MORECHILDREN_BATCH_SIZE, REDDIT_API_URL, REDDIT_WWW_URL
from .context import FetchContext
from .errors import FetchError, MalformedPayload, NotFound
from .fetchers import FetchedThread, PlatformFetcher, as_int
from .models import RawNode, utc_from_timestamp
from .url_parsers import parse_reddit_id


def _listing_children(listing: Any) -> List[Any]:
    if not isinstance(listing, dict):
        return []
    data = listing.get("data")
    if not isinstance(data, dict):
        return []
    children = data.get("children")
    return children if isinstance(children, list) else []


def _strip_fullname(fullname: Any) -> Optional[str]:
    """``t1_abc`` / ``t3_xyz`` -> ``abc`` / ``xyz``."""
    if not fullname:
        return None
    s = str(fullname)
    if len(s) > 3 and s[0] == "t" and s[2] == "_":
        return s[3:]
    return s


class RedditFetcher(PlatformFetcher):
    """
    Flat-listing strategy over the Reddit OAuth API:
    - Thread:  /comments/<post_id>   (post listing + comment listing with embedded replies)
    - Expand:  /api/morechildren     ("more" placeholders, drained in batches)
    """

    platform = "reddit"
    requires_auth = True

    def __init__(
        self,
        transport,
        *,
        expand_more: bool = EXPAND_MORE,
        batch_size: int = MORECHILDREN_BATCH_SIZE,
        log_callback=None,
    ):
        super().__init__(transport, log_callback=log_callback)
        self.expand_more = bool(expand_more)
        self.batch_size = max(1, min(100, int(batch_size)))

    def _parse(self, id_or_url: str) -> Optional[str]:
        return parse_reddit_id(id_or_url)

    async def fetch_thread(self, thread_id: str, ctx: FetchContext) -> FetchedThread:
        data = await self._get_json(
            ctx,
            f"{REDDIT_API_URL}/comments/{thread_id}",
            params={"depth": 100, "limit": 500, "raw_json": 1},
        )
        if not isinstance(data, list) or len(data) < 2:
            raise MalformedPayload(f"unexpected thread payload for {thread_id}", platform=self.platform)

        post = None
        for child in _listing_children(data[0]):
            if isinstance(child, dict) and child.get("kind") == "t3":
                post = child.get("data") or {}
                break
        if not post:
            raise NotFound(f"reddit post {thread_id} not found", platform=self.platform)

        root = self._post_node(thread_id, post)
        ctx.set_root(root)

        pending_more: List[str] = []
        try:
            self._unwrap_listing(ctx, _listing_children(data[1]), root.id, pending_more)
            if self.expand_more:
                await self._drain_more(ctx, root.id, pending_more)
            else:
                for mid in dict.fromkeys(pending_more):
                    ctx.skip(mid, "more_not_expanded", "morechildren expansion disabled")
        except FetchError as e:
            self.record_stop(ctx, e)

        self._log(f"reddit {thread_id}: comments fetched={ctx.processed} requests={ctx.requests_made}")
        return FetchedThread(root=root, nodes=list(ctx.nodes))

    # ---------------------------
    # Listing unwrap
    # ---------------------------

    def _unwrap_listing(self, ctx: FetchContext, children: list, parent_id: str, pending_more: List[str]) -> None:
        """Flatten a listing and every embedded ``replies`` listing into ctx, deduplicating by id."""
        for child in children:
            if not isinstance(child, dict):
                ctx.skip("", "malformed", "listing child is not an object")
                continue
            kind = child.get("kind")
            cd = child.get("data") or {}
            if kind == "more":
                ids = [str(x) for x in (cd.get("children") or []) if x]
                if ids:
                    pending_more.extend(ids)
                elif cd.get("count") or cd.get("id") == "_":
                    # "continue this thread" stub: no ids to expand
                    ctx.skip(
                        str(cd.get("id") or ""),
                        "continue_thread",
                        f"deep replies under {_strip_fullname(cd.get('parent_id')) or parent_id} not expanded",
                    )
                continue
            if kind != "t1":
                continue

            node = self._comment_node(cd, fallback_parent=parent_id)
            if node is None:
                ctx.skip("", "malformed", "comment without id")
                continue
            ctx.accept(node)

            replies = cd.get("replies")
            if replies and isinstance(replies, dict):
                self._unwrap_listing(ctx, _listing_children(replies), node.id, pending_more)

    async def _drain_more(self, ctx: FetchContext, post_id: str, pending_more: List[str]) -> None:
        pending = list(dict.fromkeys(x for x in pending_more if x and not ctx.has_seen(x)))
        queued = set(pending)
        rounds = 0
        while pending and not ctx.stopped:
            rounds += 1
            batch = pending[: self.batch_size]
            pending = pending[self.batch_size:]

            data = await self._get_json(
                ctx,
                f"{REDDIT_API_URL}/api/morechildren",
                params={
                    "link_id": f"t3_{post_id}",
                    "children": ",".join(batch),
                    "api_type": "json",
                    "raw_json": 1,
                },
            )
            things = []
            if isinstance(data, dict):
                things = ((data.get("json") or {}).get("data") or {}).get("things") or []
            if not isinstance(things, list):
                raise MalformedPayload("morechildren returned unexpected payload", platform=self.platform)

            new_more: List[str] = []
            self._unwrap_listing(ctx, things, post_id, new_more)
            for mid in new_more:
                if mid not in queued and not ctx.has_seen(mid):
                    queued.add(mid)
                    pending.append(mid)

        if rounds:
            self._log(f"reddit {post_id}: morechildren rounds={rounds} remaining={len(pending)}")

    # ---------------------------
    # Node conversion
    # ---------------------------

    def _post_node(self, post_id: str, pd: Dict[str, Any]) -> RawNode:
        permalink = pd.get("permalink", "") or ""
        return RawNode(
            id=post_id,
            parent_id=None,
            author=pd.get("author", "[deleted]") or "[deleted]",
            body=pd.get("selftext", "") or "",
            published_at=utc_from_timestamp(pd.get("created_utc")),
            score=as_int(pd.get("score")),
            metadata={
                "title": pd.get("title", "") or "",
                "subreddit": pd.get("subreddit", "") or "",
                "url": f"{REDDIT_WWW_URL}{permalink}" if permalink else f"{REDDIT_WWW_URL}/comments/{post_id}",
                "num_comments": as_int(pd.get("num_comments")) or 0,
                "upvote_ratio": pd.get("upvote_ratio"),
            },
        )

    def _comment_node(self, cd: Dict[str, Any], *, fallback_parent: str) -> Optional[RawNode]:
        cid = str(cd.get("id", "") or "")
        if not cid:
            return None
        permalink = cd.get("permalink", "") or ""
        replies = cd.get("replies")
        reply_ids = []
        if replies and isinstance(replies, dict):
            for c in _listing_children(replies):
                if isinstance(c, dict) and c.get("kind") == "t1":
                    rid = (c.get("data") or {}).get("id")
                    if rid:
                        reply_ids.append(str(rid))
        metadata: Dict[str, Any] = {"depth": as_int(cd.get("depth"))}
        if permalink:
            metadata["url"] = f"{REDDIT_WWW_URL}{permalink}"
        if cd.get("is_submitter"):
            metadata["is_submitter"] = True
        if cd.get("distinguished"):
            metadata["distinguished"] = cd.get("distinguished")
        return RawNode(
            id=cid,
            parent_id=_strip_fullname(cd.get("parent_id")) or fallback_parent,
            author=cd.get("author", "[deleted]") or "[deleted]",
            body=cd.get("body", "") or "",
            published_at=utc_from_timestamp(cd.get("created_utc")),
            score=as_int(cd.get("score")),
            reply_ids=reply_ids,
            metadata=metadata,
        )
