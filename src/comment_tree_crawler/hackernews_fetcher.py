import asyncio
import html
import re
from typing import Any, Dict, List, Optional, Tuple

from .config import FANOUT_CONCURRENCY, HACKERNEWS_API_URL, HACKERNEWS_WEB_URL
from .context import FetchContext
from .errors import CeilingReached, FetchError, MalformedPayload, NotFound, RateLimited
from .fetchers import FetchedThread, PlatformFetcher, as_int
from .models import RawNode, utc_from_timestamp
from .url_parsers import parse_hackernews_id


_TAG_RE = re.compile(r"<[^>]+>")
_PARA_RE = re.compile(r"<p>", re.IGNORECASE)


def _html_to_text(text: Any) -> str:
    if not text:
        return ""
    s = _PARA_RE.sub("\n\n", str(text))
    s = _TAG_RE.sub("", s)
    return html.unescape(s).strip()


class HackerNewsFetcher(PlatformFetcher):
    """
    Fan-out strategy over the Firebase item API.

    Every item only lists its ``kids`` ids, so each reply costs one call.
    A fixed pool of workers drains a shared queue; the pool size is the
    in-flight ceiling for this fetch.
    """

    platform = "hackernews"
    requires_auth = False

    def __init__(self, transport, *, concurrency: int = FANOUT_CONCURRENCY, log_callback=None):
        super().__init__(transport, log_callback=log_callback)
        self.concurrency = max(1, int(concurrency))

    def _parse(self, id_or_url: str) -> Optional[str]:
        return parse_hackernews_id(id_or_url)

    async def _get_item(self, ctx: FetchContext, item_id: str) -> Optional[Dict[str, Any]]:
        data = await self._get_json(ctx, f"{HACKERNEWS_API_URL}/item/{item_id}.json")
        if data is None:
            return None
        if not isinstance(data, dict):
            raise MalformedPayload(f"item {item_id} is not an object", platform=self.platform)
        return data

    async def fetch_thread(self, thread_id: str, ctx: FetchContext) -> FetchedThread:
        item = await self._get_item(ctx, thread_id)
        if item is None:
            raise NotFound(f"hacker news item {thread_id} not found", platform=self.platform)

        root = self._node(item, structural_parent=None)
        root.parent_id = None
        ctx.set_root(root)

        queue: "asyncio.Queue[Tuple[str, str]]" = asyncio.Queue()
        for kid in self._kids(item):
            queue.put_nowait((kid, root.id))

        if not queue.empty():
            workers = [asyncio.create_task(self._worker(ctx, queue)) for _ in range(self.concurrency)]
            try:
                await queue.join()
            finally:
                for w in workers:
                    w.cancel()
                await asyncio.gather(*workers, return_exceptions=True)

        self._log(f"hackernews {thread_id}: items fetched={ctx.processed} requests={ctx.requests_made}")
        return FetchedThread(root=root, nodes=list(ctx.nodes))

    async def _worker(self, ctx: FetchContext, queue: "asyncio.Queue[Tuple[str, str]]") -> None:
        while True:
            item_id, parent_id = await queue.get()
            try:
                if ctx.stopped or ctx.has_seen(item_id):
                    continue
                try:
                    item = await self._get_item(ctx, item_id)
                except (RateLimited, CeilingReached) as e:
                    self.record_stop(ctx, e)
                    continue
                except FetchError as e:
                    ctx.skip(item_id, e.kind, str(e))
                    continue
                except Exception as e:
                    # a dead worker would leave queue.join() waiting forever
                    ctx.skip(item_id, "fetch_failed", f"{type(e).__name__}: {e}")
                    self._log(f"hackernews item {item_id}: unexpected {type(e).__name__}", "error")
                    continue
                if item is None:
                    ctx.skip(item_id, "not_found", "item returned null")
                    continue
                try:
                    accepted = ctx.accept(self._node(item, structural_parent=parent_id))
                except CeilingReached as e:
                    self.record_stop(ctx, e)
                    continue
                if accepted:
                    for kid in self._kids(item):
                        queue.put_nowait((kid, item_id))
            finally:
                queue.task_done()

    def _kids(self, item: Dict[str, Any]) -> List[str]:
        kids = item.get("kids") or []
        if not isinstance(kids, list):
            return []
        return [str(k) for k in kids if as_int(k) is not None]

    def _node(self, item: Dict[str, Any], *, structural_parent: Optional[str]) -> RawNode:
        item_id = str(item.get("id", "") or "")
        deleted = bool(item.get("deleted"))
        dead = bool(item.get("dead"))
        declared = as_int(item.get("parent"))
        body = _html_to_text(item.get("text"))
        if deleted:
            body = "[deleted]"
        elif dead and not body:
            body = "[dead]"
        metadata: Dict[str, Any] = {
            "type": item.get("type") or "",
            "url": f"{HACKERNEWS_WEB_URL}/item?id={item_id}",
        }
        if item.get("title"):
            metadata["title"] = item["title"]
        if item.get("url"):
            metadata["link"] = item["url"]
        if item.get("descendants") is not None:
            metadata["descendants"] = as_int(item.get("descendants")) or 0
        if deleted:
            metadata["deleted"] = True
        if dead:
            metadata["dead"] = True
        return RawNode(
            id=item_id,
            parent_id=str(declared) if declared is not None else structural_parent,
            author=item.get("by") or "[deleted]",
            body=body,
            published_at=utc_from_timestamp(item.get("time")),
            score=as_int(item.get("score")),
            reply_ids=self._kids(item),
            metadata=metadata,
        )
