from typing import Any, Dict, List, Optional, Tuple

from .config import EXPAND_YOUTUBE_REPLIES, YOUTUBE_API_KEY, YOUTUBE_API_URL, YOUTUBE_WEB_URL
from .context import FetchContext
from .errors import AuthenticationFailed, FetchError, MalformedPayload, NotFound, RateLimited, TerminalHttpError
from .fetchers import FetchedThread, PlatformFetcher, as_int
from .models import RawNode, parse_iso_datetime
from .url_parsers import parse_youtube_id


class YouTubeFetcher(PlatformFetcher):
    """
    Cursor-paged strategy over the Data API v3.

    ``commentThreads`` pages the top-level comments of a video with
    ``pageToken`` and inlines only a few replies per thread. Threads whose
    ``totalReplyCount`` is larger than what came inline are completed from
    ``comments?parentId=...``, paged the same way.

    The API key travels as the ``key`` query parameter, so there is no
    session to manage and ``requires_auth`` stays False.
    """

    platform = "youtube"
    requires_auth = False

    def __init__(
        self,
        transport,
        *,
        api_key: str = YOUTUBE_API_KEY,
        expand_replies: bool = EXPAND_YOUTUBE_REPLIES,
        page_size: int = 100,
        log_callback=None,
    ):
        super().__init__(transport, log_callback=log_callback)
        self.api_key = api_key
        self.expand_replies = expand_replies
        self.page_size = max(1, min(100, int(page_size)))

    def _parse(self, id_or_url: str) -> Optional[str]:
        return parse_youtube_id(id_or_url)

    async def _get(self, ctx: FetchContext, resource: str, params: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._get_json(ctx, f"{YOUTUBE_API_URL}/{resource}", params={**params, "key": self.api_key})
        if not isinstance(data, dict):
            raise MalformedPayload(f"unexpected {resource} payload", platform=self.platform)
        return data

    async def fetch_thread(self, thread_id: str, ctx: FetchContext) -> FetchedThread:
        if not self.api_key:
            raise AuthenticationFailed("no youtube api key configured (YOUTUBE_API_KEY)", platform=self.platform)

        data = await self._get(ctx, "videos", {"part": "snippet,statistics", "id": thread_id})
        items = data.get("items")
        if not isinstance(items, list):
            raise MalformedPayload(f"videos response without items for {thread_id}", platform=self.platform)
        if not items or not isinstance(items[0], dict):
            raise NotFound(f"youtube video {thread_id} not found", platform=self.platform)

        root = self._video_node(items[0], thread_id)
        ctx.set_root(root)

        # (top-level comment id, totalReplyCount) for threads with replies left out
        unfinished: List[Tuple[str, int]] = []
        pages = 0
        page_token: Optional[str] = None
        try:
            while not ctx.stopped:
                params: Dict[str, Any] = {
                    "part": "snippet,replies",
                    "videoId": thread_id,
                    "maxResults": self.page_size,
                    "textFormat": "plainText",
                }
                if page_token:
                    params["pageToken"] = page_token
                data = await self._get(ctx, "commentThreads", params)
                pages += 1
                for item in data.get("items") or []:
                    self._accept_thread(ctx, item, root.id, unfinished)
                page_token = data.get("nextPageToken") or None
                if not page_token:
                    break

            for parent_id, total in unfinished:
                if ctx.stopped:
                    break
                if not self.expand_replies:
                    ctx.skip(parent_id, "replies_not_expanded", f"{total} replies reported")
                    continue
                await self._drain_replies(ctx, parent_id, thread_id)
        except FetchError as e:
            self.record_stop(ctx, e)

        self._log(f"youtube {thread_id}: pages={pages} comments={ctx.processed} requests={ctx.requests_made}")
        return FetchedThread(root=root, nodes=list(ctx.nodes))

    def _accept_thread(self, ctx: FetchContext, item: Any, root_id: str, unfinished: List[Tuple[str, int]]) -> None:
        snippet = item.get("snippet") if isinstance(item, dict) else None
        top = snippet.get("topLevelComment") if isinstance(snippet, dict) else None
        if not isinstance(top, dict) or not top.get("id"):
            ctx.skip(str(item.get("id", "")) if isinstance(item, dict) else "", "malformed", "comment thread without top-level comment")
            return
        video_id = snippet.get("videoId") or root_id
        top_id = str(top["id"])
        ctx.accept(self._comment_node(top, parent_id=root_id, video_id=video_id))

        inline = (item.get("replies") or {}).get("comments") or []
        for reply in inline:
            if not isinstance(reply, dict) or not reply.get("id"):
                ctx.skip("", "malformed", "reply without id")
                continue
            parent_id = (reply.get("snippet") or {}).get("parentId") or top_id
            ctx.accept(self._comment_node(reply, parent_id=str(parent_id), video_id=video_id))

        total = as_int(snippet.get("totalReplyCount")) or 0
        if total > len(inline):
            unfinished.append((top_id, total))

    async def _drain_replies(self, ctx: FetchContext, parent_id: str, video_id: str) -> None:
        page_token: Optional[str] = None
        while not ctx.stopped:
            params: Dict[str, Any] = {
                "part": "snippet",
                "parentId": parent_id,
                "maxResults": self.page_size,
                "textFormat": "plainText",
            }
            if page_token:
                params["pageToken"] = page_token
            try:
                data = await self._get(ctx, "comments", params)
            except RateLimited:
                raise
            except (NotFound, MalformedPayload, TerminalHttpError) as e:
                ctx.skip(parent_id, "follow_up_failed", str(e))
                return
            for reply in data.get("items") or []:
                if not isinstance(reply, dict) or not reply.get("id"):
                    ctx.skip("", "malformed", "reply without id")
                    continue
                ctx.accept(self._comment_node(reply, parent_id=parent_id, video_id=video_id))
            page_token = data.get("nextPageToken") or None
            if not page_token:
                return

    def _comment_node(self, comment: Dict[str, Any], *, parent_id: str, video_id: str) -> RawNode:
        snippet = comment.get("snippet") if isinstance(comment.get("snippet"), dict) else {}
        channel = snippet.get("authorChannelId") if isinstance(snippet.get("authorChannelId"), dict) else {}
        comment_id = str(comment["id"])
        return RawNode(
            id=comment_id,
            parent_id=parent_id,
            author=snippet.get("authorDisplayName") or "[deleted]",
            body=snippet.get("textOriginal") or snippet.get("textDisplay") or "",
            published_at=parse_iso_datetime(snippet.get("publishedAt")),
            score=as_int(snippet.get("likeCount")),
            metadata={
                "author_channel_id": channel.get("value"),
                "updated_at": snippet.get("updatedAt"),
                "url": f"{YOUTUBE_WEB_URL}/watch?v={video_id}&lc={comment_id}",
            },
        )

    def _video_node(self, video: Dict[str, Any], video_id: str) -> RawNode:
        snippet = video.get("snippet") if isinstance(video.get("snippet"), dict) else {}
        stats = video.get("statistics") if isinstance(video.get("statistics"), dict) else {}
        return RawNode(
            id=str(video.get("id") or video_id),
            parent_id=None,
            author=snippet.get("channelTitle") or "[deleted]",
            body=snippet.get("description", "") or "",
            published_at=parse_iso_datetime(snippet.get("publishedAt")),
            score=as_int(stats.get("likeCount")),
            metadata={
                "title": snippet.get("title") or "",
                "channel_id": snippet.get("channelId"),
                "view_count": as_int(stats.get("viewCount")),
                "comment_count": as_int(stats.get("commentCount")),
                "url": f"{YOUTUBE_WEB_URL}/watch?v={video_id}",
            },
        )
