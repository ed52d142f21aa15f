from typing import Any, Dict, Optional

from .config import SEARCH_MAX_RESULTS, TWITTER_API_URL, TWITTER_WEB_URL
from .context import FetchContext
from .errors import FetchError, MalformedPayload, NotFound
from .fetchers import FetchedThread, PlatformFetcher, as_int
from .models import RawNode, parse_iso_datetime
from .url_parsers import parse_tweet_id


TWEET_FIELDS = "author_id,created_at,conversation_id,in_reply_to_user_id,referenced_tweets,public_metrics"
USER_FIELDS = "name,username"


def _replied_to(tweet: Dict[str, Any]) -> Optional[str]:
    for ref in tweet.get("referenced_tweets") or []:
        if isinstance(ref, dict) and ref.get("type") == "replied_to" and ref.get("id"):
            return str(ref["id"])
    return None


class TwitterFetcher(PlatformFetcher):
    """
    Cursor-search strategy over the v2 API.

    Replies are found with ``conversation_id:<root>`` on recent search and
    paged with ``next_token``. The search has no exact range filter for our
    purposes, so ``from_date`` is applied to each page after it arrives.
    """

    platform = "twitter"
    requires_auth = True

    def __init__(
        self,
        transport,
        *,
        max_results: int = SEARCH_MAX_RESULTS,
        page_size: int = 100,
        log_callback=None,
    ):
        super().__init__(transport, log_callback=log_callback)
        self.max_results = max(1, int(max_results))
        self.page_size = max(10, min(100, int(page_size)))

    def _parse(self, id_or_url: str) -> Optional[str]:
        return parse_tweet_id(id_or_url)

    async def _lookup(self, ctx: FetchContext, tweet_id: str) -> Dict[str, Any]:
        data = await self._get_json(
            ctx,
            f"{TWITTER_API_URL}/2/tweets/{tweet_id}",
            params={"tweet.fields": TWEET_FIELDS, "expansions": "author_id", "user.fields": USER_FIELDS},
        )
        if not isinstance(data, dict):
            raise MalformedPayload(f"unexpected tweet payload for {tweet_id}", platform=self.platform)
        tweet = data.get("data")
        if not isinstance(tweet, dict) or not tweet.get("id"):
            # the v2 API answers 200 with an "errors" array for missing tweets
            raise NotFound(f"tweet {tweet_id} not found", platform=self.platform)
        return data

    async def fetch_thread(self, thread_id: str, ctx: FetchContext) -> FetchedThread:
        found = await self._lookup(ctx, thread_id)
        tweet = found["data"]
        users = self._users(found)

        conversation_id = str(tweet.get("conversation_id") or tweet["id"])
        if conversation_id != str(tweet["id"]):
            try:
                found = await self._lookup(ctx, conversation_id)
                tweet = found["data"]
                users.update(self._users(found))
            except NotFound:
                # search still runs on the real conversation; replies to the
                # missing root are adopted by the tree builder
                ctx.skip(conversation_id, "root_unavailable", "conversation root tweet not found")

        root = self._node(tweet, users, root_id=None)
        root.parent_id = None
        ctx.set_root(root)

        filtered = 0
        pages = 0
        next_token: Optional[str] = None
        try:
            while not ctx.stopped:
                params: Dict[str, Any] = {
                    "query": f"conversation_id:{conversation_id}",
                    "tweet.fields": TWEET_FIELDS,
                    "expansions": "author_id",
                    "user.fields": USER_FIELDS,
                    "max_results": self.page_size,
                }
                if next_token:
                    params["next_token"] = next_token
                data = await self._get_json(ctx, f"{TWITTER_API_URL}/2/tweets/search/recent", params=params)
                if not isinstance(data, dict):
                    raise MalformedPayload("search returned unexpected payload", platform=self.platform)
                pages += 1
                users.update(self._users(data))

                for item in data.get("data") or []:
                    if not isinstance(item, dict) or not item.get("id"):
                        ctx.skip("", "malformed", "search result without id")
                        continue
                    node = self._node(item, users, root_id=root.id)
                    if ctx.from_date is not None and node.published_at is not None and node.published_at < ctx.from_date:
                        filtered += 1
                        continue
                    ctx.accept(node)

                meta = data.get("meta") or {}
                next_token = meta.get("next_token") or None
                if not next_token:
                    break
                if ctx.processed + filtered >= self.max_results:
                    ctx.halt("result_ceiling", f"max_results={self.max_results}")
                    break
        except FetchError as e:
            self.record_stop(ctx, e)

        if ctx.from_date is not None:
            root.metadata["filtered_before_from_date"] = filtered
        self._log(f"twitter {thread_id}: pages={pages} replies={ctx.processed} filtered={filtered}")
        return FetchedThread(root=root, nodes=list(ctx.nodes))

    def _users(self, payload: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        includes = payload.get("includes") or {}
        for u in includes.get("users") or []:
            if isinstance(u, dict) and u.get("id"):
                out[str(u["id"])] = u
        return out

    def _node(self, tweet: Dict[str, Any], users: Dict[str, Dict[str, Any]], *, root_id: Optional[str]) -> RawNode:
        tweet_id = str(tweet["id"])
        author_id = str(tweet.get("author_id") or "")
        user = users.get(author_id) or {}
        username = user.get("username") or ""
        metrics = tweet.get("public_metrics") or {}
        return RawNode(
            id=tweet_id,
            parent_id=_replied_to(tweet) or root_id,
            author=username or author_id or "[deleted]",
            body=tweet.get("text", "") or "",
            published_at=parse_iso_datetime(tweet.get("created_at")),
            score=as_int(metrics.get("like_count")),
            metadata={
                "author_id": author_id,
                "author_name": user.get("name") or username,
                "conversation_id": tweet.get("conversation_id"),
                "reply_count": as_int(metrics.get("reply_count")) or 0,
                "retweet_count": as_int(metrics.get("retweet_count")) or 0,
                "url": f"{TWITTER_WEB_URL}/{username or 'i/web'}/status/{tweet_id}",
            },
        )
