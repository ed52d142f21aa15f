import asyncio
import time
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Union

import httpx

from .auth import AuthenticatorPool, EnvCredentialStore
from .bluesky_fetcher import BlueskyFetcher
from .config import DEFAULT_MAX_NODES, MAX_REQUESTS_PER_FETCH, MIN_REQUEST_INTERVAL, RETRY_BUDGET
from .context import FetchContext
from .errors import AuthenticationFailed, FetchError, InvalidReference, RateLimited
from .fetchers import PlatformFetcher
from .hackernews_fetcher import HackerNewsFetcher
from .models import RawNode, ThreadFailure, ThreadReference, ThreadResult
from .reddit_fetcher import RedditFetcher
from .transport import RateLimitedTransport, make_client
from .tree_builder import TreeBuilder
from .twitter_fetcher import TwitterFetcher
from .url_parsers import detect_platform
from .youtube_fetcher import YouTubeFetcher


Outcome = Union[ThreadResult, ThreadFailure]


def default_fetchers(transport: RateLimitedTransport, *, log_callback=None) -> Dict[str, PlatformFetcher]:
    fetchers = [
        RedditFetcher(transport, log_callback=log_callback),
        BlueskyFetcher(transport, log_callback=log_callback),
        HackerNewsFetcher(transport, log_callback=log_callback),
        TwitterFetcher(transport, log_callback=log_callback),
        YouTubeFetcher(transport, log_callback=log_callback),
    ]
    return {f.platform: f for f in fetchers}


class AggregationOrchestrator:
    """
    Top-level entry point: reference in, ThreadResult (or ThreadFailure) out.

    Usage:
        async with AggregationOrchestrator(log_callback=log) as agg:
            result = await agg.aggregate(ThreadReference("https://news.ycombinator.com/item?id=1"))

    A ThreadFailure means nothing usable was fetched (bad reference, auth never
    succeeded, root unavailable). Anything after the root degrades to a
    partial ThreadResult with ``may_be_incomplete=True``.
    """

    def __init__(
        self,
        fetchers: Optional[Dict[str, PlatformFetcher]] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[RateLimitedTransport] = None,
        credential_store=None,
        auth_pool: Optional[AuthenticatorPool] = None,
        builder: Optional[TreeBuilder] = None,
        retry_budget: int = RETRY_BUDGET,
        max_requests: int = MAX_REQUESTS_PER_FETCH,
        min_request_interval: float = MIN_REQUEST_INTERVAL,
        log_callback=None,
        clock=time.time,
    ):
        self._log = log_callback or (lambda msg, lvl="info": None)
        if transport is not None:
            client = transport.client
        self._owns_client = client is None
        self.client = client if client is not None else make_client()
        self.transport = transport or RateLimitedTransport(self.client, log_callback=log_callback)
        self.fetchers = fetchers if fetchers is not None else default_fetchers(self.transport, log_callback=log_callback)
        self.credential_store = credential_store if credential_store is not None else EnvCredentialStore()
        self.auth_pool = auth_pool or AuthenticatorPool(self.client, clock=clock, log_callback=log_callback)
        self.builder = builder or TreeBuilder(log_callback=log_callback)
        self.retry_budget = retry_budget
        self.max_requests = max_requests
        self.min_request_interval = min_request_interval

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self._owns_client:
            await self.client.aclose()

    # ---------------------------
    # Public API
    # ---------------------------

    async def aggregate(
        self,
        ref: ThreadReference,
        *,
        max_nodes: Optional[int] = None,
        from_date: Optional[datetime] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Outcome:
        platform = (ref.platform or detect_platform(ref.id_or_url) or "").lower()
        fetcher = self.fetchers.get(platform)
        if fetcher is None:
            msg = f"cannot resolve a platform for {ref.id_or_url!r}"
            self._log(msg, "error")
            return ThreadFailure(platform=platform, thread_id=ref.id_or_url, kind=InvalidReference.kind, message=msg)

        try:
            thread_id = fetcher.parse_reference(ref.id_or_url)
        except InvalidReference as e:
            self._log(str(e), "error")
            return ThreadFailure(platform=platform, thread_id=ref.id_or_url, kind=e.kind, message=str(e))

        authenticator = None
        if fetcher.requires_auth:
            try:
                credentials = self.credential_store.get(platform)
                if credentials is None:
                    raise AuthenticationFailed(f"no {platform} credentials configured", platform=platform)
                authenticator = self.auth_pool.get(credentials)
                await authenticator.ensure_valid_session()
            except AuthenticationFailed as e:
                return ThreadFailure(platform=platform, thread_id=thread_id, kind=e.kind, message=str(e))

        if max_nodes is None and DEFAULT_MAX_NODES > 0:
            max_nodes = DEFAULT_MAX_NODES
        if from_date is not None:
            from_date = from_date.replace(tzinfo=timezone.utc) if from_date.tzinfo is None else from_date

        ctx = FetchContext(
            platform,
            thread_id,
            max_nodes=max_nodes,
            from_date=from_date,
            authenticator=authenticator,
            retry_budget=self.retry_budget,
            max_requests=self.max_requests,
            min_request_interval=self.min_request_interval,
            cancel_event=cancel_event,
            log_callback=self._log,
        )
        self._log(f"fetching {platform} thread {thread_id}")

        failure = await self._run_fetch(fetcher, ctx)
        if failure is not None:
            return failure
        return self._assemble(ctx)

    async def aggregate_many(
        self,
        refs: Iterable[ThreadReference],
        *,
        max_nodes: Optional[int] = None,
        from_date: Optional[datetime] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[Outcome]:
        """Independent aggregations run concurrently; outcomes keep input order."""
        return list(
            await asyncio.gather(
                *[
                    self.aggregate(r, max_nodes=max_nodes, from_date=from_date, cancel_event=cancel_event)
                    for r in refs
                ]
            )
        )

    async def aggregate_or_raise(self, ref: ThreadReference, **kwargs) -> ThreadResult:
        outcome = await self.aggregate(ref, **kwargs)
        if isinstance(outcome, ThreadFailure):
            raise outcome.to_error()
        return outcome

    # ---------------------------
    # Internals
    # ---------------------------

    async def _run_fetch(self, fetcher: PlatformFetcher, ctx: FetchContext) -> Optional[ThreadFailure]:
        fetch_task = asyncio.create_task(fetcher.fetch_thread(ctx.thread_id, ctx))
        cancel_wait = asyncio.create_task(ctx.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({fetch_task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            fetch_task.cancel()
            cancel_wait.cancel()
            raise

        if fetch_task not in done:
            fetch_task.cancel()
            await asyncio.gather(fetch_task, return_exceptions=True)
            ctx.halt("cancelled")
            if ctx.root is None:
                return ThreadFailure(
                    platform=ctx.platform,
                    thread_id=ctx.thread_id,
                    kind="cancelled",
                    message="cancelled before the thread root was fetched",
                )
            return None

        cancel_wait.cancel()
        try:
            fetch_task.result()
        except FetchError as e:
            if ctx.root is None:
                self._log(f"{ctx.platform} {ctx.thread_id}: {e}", "error")
                return ThreadFailure(
                    platform=ctx.platform,
                    thread_id=ctx.thread_id,
                    kind=e.kind,
                    message=str(e),
                    retry_after=e.retry_after if isinstance(e, RateLimited) else None,
                )
            fetcher.record_stop(ctx, e)
        if ctx.cancel_event.is_set():
            ctx.halt("cancelled")
        return None

    def _assemble(self, ctx: FetchContext) -> ThreadResult:
        root: RawNode = ctx.root
        outcome = self.builder.build(root, ctx.nodes)
        skipped = list(ctx.skipped) + list(outcome.skipped)

        reason = ctx.stop_reason
        if reason is None and skipped:
            reason = f"{len(skipped)} node(s) skipped after processing {ctx.processed} nodes"
        incomplete = ctx.stop_kind is not None or bool(skipped)

        level = "warning" if incomplete else "success"
        self._log(
            f"{ctx.platform} {ctx.thread_id}: {outcome.node_count} nodes in tree"
            + (f" (incomplete: {reason})" if incomplete else ""),
            level,
        )
        return ThreadResult(
            platform=ctx.platform,
            root=outcome.root,
            total_nodes_processed=ctx.processed,
            may_be_incomplete=incomplete,
            incomplete_reason=reason if incomplete else None,
            skipped=skipped,
        )
