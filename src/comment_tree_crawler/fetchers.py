from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .context import FetchContext
from .errors import CeilingReached, FetchError, InvalidReference, RateLimited
from .models import RawNode
from .transport import ApiRequest, RateLimitedTransport


@dataclass
class FetchedThread:
    root: RawNode
    nodes: List[RawNode] = field(default_factory=list)


class PlatformFetcher:
    """
    Per-platform strategy: knows URLs, pagination and payload shape.

    Fetchers hold no per-call state. Everything a single fetch accumulates
    (dedup set, nodes, budgets, stop reason) lives on the FetchContext, so one
    fetcher instance serves any number of concurrent aggregations.
    """

    platform = ""
    requires_auth = False

    def __init__(self, transport: RateLimitedTransport, *, log_callback=None):
        self.transport = transport
        self._log = log_callback or (lambda msg, lvl="info": None)

    def parse_reference(self, id_or_url: str) -> str:
        thread_id = self._parse(id_or_url)
        if not thread_id:
            raise InvalidReference(f"not a {self.platform} thread reference: {id_or_url!r}", platform=self.platform)
        return thread_id

    def _parse(self, id_or_url: str) -> Optional[str]:
        raise NotImplementedError

    async def fetch_thread(self, thread_id: str, ctx: FetchContext) -> FetchedThread:
        """
        Fetch the root and every reachable reply into ``ctx``.

        Errors fetching the root propagate. Errors after the root was recorded
        are absorbed: the fetcher records them on the context (``ctx.halt`` /
        ``ctx.skip``) and returns what it has.
        """
        raise NotImplementedError

    def record_stop(self, ctx: FetchContext, err: FetchError) -> None:
        if isinstance(err, RateLimited):
            detail = f"retry after {err.retry_after:.0f}s" if err.retry_after else ""
            ctx.halt("rate_limited", detail)
        elif isinstance(err, CeilingReached):
            ctx.halt("node_ceiling")
        else:
            ctx.halt("error", f"{type(err).__name__}: {err}")

    async def _get_json(self, ctx: FetchContext, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.transport.get_json(
            ctx,
            ApiRequest(method="GET", url=url, params=params, authenticated=self.requires_auth),
        )


def as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
