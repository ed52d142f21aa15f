import asyncio
import time
from datetime import datetime
from typing import Any, List, Optional, Set

from .config import MAX_REQUESTS_PER_FETCH, MIN_REQUEST_INTERVAL, RETRY_BUDGET
from .errors import CeilingReached
from .models import RawNode, SkipRecord


STOP_MESSAGES = {
    "rate_limited": "rate limit reached after processing {n} nodes",
    "node_ceiling": "node ceiling of {limit} reached after processing {n} nodes",
    "request_ceiling": "request ceiling reached after processing {n} nodes",
    "result_ceiling": "max-results ceiling reached after processing {n} nodes",
    "cancelled": "cancelled after processing {n} nodes",
    "error": "fetch stopped by an error after processing {n} nodes",
}


class FetchContext:
    """
    State for one logical top-level fetch.

    Everything that must not leak between concurrent aggregations lives here:
    the dedup set, the collected nodes, retry/request budgets and the
    politeness clock. A new context is created for every ``aggregate()`` call.
    """

    def __init__(
        self,
        platform: str,
        thread_id: str,
        *,
        max_nodes: Optional[int] = None,
        from_date: Optional[datetime] = None,
        authenticator: Any = None,
        retry_budget: int = RETRY_BUDGET,
        max_requests: int = MAX_REQUESTS_PER_FETCH,
        min_request_interval: float = MIN_REQUEST_INTERVAL,
        cancel_event: Optional[asyncio.Event] = None,
        log_callback=None,
    ):
        self.platform = platform
        self.thread_id = thread_id
        self.max_nodes = int(max_nodes) if max_nodes else None
        self.from_date = from_date
        self.authenticator = authenticator
        self.retry_budget = int(retry_budget)
        self.max_requests = int(max_requests)
        self.cancel_event = cancel_event or asyncio.Event()
        self._log = log_callback or (lambda msg, lvl="info": None)

        self.root: Optional[RawNode] = None
        self.nodes: List[RawNode] = []
        self.skipped: List[SkipRecord] = []
        self._seen: Set[str] = set()

        self.stop_kind: Optional[str] = None
        self.stop_reason: Optional[str] = None
        self.retries_used = 0
        self.requests_made = 0

        self._rate_lock = asyncio.Lock()
        self._last_request_time = 0.0
        self._min_interval = float(min_request_interval)

    # ---------------------------
    # Node collection
    # ---------------------------

    def set_root(self, node: RawNode) -> None:
        self.root = node
        self._seen.add(node.id)

    def has_seen(self, node_id: str) -> bool:
        return node_id in self._seen

    def accept(self, node: RawNode) -> bool:
        """
        Add a node to the collected set.

        Returns False for an id that was already accepted. Raises CeilingReached
        once ``max_nodes`` nodes have been collected.
        """
        if not node.id or node.id in self._seen:
            return False
        if self.max_nodes is not None and len(self.nodes) >= self.max_nodes:
            self.halt("node_ceiling")
            raise CeilingReached(self.stop_reason or "", platform=self.platform)
        self._seen.add(node.id)
        self.nodes.append(node)
        return True

    def skip(self, node_id: str, reason: str, detail: str = "") -> None:
        self.skipped.append(SkipRecord(node_id=str(node_id or ""), reason=reason, detail=detail))
        self._log(f"skipped node {node_id or '?'}: {reason} {detail}".rstrip(), "warning")

    @property
    def processed(self) -> int:
        return len(self.nodes)

    # ---------------------------
    # Stop / completeness bookkeeping
    # ---------------------------

    def halt(self, kind: str, detail: str = "") -> None:
        """Record why pagination was cut short. The first reason wins."""
        if self.stop_kind is not None:
            return
        template = STOP_MESSAGES.get(kind, STOP_MESSAGES["error"])
        reason = template.format(n=self.processed, limit=self.max_nodes)
        if detail:
            reason = f"{reason} ({detail})"
        self.stop_kind = kind
        self.stop_reason = reason
        self._log(f"{self.platform} {self.thread_id}: {reason}", "warning")

    @property
    def stopped(self) -> bool:
        return self.stop_kind is not None or self.cancel_event.is_set()

    @property
    def may_be_incomplete(self) -> bool:
        return self.stop_kind is not None or bool(self.skipped)

    # ---------------------------
    # Budgets (consumed by the transport)
    # ---------------------------

    def note_request(self) -> None:
        if self.requests_made >= self.max_requests:
            self.halt("request_ceiling")
            raise CeilingReached(self.stop_reason or "", platform=self.platform)
        self.requests_made += 1

    def consume_retry(self) -> bool:
        if self.retries_used >= self.retry_budget:
            return False
        self.retries_used += 1
        return True

    async def throttle(self) -> None:
        if self._min_interval <= 0:
            return
        async with self._rate_lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < self._min_interval:
                await asyncio.sleep(self._min_interval - elapsed)
            self._last_request_time = time.monotonic()
