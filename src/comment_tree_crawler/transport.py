import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

import httpx

from .config import (
    BACKOFF_BASE_SECONDS,
    HTTP_MAX_CONNECTIONS,
    HTTP_TIMEOUT,
    MAX_BACKOFF_SECONDS,
    MAX_RETRIES,
    USER_AGENT,
)
from .context import FetchContext
from .errors import (
    AuthenticationFailed,
    FetchError,
    MalformedPayload,
    NotFound,
    RateLimited,
    TerminalHttpError,
    TransientNetworkError,
)


THROTTLE_STATUSES = (429, 503)
TRANSIENT_STATUSES = (502, 504)


def make_client(**kwargs) -> httpx.AsyncClient:
    headers = {
        "User-Agent": USER_AGENT,
        "Accept": "application/json",
    }
    headers.update(kwargs.pop("headers", {}) or {})
    return httpx.AsyncClient(
        headers=headers,
        timeout=kwargs.pop("timeout", HTTP_TIMEOUT),
        follow_redirects=True,
        limits=httpx.Limits(max_connections=HTTP_MAX_CONNECTIONS, max_keepalive_connections=20),
        **kwargs,
    )


def parse_retry_after(value: Optional[str], *, now: Optional[datetime] = None) -> Optional[float]:
    """Retry-After is either delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current = now or datetime.now(tz=timezone.utc)
    return max(0.0, (when - current).total_seconds())


@dataclass
class ApiRequest:
    method: str
    url: str
    params: Optional[Dict[str, Any]] = None
    json: Any = None
    data: Optional[Dict[str, Any]] = None
    headers: Optional[Dict[str, str]] = None
    authenticated: bool = True


class RateLimitedTransport:
    """
    Shared retry/backoff layer wrapped around every outbound call.

    Budgets (retry count, request ceiling, politeness spacing) are read from the
    FetchContext passed with each call, so two concurrent fetches never drain
    each other's allowance. The transport itself only holds the HTTP client
    and the backoff policy.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE_SECONDS,
        max_backoff: float = MAX_BACKOFF_SECONDS,
        sleep=asyncio.sleep,
        rng: Optional[random.Random] = None,
        log_callback=None,
    ):
        self._owns_client = client is None
        self.client = client if client is not None else make_client()
        self.max_retries = int(max_retries)
        self.backoff_base = float(backoff_base)
        self.max_backoff = float(max_backoff)
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._log = log_callback or (lambda msg, lvl="info": None)

    async def close(self):
        if self._owns_client:
            await self.client.aclose()

    def backoff_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        if retry_after is not None:
            return min(self.max_backoff, retry_after)
        ceiling = min(self.max_backoff, self.backoff_base * (2 ** attempt))
        # equal jitter: never below half the exponential step
        return ceiling / 2 + self._rng.uniform(0, ceiling / 2)

    async def execute(self, ctx: FetchContext, request: ApiRequest) -> httpx.Response:
        attempt = 0
        refreshed = False
        short_url = request.url[:120]

        while True:
            await ctx.throttle()
            ctx.note_request()

            headers = dict(request.headers or {})
            token = None
            if request.authenticated and ctx.authenticator is not None:
                session = await ctx.authenticator.ensure_valid_session()
                token = session.access_token
                headers["Authorization"] = f"Bearer {token}"

            try:
                resp = await self.client.request(
                    request.method,
                    request.url,
                    params=request.params,
                    json=request.json,
                    data=request.data,
                    headers=headers,
                )
            except httpx.TransportError as e:
                if attempt >= self.max_retries or not ctx.consume_retry():
                    raise TransientNetworkError(
                        f"{type(e).__name__} after {attempt + 1} attempts: {short_url}",
                        platform=ctx.platform,
                    ) from e
                delay = self.backoff_delay(attempt)
                self._log(f"network error ({type(e).__name__}), sleep {delay:.1f}s then retry: {short_url}", "warning")
                await self._sleep(delay)
                attempt += 1
                continue
            except httpx.HTTPError as e:
                # decoding errors and redirect loops are not retried
                raise FetchError(f"{type(e).__name__}: {short_url}", platform=ctx.platform) from e

            status = resp.status_code
            if status < 400:
                return resp

            if status == 401:
                if token is not None and not refreshed:
                    refreshed = True
                    self._log(f"http 401, refreshing {ctx.platform} session then retry", "warning")
                    ctx.authenticator.invalidate(token)
                    continue
                raise AuthenticationFailed(f"http 401: {short_url}", platform=ctx.platform)

            if status in THROTTLE_STATUSES or status in TRANSIENT_STATUSES:
                retry_after = parse_retry_after(resp.headers.get("Retry-After"))
                if attempt >= self.max_retries or not ctx.consume_retry():
                    if status in THROTTLE_STATUSES:
                        raise RateLimited(
                            f"http {status} after {attempt + 1} attempts: {short_url}",
                            platform=ctx.platform,
                            retry_after=retry_after,
                        )
                    raise TransientNetworkError(
                        f"http {status} after {attempt + 1} attempts: {short_url}",
                        platform=ctx.platform,
                    )
                delay = self.backoff_delay(attempt, retry_after)
                label = "rate limited" if status in THROTTLE_STATUSES else "upstream error"
                self._log(f"{label} ({status}), sleep {delay:.1f}s then retry", "warning")
                await self._sleep(delay)
                attempt += 1
                continue

            if status in (404, 410):
                raise NotFound(f"http {status}: {short_url}", platform=ctx.platform)

            self._log(f"http {status}: {short_url}", "warning")
            raise TerminalHttpError(f"http {status}: {short_url}", platform=ctx.platform, status_code=status)

    async def get_json(self, ctx: FetchContext, request: ApiRequest) -> Any:
        resp = await self.execute(ctx, request)
        try:
            return resp.json()
        except ValueError as e:
            raise MalformedPayload(f"invalid JSON from {request.url[:120]}", platform=ctx.platform) from e
