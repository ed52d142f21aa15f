import random
import sys
from pathlib import Path

import httpx
import pytest

# Allow running the tests without installing the package
SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from comment_tree_crawler.context import FetchContext  # noqa: E402
from comment_tree_crawler.models import AuthSession  # noqa: E402
from comment_tree_crawler.transport import RateLimitedTransport  # noqa: E402


class FakeAuthenticator:
    """Hands out tok1, tok2, ... and forgets the current token when invalidated."""

    def __init__(self):
        self.issued = 0
        self.current = None
        self.invalidated = []

    async def ensure_valid_session(self):
        if self.current is None:
            self.issued += 1
            self.current = AuthSession(access_token=f"tok{self.issued}")
        return self.current

    def invalidate(self, stale_token):
        self.invalidated.append(stale_token)
        if self.current is not None and self.current.access_token == stale_token:
            self.current = None


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_transport(sleeps):
    def factory(handler, **kwargs):
        async def fake_sleep(delay):
            sleeps.append(delay)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        kwargs.setdefault("sleep", fake_sleep)
        kwargs.setdefault("rng", random.Random(7))
        return RateLimitedTransport(client, **kwargs)

    return factory


@pytest.fixture
def make_ctx():
    # call from inside a coroutine: the context owns asyncio primitives
    def factory(platform="hackernews", thread_id="1", **kwargs):
        return FetchContext(platform, thread_id, **kwargs)

    return factory


@pytest.fixture
def fake_auth():
    return FakeAuthenticator()
