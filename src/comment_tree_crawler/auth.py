import asyncio
import base64
import json
import time
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import httpx

from .config import (
    BLUESKY_APP_PASSWORD,
    BLUESKY_PDS_URL,
    BLUESKY_SESSION_TTL,
    BLUESKY_USERNAME,
    REDDIT_AUTH_URL,
    REDDIT_CLIENT_ID,
    REDDIT_CLIENT_SECRET,
    TOKEN_EXPIRY_MARGIN,
    TWITTER_API_KEY,
    TWITTER_API_SECRET,
    TWITTER_API_URL,
    TWITTER_BEARER_TOKEN,
)
from .errors import AuthenticationFailed
from .models import AuthSession, Credentials


class AuthState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


class TokenAuthenticator:
    """
    Owns the AuthSession for one platform+credential pair.

    ``ensure_valid_session()`` is single-flighted: while an exchange is running,
    every other caller awaits the same task and receives the same session or
    the same AuthenticationFailed.
    """

    platform = ""

    def __init__(
        self,
        credentials: Credentials,
        client: httpx.AsyncClient,
        *,
        clock=time.time,
        expiry_margin: float = TOKEN_EXPIRY_MARGIN,
        log_callback=None,
    ):
        self.credentials = credentials
        self._client = client
        self._clock = clock
        self._margin = float(expiry_margin)
        self._log = log_callback or (lambda msg, lvl="info": None)

        self._state = AuthState.UNAUTHENTICATED
        self._session: Optional[AuthSession] = None
        self._inflight: Optional[asyncio.Task] = None
        self.exchanges = 0

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def session(self) -> Optional[AuthSession]:
        return self._session

    async def ensure_valid_session(self) -> AuthSession:
        session = self._session
        if session is not None and self._state == AuthState.AUTHENTICATED:
            if not session.is_expired(now=self._clock(), margin=self._margin):
                return session
            self._state = AuthState.EXPIRED
            self._log(f"{self.platform} session expired, refreshing", "info")

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._run_exchange())
        # shield: a cancelled waiter must not cancel the exchange other waiters share
        return await asyncio.shield(self._inflight)

    def invalidate(self, stale_token: str) -> None:
        """Mark the session expired after a 401, unless it was already replaced."""
        session = self._session
        if session is None or session.access_token != stale_token:
            return
        if self._state == AuthState.AUTHENTICATED:
            self._state = AuthState.EXPIRED

    async def _run_exchange(self) -> AuthSession:
        previous = self._session if self._state == AuthState.EXPIRED else None
        self._state = AuthState.AUTHENTICATING
        self.exchanges += 1
        try:
            session = None
            if previous is not None and previous.refresh_token:
                try:
                    session = await self._refresh(previous)
                    self._log(f"{self.platform} session refreshed", "success")
                except AuthenticationFailed as e:
                    self._log(f"{self.platform} refresh failed ({e}), signing in again", "warning")
            if session is None:
                session = await self._authenticate()
                self._log(f"{self.platform} authenticated", "success")
        except AuthenticationFailed as e:
            self._fail(e)
            raise
        except httpx.HTTPError as e:
            err = AuthenticationFailed(f"{self.platform} auth request failed: {type(e).__name__}", platform=self.platform)
            self._fail(err)
            raise err from e
        else:
            self._session = session
            self._state = AuthState.AUTHENTICATED
            return session
        finally:
            self._inflight = None

    def _fail(self, err: AuthenticationFailed) -> None:
        self._session = None
        self._state = AuthState.UNAUTHENTICATED
        self._log(f"{self.platform} authentication failed: {err}", "error")

    async def _authenticate(self) -> AuthSession:
        raise NotImplementedError

    async def _refresh(self, previous: AuthSession) -> AuthSession:
        raise AuthenticationFailed("refresh not supported", platform=self.platform)

    async def _post_json(self, url: str, **kwargs) -> Dict[str, Any]:
        resp = await self._client.post(url, **kwargs)
        if resp.status_code >= 400:
            raise AuthenticationFailed(f"{self.platform} auth http {resp.status_code}", platform=self.platform)
        try:
            data = resp.json()
        except ValueError as e:
            raise AuthenticationFailed(f"{self.platform} auth returned invalid JSON", platform=self.platform) from e
        if not isinstance(data, dict):
            raise AuthenticationFailed(f"{self.platform} auth returned unexpected payload", platform=self.platform)
        return data

    def _expiry(self, expires_in: Any) -> Optional[float]:
        try:
            seconds = float(expires_in)
        except (TypeError, ValueError):
            return None
        return self._clock() + seconds


class RedditAuthenticator(TokenAuthenticator):
    """Application-only OAuth (client credentials grant)."""

    platform = "reddit"

    async def _authenticate(self) -> AuthSession:
        creds = self.credentials
        if not creds.client_id or not creds.client_secret:
            raise AuthenticationFailed("reddit client id/secret not configured", platform=self.platform)
        data = await self._post_json(
            REDDIT_AUTH_URL,
            data={"grant_type": "client_credentials"},
            auth=(creds.client_id, creds.client_secret),
        )
        token = data.get("access_token")
        if not token:
            raise AuthenticationFailed("failed to get reddit access token", platform=self.platform)
        return AuthSession(access_token=str(token), expires_at=self._expiry(data.get("expires_in")))


def jwt_expiry(token: str) -> Optional[float]:
    """Read the ``exp`` claim of a JWT without verifying it."""
    parts = (token or "").split(".")
    if len(parts) != 3:
        return None
    payload = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except (ValueError, UnicodeDecodeError):
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    return float(exp) if isinstance(exp, (int, float)) else None


class BlueskyAuthenticator(TokenAuthenticator):
    """Handle + app password session; refreshed with the refresh JWT."""

    platform = "bluesky"

    def _session_from(self, data: Dict[str, Any]) -> AuthSession:
        access = data.get("accessJwt")
        if not access:
            raise AuthenticationFailed("failed to get bluesky access token", platform=self.platform)
        expires_at = jwt_expiry(access)
        if expires_at is None:
            expires_at = self._clock() + BLUESKY_SESSION_TTL
        return AuthSession(
            access_token=str(access),
            expires_at=expires_at,
            refresh_token=data.get("refreshJwt") or None,
        )

    async def _authenticate(self) -> AuthSession:
        creds = self.credentials
        if not creds.username or not creds.password:
            raise AuthenticationFailed("bluesky username/app password not configured", platform=self.platform)
        data = await self._post_json(
            f"{BLUESKY_PDS_URL}/xrpc/com.atproto.server.createSession",
            json={"identifier": creds.username, "password": creds.password},
        )
        return self._session_from(data)

    async def _refresh(self, previous: AuthSession) -> AuthSession:
        data = await self._post_json(
            f"{BLUESKY_PDS_URL}/xrpc/com.atproto.server.refreshSession",
            headers={"Authorization": f"Bearer {previous.refresh_token}"},
        )
        return self._session_from(data)


class TwitterAuthenticator(TokenAuthenticator):
    """App bearer token: configured directly, or exchanged from the API key pair."""

    platform = "twitter"

    async def _authenticate(self) -> AuthSession:
        creds = self.credentials
        if creds.bearer_token:
            return AuthSession(access_token=creds.bearer_token, expires_at=None)
        if not creds.client_id or not creds.client_secret:
            raise AuthenticationFailed("twitter bearer token / api key not configured", platform=self.platform)
        data = await self._post_json(
            f"{TWITTER_API_URL}/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(creds.client_id, creds.client_secret),
        )
        token = data.get("access_token")
        if not token:
            raise AuthenticationFailed("failed to get twitter bearer token", platform=self.platform)
        return AuthSession(access_token=str(token), expires_at=None)


AUTHENTICATORS = {
    "reddit": RedditAuthenticator,
    "bluesky": BlueskyAuthenticator,
    "twitter": TwitterAuthenticator,
}


class AuthenticatorPool:
    """One authenticator per platform+credential pair, shared across aggregations."""

    def __init__(self, client: httpx.AsyncClient, *, clock=time.time, log_callback=None):
        self._client = client
        self._clock = clock
        self._log = log_callback
        self._by_key: Dict[tuple, TokenAuthenticator] = {}

    def get(self, credentials: Credentials) -> TokenAuthenticator:
        key = credentials.key()
        auth = self._by_key.get(key)
        if auth is None:
            cls = AUTHENTICATORS.get(credentials.platform)
            if cls is None:
                raise AuthenticationFailed(
                    f"no authenticator for platform {credentials.platform!r}", platform=credentials.platform
                )
            auth = cls(credentials, self._client, clock=self._clock, log_callback=self._log)
            self._by_key[key] = auth
        return auth


# ---------------------------
# Credential stores
# ---------------------------


class StaticCredentialStore:
    def __init__(self, credentials: Mapping[str, Credentials]):
        self._credentials = dict(credentials)

    def get(self, platform: str) -> Optional[Credentials]:
        return self._credentials.get(platform)


class EnvCredentialStore:
    """Credentials from environment variables (see config.py)."""

    def get(self, platform: str) -> Optional[Credentials]:
        if platform == "reddit" and REDDIT_CLIENT_ID:
            return Credentials(platform="reddit", client_id=REDDIT_CLIENT_ID, client_secret=REDDIT_CLIENT_SECRET)
        if platform == "bluesky" and BLUESKY_USERNAME:
            return Credentials(platform="bluesky", username=BLUESKY_USERNAME, password=BLUESKY_APP_PASSWORD)
        if platform == "twitter" and (TWITTER_BEARER_TOKEN or TWITTER_API_KEY):
            return Credentials(
                platform="twitter",
                client_id=TWITTER_API_KEY,
                client_secret=TWITTER_API_SECRET,
                bearer_token=TWITTER_BEARER_TOKEN,
            )
        return None
