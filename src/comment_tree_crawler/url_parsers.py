import re
import urllib.parse
from typing import Optional


REDDIT_THREAD_RE = re.compile(
    r"(?:https?://)?(?:[a-z]+\.)?reddit\.com/(?:r/[^/]+/)?comments/([a-z0-9]+)", re.IGNORECASE
)
REDDIT_SHORT_RE = re.compile(r"(?:https?://)?redd\.it/([a-z0-9]+)", re.IGNORECASE)
REDDIT_ID_RE = re.compile(r"^(?:t3_)?([a-z0-9]{4,12})$", re.IGNORECASE)

BLUESKY_URL_RE = re.compile(r"(?:https?://bsky\.app/profile/)?([^/\s]+)/post/([a-zA-Z0-9]+)", re.IGNORECASE)
BLUESKY_AT_URI_RE = re.compile(r"^at://([^/\s]+)/app\.bsky\.feed\.post/([a-zA-Z0-9]+)$")

HN_ITEM_RE = re.compile(r"item\?id=(\d+)")

YOUTUBE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
YOUTUBE_PATH_PREFIXES = ("live", "shorts", "embed", "v")


def detect_platform(id_or_url: str) -> Optional[str]:
    s = (id_or_url or "").strip()
    if not s:
        return None
    if s.startswith("at://"):
        return "bluesky"
    parsed = urllib.parse.urlparse(s if "://" in s else f"https://{s}")
    host = (parsed.hostname or "").lower()
    if host.endswith("reddit.com") or host == "redd.it":
        return "reddit"
    if host == "bsky.app" or ".bsky." in s:
        return "bluesky"
    if host == "news.ycombinator.com":
        return "hackernews"
    if host in ("twitter.com", "www.twitter.com", "x.com", "www.x.com", "mobile.twitter.com"):
        return "twitter"
    if host == "youtu.be" or host == "youtube.com" or host.endswith(".youtube.com"):
        return "youtube"
    return None


def parse_reddit_id(id_or_url: str) -> Optional[str]:
    s = (id_or_url or "").strip()
    if not s:
        return None
    m = REDDIT_THREAD_RE.search(s) or REDDIT_SHORT_RE.search(s)
    if m:
        return m.group(1).lower()
    m = REDDIT_ID_RE.match(s)
    if m:
        return m.group(1).lower()
    return None


def parse_bluesky_uri(id_or_url: str) -> Optional[str]:
    """Return the ``at://<handle-or-did>/app.bsky.feed.post/<rkey>`` URI of a post."""
    s = (id_or_url or "").strip()
    if not s:
        return None
    if BLUESKY_AT_URI_RE.match(s):
        return s
    m = BLUESKY_URL_RE.search(s)
    if m:
        return f"at://{m.group(1)}/app.bsky.feed.post/{m.group(2)}"
    # "handle.bsky.social/<rkey>" without the /post/ segment
    parts = [p for p in s.split("/") if p]
    if len(parts) == 2 and ".bsky." in parts[0] and len(parts[1]) > 10:
        return f"at://{parts[0]}/app.bsky.feed.post/{parts[1]}"
    return None


def parse_hackernews_id(id_or_url: str) -> Optional[str]:
    s = (id_or_url or "").strip()
    if s.isdigit():
        return str(int(s))
    m = HN_ITEM_RE.search(s)
    if m:
        return str(int(m.group(1)))
    return None


def _is_tweet_id(value: str) -> bool:
    # snowflakes are 13-19 digits
    return value.isdigit() and 13 <= len(value) <= 19


def parse_tweet_id(id_or_url: str) -> Optional[str]:
    s = (id_or_url or "").strip()
    if not s:
        return None
    if s.isdigit():
        return s if _is_tweet_id(s) else None
    if "://" not in s:
        s = f"https://{s}"
    parsed = urllib.parse.urlparse(s)
    host = (parsed.hostname or "").lower()
    if host.startswith("www.") or host.startswith("mobile."):
        host = host.split(".", 1)[1]
    if host not in ("twitter.com", "x.com"):
        return None
    segments = [p for p in parsed.path.split("/") if p]
    if len(segments) >= 3 and segments[1].lower() == "status":
        return segments[2] if _is_tweet_id(segments[2]) else None
    return None


def parse_youtube_id(id_or_url: str) -> Optional[str]:
    """Video id from watch, youtu.be, live, shorts or embed links (or a bare id)."""
    s = (id_or_url or "").strip()
    if not s:
        return None
    if YOUTUBE_ID_RE.match(s):
        return s
    parsed = urllib.parse.urlparse(s if "://" in s else f"https://{s}")
    host = (parsed.hostname or "").lower()
    segments = [p for p in parsed.path.split("/") if p]
    candidate = None
    if host == "youtu.be":
        candidate = segments[0] if segments else None
    elif host == "youtube.com" or host.endswith(".youtube.com"):
        if segments[:1] == ["watch"]:
            candidate = (urllib.parse.parse_qs(parsed.query).get("v") or [None])[0]
        elif len(segments) >= 2 and segments[0] in YOUTUBE_PATH_PREFIXES:
            candidate = segments[1]
    if candidate and YOUTUBE_ID_RE.match(candidate):
        return candidate
    return None
