import os

try:
    from dotenv import load_dotenv  # type: ignore

    load_dotenv()
except ModuleNotFoundError:
    pass


def _env_bool(name: str, default: str = "") -> bool:
    return os.getenv(name, default).strip() in ("1", "true", "True", "yes", "YES")


# HTTP client
USER_AGENT = os.getenv("USER_AGENT", "comment-tree-crawler/0.1 (thread aggregation)")
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "30.0"))
HTTP_MAX_CONNECTIONS = int(os.getenv("HTTP_MAX_CONNECTIONS", "100"))


# Platform endpoints
REDDIT_AUTH_URL = os.getenv("REDDIT_AUTH_URL", "https://www.reddit.com/api/v1/access_token")
REDDIT_API_URL = os.getenv("REDDIT_API_URL", "https://oauth.reddit.com")
REDDIT_WWW_URL = "https://www.reddit.com"

BLUESKY_PDS_URL = os.getenv("BLUESKY_PDS_URL", "https://bsky.social")
BLUESKY_WEB_URL = "https://bsky.app"

HACKERNEWS_API_URL = os.getenv("HACKERNEWS_API_URL", "https://hacker-news.firebaseio.com/v0")
HACKERNEWS_WEB_URL = "https://news.ycombinator.com"

TWITTER_API_URL = os.getenv("TWITTER_API_URL", "https://api.twitter.com")
TWITTER_WEB_URL = "https://x.com"

YOUTUBE_API_URL = os.getenv("YOUTUBE_API_URL", "https://youtube.googleapis.com/youtube/v3")
YOUTUBE_WEB_URL = "https://www.youtube.com"


# Retry / backoff (per request attempts, per fetch budgets)
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "5"))
BACKOFF_BASE_SECONDS = float(os.getenv("BACKOFF_BASE_SECONDS", "1.0"))
MAX_BACKOFF_SECONDS = float(os.getenv("MAX_BACKOFF_SECONDS", "60.0"))
RETRY_BUDGET = int(os.getenv("RETRY_BUDGET", "25"))
MAX_REQUESTS_PER_FETCH = int(os.getenv("MAX_REQUESTS_PER_FETCH", "5000"))

# Rate limiting (dispatch interval seconds, per fetch)
MIN_REQUEST_INTERVAL = float(os.getenv("MIN_REQUEST_INTERVAL", "0.0"))


# Fetch limits
FANOUT_CONCURRENCY = int(os.getenv("FANOUT_CONCURRENCY", "50"))
SEARCH_MAX_RESULTS = int(os.getenv("SEARCH_MAX_RESULTS", "2000"))
DEFAULT_MAX_NODES = int(os.getenv("DEFAULT_MAX_NODES", "0"))  # 0 = no ceiling
MORECHILDREN_BATCH_SIZE = int(os.getenv("MORECHILDREN_BATCH_SIZE", "100"))
BLUESKY_THREAD_DEPTH = int(os.getenv("BLUESKY_THREAD_DEPTH", "1000"))
EXPAND_MORE = not _env_bool("DISABLE_EXPAND_MORE")
EXPAND_YOUTUBE_REPLIES = not _env_bool("DISABLE_EXPAND_YOUTUBE_REPLIES")


# Auth sessions
TOKEN_EXPIRY_MARGIN = float(os.getenv("TOKEN_EXPIRY_MARGIN", "60"))
BLUESKY_SESSION_TTL = float(os.getenv("BLUESKY_SESSION_TTL", "7200"))


# Credentials (consumed for one session lifetime, never persisted)
REDDIT_CLIENT_ID = os.getenv("REDDIT_CLIENT_ID", "")
REDDIT_CLIENT_SECRET = os.getenv("REDDIT_CLIENT_SECRET", "")
BLUESKY_USERNAME = os.getenv("BLUESKY_USERNAME", "")
BLUESKY_APP_PASSWORD = os.getenv("BLUESKY_APP_PASSWORD", "")
TWITTER_BEARER_TOKEN = os.getenv("TWITTER_BEARER_TOKEN", "")
TWITTER_API_KEY = os.getenv("TWITTER_API_KEY", "")
TWITTER_API_SECRET = os.getenv("TWITTER_API_SECRET", "")
YOUTUBE_API_KEY = os.getenv("YOUTUBE_API_KEY", "")
