import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from .errors import FetchError, error_for_kind


PLATFORMS = ("reddit", "bluesky", "hackernews", "twitter", "youtube")


def utc_from_timestamp(ts: Any) -> Optional[datetime]:
    try:
        value = float(ts)
    except (TypeError, ValueError):
        return None
    if value <= 0:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def parse_iso_datetime(text: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware UTC datetime."""
    if not text or not isinstance(text, str):
        return None
    s = text.strip()
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


@dataclass
class ThreadReference:
    id_or_url: str
    platform: Optional[str] = None


@dataclass
class RawNode:
    id: str
    parent_id: Optional[str] = None
    author: str = "[deleted]"
    body: str = ""
    published_at: Optional[datetime] = None
    score: Optional[int] = None
    reply_ids: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CommentNode:
    id: str
    parent_id: Optional[str] = None
    author: str = "[deleted]"
    body: str = ""
    published_at: Optional[datetime] = None
    score: Optional[int] = None
    children: List["CommentNode"] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def iter_nodes(self) -> Iterator["CommentNode"]:
        """Depth-first, pre-order walk (self first)."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def count(self) -> int:
        return sum(1 for _ in self.iter_nodes())

    def find(self, node_id: str) -> Optional["CommentNode"]:
        for node in self.iter_nodes():
            if node.id == node_id:
                return node
        return None

    def to_dict(self) -> Dict[str, Any]:
        # iterative so very deep threads do not hit the recursion limit
        out = self._fields_dict()
        stack = [(self, out)]
        while stack:
            node, payload = stack.pop()
            for child in node.children:
                child_payload = child._fields_dict()
                payload["children"].append(child_payload)
                stack.append((child, child_payload))
        return out

    def _fields_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "author": self.author,
            "body": self.body,
            "published_at": _iso(self.published_at),
            "score": self.score,
            "metadata": dict(self.metadata),
            "children": [],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommentNode":
        root = cls._from_fields(data)
        stack = [(root, data)]
        while stack:
            node, payload = stack.pop()
            for child_payload in payload.get("children") or []:
                child = cls._from_fields(child_payload)
                node.children.append(child)
                stack.append((child, child_payload))
        return root

    @classmethod
    def _from_fields(cls, data: Dict[str, Any]) -> "CommentNode":
        score = data.get("score")
        return cls(
            id=str(data.get("id", "") or ""),
            parent_id=data.get("parent_id"),
            author=data.get("author", "[deleted]") or "[deleted]",
            body=data.get("body", "") or "",
            published_at=parse_iso_datetime(data.get("published_at")),
            score=int(score) if score is not None else None,
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class SkipRecord:
    node_id: str
    reason: str
    detail: str = ""


@dataclass
class ThreadResult:
    platform: str
    root: CommentNode
    total_nodes_processed: int = 0
    may_be_incomplete: bool = False
    incomplete_reason: Optional[str] = None
    skipped: List[SkipRecord] = field(default_factory=list)

    ok = True

    def to_dict(self) -> Dict[str, Any]:
        out = self.root.to_dict()
        out["platform"] = self.platform
        out["total_nodes_processed"] = self.total_nodes_processed
        out["may_be_incomplete"] = self.may_be_incomplete
        out["incomplete_reason"] = self.incomplete_reason
        out["skipped"] = [
            {"node_id": s.node_id, "reason": s.reason, "detail": s.detail} for s in self.skipped
        ]
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreadResult":
        return cls(
            platform=str(data.get("platform", "") or ""),
            root=CommentNode.from_dict(data),
            total_nodes_processed=int(data.get("total_nodes_processed", 0) or 0),
            may_be_incomplete=bool(data.get("may_be_incomplete", False)),
            incomplete_reason=data.get("incomplete_reason"),
            skipped=[
                SkipRecord(
                    node_id=str(s.get("node_id", "") or ""),
                    reason=str(s.get("reason", "") or ""),
                    detail=str(s.get("detail", "") or ""),
                )
                for s in data.get("skipped") or []
            ],
        )

    def to_json(self, **kwargs) -> str:
        kwargs.setdefault("ensure_ascii", False)
        return json.dumps(self.to_dict(), **kwargs)

    @classmethod
    def from_json(cls, text: str) -> "ThreadResult":
        return cls.from_dict(json.loads(text))


@dataclass
class ThreadFailure:
    """Returned instead of a ThreadResult when the thread could not be fetched at all."""

    platform: str
    thread_id: str
    kind: str
    message: str
    retry_after: Optional[float] = None

    ok = False

    def to_error(self) -> FetchError:
        return error_for_kind(self.kind, self.message, platform=self.platform, retry_after=self.retry_after)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "thread_id": self.thread_id,
            "error": self.kind,
            "message": self.message,
            "retry_after": self.retry_after,
        }


@dataclass
class AuthSession:
    access_token: str
    expires_at: Optional[float] = None  # epoch seconds; None = does not expire
    refresh_token: Optional[str] = None

    def is_expired(self, *, now: Optional[float] = None, margin: float = 0.0) -> bool:
        if self.expires_at is None:
            return False
        current = time.time() if now is None else now
        return current >= self.expires_at - margin


@dataclass(frozen=True)
class Credentials:
    platform: str
    client_id: str = ""
    client_secret: str = field(default="", repr=False)
    username: str = ""
    password: str = field(default="", repr=False)
    bearer_token: str = field(default="", repr=False)

    def key(self) -> tuple:
        return (
            self.platform,
            self.client_id,
            self.client_secret,
            self.username,
            self.password,
            self.bearer_token,
        )
