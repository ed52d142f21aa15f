from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from .models import CommentNode, RawNode, SkipRecord


_EPOCH_MIN = datetime.min.replace(tzinfo=timezone.utc)


def _child_sort_key(node: CommentNode):
    return (node.published_at or _EPOCH_MIN, node.id)


@dataclass
class BuildOutcome:
    root: CommentNode
    node_count: int = 0  # attached nodes, root excluded
    skipped: List[SkipRecord] = field(default_factory=list)
    adopted: List[str] = field(default_factory=list)
    cycles_broken: List[str] = field(default_factory=list)


def _as_utc(value) -> Optional[datetime]:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_comment_node(raw: RawNode, *, parent_id: Optional[str] = None) -> CommentNode:
    score = raw.score
    return CommentNode(
        id=str(raw.id),
        parent_id=parent_id,
        author=str(raw.author or "[deleted]"),
        body=str(raw.body or ""),
        published_at=_as_utc(raw.published_at),
        score=int(score) if score is not None else None,
        metadata=dict(raw.metadata or {}),
    )


class TreeBuilder:
    """
    Rebuild a comment hierarchy from a flat (or partially nested) node list.

    - nodes whose parent is missing, empty or unknown are attached to the root
    - every node on a parent cycle is re-attached to the root
    - malformed nodes are skipped and reported, never raised
    - children are ordered by (published_at, id) at every level
    """

    def __init__(self, log_callback=None):
        self._log = log_callback or (lambda msg, lvl="info": None)

    def build(self, root: RawNode, nodes: Iterable[RawNode]) -> BuildOutcome:
        root_node = to_comment_node(root, parent_id=None)
        root_id = root_node.id
        outcome = BuildOutcome(root=root_node)

        lookup: Dict[str, CommentNode] = {root_id: root_node}
        declared: Dict[str, Optional[str]] = {}
        order: List[str] = []

        # pass 1: validate and create canonical nodes
        for raw in nodes:
            node_id = getattr(raw, "id", None)
            if not isinstance(raw, RawNode):
                outcome.skipped.append(SkipRecord(node_id=str(node_id or ""), reason="malformed", detail="not a RawNode"))
                continue
            if not isinstance(node_id, str) or not node_id:
                outcome.skipped.append(SkipRecord(node_id="", reason="malformed", detail="missing id"))
                continue
            if node_id == root_id:
                outcome.skipped.append(SkipRecord(node_id=node_id, reason="duplicate_root", detail="id equals the root id"))
                continue
            if node_id in lookup:
                outcome.skipped.append(SkipRecord(node_id=node_id, reason="duplicate", detail="id seen twice"))
                continue
            try:
                lookup[node_id] = to_comment_node(raw)
            except (TypeError, ValueError) as e:
                outcome.skipped.append(SkipRecord(node_id=node_id, reason="malformed", detail=str(e)))
                continue
            parent_id = raw.parent_id
            declared[node_id] = str(parent_id) if parent_id not in (None, "") else None
            order.append(node_id)

        # pass 2: resolve parents (orphans and self-parents go to the root)
        parent_of: Dict[str, str] = {}
        for node_id in order:
            parent_id = declared[node_id]
            if parent_id is None:
                parent_of[node_id] = root_id
            elif parent_id == node_id:
                parent_of[node_id] = root_id
                outcome.cycles_broken.append(node_id)
            elif parent_id not in lookup:
                parent_of[node_id] = root_id
                outcome.adopted.append(node_id)
            else:
                parent_of[node_id] = parent_id

        # pass 3: break cycles by walking each ancestor chain once
        done = {root_id}
        for start in order:
            if start in done:
                continue
            path: List[str] = []
            on_path = set()
            current = start
            while current not in done and current not in on_path:
                path.append(current)
                on_path.add(current)
                current = parent_of[current]
            if current in on_path:
                cycle = path[path.index(current):]
                for member in cycle:
                    parent_of[member] = root_id
                    outcome.cycles_broken.append(member)
                self._log(f"broke parent cycle {' -> '.join(cycle)}; re-attached to root", "warning")
            done.update(path)

        # pass 4: attach in input order, then sort every level
        for node_id in order:
            node = lookup[node_id]
            parent_id = parent_of[node_id]
            node.parent_id = parent_id
            lookup[parent_id].children.append(node)
        outcome.node_count = len(order)

        stack = [root_node]
        while stack:
            node = stack.pop()
            node.children.sort(key=_child_sort_key)
            stack.extend(node.children)

        if outcome.adopted:
            sample = ", ".join(outcome.adopted[:5])
            self._log(f"adopted {len(outcome.adopted)} orphan node(s) to root: {sample}", "warning")
        if outcome.skipped:
            self._log(f"skipped {len(outcome.skipped)} malformed node(s) while building tree", "warning")
        return outcome
