#!/usr/bin/env python3
import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from tqdm import tqdm

# Allow running without installing the package
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from comment_tree_crawler.models import PLATFORMS, ThreadReference  # noqa: E402
from comment_tree_crawler.orchestrator import AggregationOrchestrator, Outcome  # noqa: E402


def parse_date(text: str) -> datetime:
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_args():
    p = argparse.ArgumentParser(description="Fetch discussion threads and write them as nested comment trees (JSON).")
    p.add_argument("refs", nargs="+", help="Thread URLs or ids (Reddit, Bluesky, Hacker News, Twitter/X, YouTube).")
    p.add_argument("--platform", type=str, default="", choices=("",) + PLATFORMS, help="Force the platform for bare ids.")
    p.add_argument("--max-nodes", type=int, default=0, help="Stop after this many replies (0=no limit).")
    p.add_argument("--from-date", type=parse_date, default=None, help="Twitter/X only: drop replies older than this ISO date.")
    p.add_argument("--out-dir", type=str, default="", help="Write one <platform>_<id>.json per thread here (default: stdout).")
    p.add_argument("--indent", type=int, default=2)
    return p.parse_args()


async def main():
    args = parse_args()

    def log(msg: str, level: str = "info"):
        prefix = {"info": "[*]", "success": "[+]", "warning": "[!]", "error": "[x]"}.get(level, "[*]")
        print(f"{prefix} {msg}", file=sys.stderr)

    refs: List[ThreadReference] = [ThreadReference(id_or_url=r, platform=args.platform or None) for r in args.refs]
    out_dir = Path(args.out_dir) if args.out_dir else None
    if out_dir:
        out_dir.mkdir(parents=True, exist_ok=True)

    failures = 0
    outcomes: List[Optional[Outcome]] = [None] * len(refs)
    async with AggregationOrchestrator(log_callback=log) as agg:

        async def run_one(i: int, ref: ThreadReference):
            return i, await agg.aggregate(ref, max_nodes=args.max_nodes or None, from_date=args.from_date)

        tasks = [run_one(i, r) for i, r in enumerate(refs)]
        for fut in tqdm(asyncio.as_completed(tasks), total=len(tasks), desc="threads", file=sys.stderr, leave=False):
            i, outcome = await fut
            outcomes[i] = outcome

    for ref, outcome in zip(refs, outcomes):
        payload = outcome.to_dict()
        if not outcome.ok:
            failures += 1
            log(f"{ref.id_or_url}: {outcome.kind}: {outcome.message}", "error")
        elif outcome.may_be_incomplete:
            log(f"{ref.id_or_url}: partial result ({outcome.incomplete_reason})", "warning")
        else:
            log(f"{ref.id_or_url}: {outcome.total_nodes_processed} replies", "success")

        text = json.dumps(payload, ensure_ascii=False, indent=args.indent)
        if out_dir:
            name = f"{payload.get('platform') or 'unknown'}_{payload.get('id') or payload.get('thread_id', 'thread')}"
            safe = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in name)[:120]
            (out_dir / f"{safe}.json").write_text(text, encoding="utf-8")
        else:
            print(text)

    if failures:
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
