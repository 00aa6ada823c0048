# ========================================================
# ================  main.py  =============================
# ========================================================
from __future__ import annotations
import argparse
import asyncio
import json
import sys
from typing import Any, List, Optional

from config import DetectionConfig, load_config, parse_extras
from loggers import DEBUG_LOGGER
from manifests import looks_like_manifest
from models import ContextId, RankedCandidates
from pipeline import DetectionPipeline
from submanagers import HTTPSSubmanager


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="sideby-pass", description="Find and rank playable videos referenced by web pages.")
    sub = p.add_subparsers(dest="command", required=True)

    rp = sub.add_parser("replay", help="Feed a JSON-lines file of detector messages through the pipeline")
    rp.add_argument("file", help="JSON-lines file ('-' for stdin)")

    sp = sub.add_parser("scan", help="Fetch a page and rank the videos it references")
    sp.add_argument("url", help="Page URL")

    for q in (rp, sp):
        q.add_argument("--context", default=None, help="Context id to report (default: all / 0 for scan)")
        q.add_argument("--limit", type=int, default=None, help="Max candidates per context")
        q.add_argument("--extra", action="append", default=[], help="key=val (supports config.key=val, all.key=val)")
        q.add_argument("--json", action="store_true", help="Print JSON")
        q.add_argument("--verbose", action="store_true", help="Mirror debug log to stderr")
    return p


def _context_arg(raw: Optional[str]) -> Optional[ContextId]:
    if raw is None:
        return None
    s = raw.strip()
    return int(s) if s.lstrip("-").isdigit() else s


def _read_lines(path: str) -> List[str]:
    if path == "-":
        return sys.stdin.read().splitlines()
    with open(path, "r", encoding="utf-8") as f:
        return f.read().splitlines()


def _print_ranked(results: List[RankedCandidates], as_json: bool) -> None:
    if as_json:
        print(json.dumps([r.to_dict() for r in results], indent=2, ensure_ascii=False))
        return
    for r in results:
        print(f"# context {r.context_id}: {len(r.items)} candidate(s)")
        for v in r.items:
            quality = v.quality or "-"
            print(f"{v.score:>4}  {v.source:<14} {quality:<6} {v.url}")


async def _replay(cfg: DetectionConfig, lines: List[str], context: Optional[ContextId],
                  limit: Optional[int]) -> List[RankedCandidates]:
    async with HTTPSSubmanager.from_config(cfg) as http:
        pipe = DetectionPipeline(cfg, http=http)
        for n, line in enumerate(lines, 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                data: Any = json.loads(line)
            except ValueError as e:
                DEBUG_LOGGER.log_message(f"[Replay] line {n}: invalid JSON ({e})")
                continue
            pipe.dispatch_dict(data)
            # let scheduled manifest fetches start in arrival order
            await asyncio.sleep(0)
        await pipe.drain()
        contexts = [context] if context is not None else pipe.registry.contexts()
        return [pipe.query(c, limit=limit) for c in contexts]


async def _scan(cfg: DetectionConfig, url: str, context: ContextId,
                limit: Optional[int]) -> Optional[RankedCandidates]:
    async with HTTPSSubmanager.from_config(cfg) as http:
        html = await http.get_text(url)
        if not html:
            return None
        pipe = DetectionPipeline(cfg, http=http)
        pipe.scan_html(context, html, url)
        for u in pipe.registry.urls(context):
            if looks_like_manifest(u):
                pipe.hls.schedule(context, u)
        await pipe.drain()
        return pipe.query(context, limit=limit)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        extras = parse_extras(args.extra)
    except Exception as e:
        parser.error(f"Failed to parse --extra: {e}")
        return 2

    if args.verbose:
        DEBUG_LOGGER.attach_stream(sys.stderr)

    cfg = load_config(extras)
    context = _context_arg(args.context)

    try:
        if args.command == "replay":
            try:
                lines = _read_lines(args.file)
            except OSError as e:
                print(f"Error: cannot read {args.file}: {e}", file=sys.stderr); return 1
            results = asyncio.run(_replay(cfg, lines, context, args.limit))
        else:
            ranked = asyncio.run(_scan(cfg, args.url, 0 if context is None else context, args.limit))
            if ranked is None:
                print(f"Error: could not fetch {args.url}", file=sys.stderr); return 1
            results = [ranked]
        _print_ranked(results, args.json)
        return 0
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        print(f"Unexpected error in '{args.command}': {e}", file=sys.stderr); return 1
    finally:
        if args.verbose:
            DEBUG_LOGGER.detach_stream(sys.stderr)


if __name__ == "__main__":

    raise SystemExit(main())
