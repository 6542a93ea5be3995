"""CLI entrypoint."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from dotenv import load_dotenv as _load_dotenv

from placecache import config
from placecache.errors import PlaceCacheError, QuotaExhausted
from placecache.reporting import dumps, write_json
from placecache.service import PlaceCache


def _repo_root() -> Path:
    return Path(__file__).resolve().parent


def load_env(path: str = ".env", root_dir: Optional[Path] = None) -> None:
    """Optionally load a repo-root .env file without overriding real env vars."""
    root = Path(root_dir) if root_dir else _repo_root()
    env_path = (root / path).resolve()
    if not env_path.exists():
        return
    _load_dotenv(dotenv_path=env_path, override=False)


def _preferences(text: str) -> dict:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise argparse.ArgumentTypeError(f"--prefs is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise argparse.ArgumentTypeError("--prefs must be a JSON object")
    return data


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Geo-partitioned place cache")
    parser.add_argument("--cache-path", type=str, default=None, help="SQLite cache file")
    parser.add_argument("--config", type=str, default=None, help="cache_config.json path")
    parser.add_argument("--out", type=str, default=None, help="Also write the JSON result to this file")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("search", help="Partition-cached nearby search")
    p.add_argument("--lat", type=float, required=True)
    p.add_argument("--lng", type=float, required=True)
    p.add_argument("--radius", type=float, required=True, help="Radius in meters")
    p.add_argument("--category", type=str, default=None)
    p.add_argument("--keyword", type=str, default=None)

    p = sub.add_parser("details", help="Enrich places to rich records")
    p.add_argument("place_ids", nargs="+")

    p = sub.add_parser("resolve", help="Detail view with the owner overlay applied")
    p.add_argument("place_id")

    p = sub.add_parser("nearby", help="Cached places in the point's geohash cell")
    p.add_argument("--lat", type=float, required=True)
    p.add_argument("--lng", type=float, required=True)
    p.add_argument("--max", type=int, default=20)

    p = sub.add_parser("quota", help="Inspect or change a user's AI quota")
    p.add_argument("action", choices=["check", "reserve", "refund"])
    p.add_argument("user_id")

    p = sub.add_parser("score", help="AI match score for one place")
    p.add_argument("user_id")
    p.add_argument("place_id")
    p.add_argument("--prefs", type=_preferences, default={}, help="Preferences as a JSON object")

    p = sub.add_parser("score-batch", help="AI match scores for several places in one call")
    p.add_argument("user_id")
    p.add_argument("place_ids", nargs="+")
    p.add_argument("--prefs", type=_preferences, default={}, help="Preferences as a JSON object")

    return parser.parse_args(argv)


def dispatch(cache: PlaceCache, args: argparse.Namespace) -> Any:
    if args.command == "search":
        result = cache.search(args.lat, args.lng, args.radius, category=args.category, keyword=args.keyword)
        return {
            "partition_key": result.partition_key,
            "cache_hit": result.cache_hit,
            "served_from": result.served_from,
            "places": result.records,
        }
    if args.command == "details":
        return cache.enrich(args.place_ids)
    if args.command == "resolve":
        return cache.resolve_claimed(args.place_id)
    if args.command == "nearby":
        return cache.query_by_proximity(args.lat, args.lng, limit=args.max)
    if args.command == "quota":
        if args.action == "check":
            return cache.check_quota(args.user_id)
        if args.action == "reserve":
            return cache.reserve_quota(args.user_id)
        return cache.refund_quota(args.user_id)
    if args.command == "score":
        return cache.score(args.user_id, args.place_id, args.prefs)
    if args.command == "score-batch":
        return cache.score_batch(args.user_id, args.place_ids, args.prefs)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    load_env()
    args = parse_args(argv)
    config.load_cache_config(args.config)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    try:
        cache = PlaceCache.from_env(cache_path=args.cache_path)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2

    try:
        with cache:
            result = dispatch(cache, args)
            logging.getLogger("placecache").info("Requests: %s", cache.metrics_snapshot())
    except QuotaExhausted as exc:
        print(f"Quota exhausted: {exc}", file=sys.stderr)
        return 3
    except (PlaceCacheError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(dumps(result))
    if args.out:
        write_json(args.out, result)
        print(f"Written to {args.out}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
