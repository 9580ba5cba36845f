from __future__ import annotations

import argparse
from collections.abc import Sequence

from fluxfilter.config import load_settings
from fluxfilter.repositories.database import Database
from fluxfilter.repositories.response_cache_repository import ResponseCacheRepository


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Inspect and sweep the Fluxfilter response cache.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sweep_parser = subparsers.add_parser(
        "sweep",
        help="Delete every cache entry whose key starts with a prefix.",
    )
    sweep_parser.add_argument(
        "--prefix",
        required=True,
        help="Cache key prefix (for example: bilibili:summary:).",
    )

    subparsers.add_parser("stats", help="Show cache entry counts per key namespace.")

    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    settings = load_settings()
    database = Database(settings.db_path)
    database.initialize()
    repository = ResponseCacheRepository(database)

    if args.command == "sweep":
        if not args.prefix.strip():
            raise SystemExit("Refusing to sweep with an empty prefix.")
        removed = repository.sweep(args.prefix)
        print(f"Removed {removed} cache entries with prefix: {args.prefix}")
        return

    if args.command == "stats":
        counts = repository.count_by_namespace()
        if not counts:
            print("Response cache is empty.")
            return
        print("namespace\tentries")
        for namespace, count in counts.items():
            print(f"{namespace}\t{count}")
        return

    raise RuntimeError(f"Unhandled command: {args.command}")


if __name__ == "__main__":
    main()
