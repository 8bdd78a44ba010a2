"""
Command line entry point.

    fuzzyindex index [--full] [--volumes]
    fuzzyindex search QUERY [--limit N] [--sort KEY] [--reverse]
    fuzzyindex serve
"""

import argparse
import asyncio
import logging
import sys

from .config import EngineConfig
from .engine import Engine
from .models import DEFAULT_SORT_DIRECTIONS, SortDirection, SortKey


logger = logging.getLogger(__name__)

SETTLE_SECONDS = 0.3


def _print_results(results) -> None:
    for match in results:
        print(match.path)


async def _index(config: EngineConfig, full: bool, volumes: bool) -> int:
    engine = Engine(config)
    try:
        config.ensure_ignore_file()
        store = engine.store
        scopes = store.enabled_local_scopes() if full else store.stale_scopes()
        stats = await engine.orchestrator.index_files(scopes, pause_search=False)
        print(stats)

        if volumes:
            engine.volumes.refresh_volumes()
            targets = engine.volumes.enabled_volumes if full else engine.volumes.stale_volumes()
            for result in await engine.volumes.index_volumes(targets):
                state = "ok" if result.success else "failed"
                print(f"{result.scope.label}: {state} ({result.line_count} paths)")
        return 1 if stats.scopes_failed else 0
    finally:
        await engine.cleanup()


async def _search(engine: Engine, text: str):
    await engine.set_query(text)
    await asyncio.sleep(SETTLE_SECONDS)
    return await engine.router.fetch_results()


async def _search_once(config: EngineConfig, query: str, sort: SortKey, reverse: bool) -> int:
    engine = Engine(config)
    try:
        await engine.start()
        if not await engine.wait_ready():
            logger.error("Matcher did not become ready")
            return 1

        await _search(engine, query)
        direction = DEFAULT_SORT_DIRECTIONS[sort]
        if reverse:
            direction = (
                SortDirection.ASCENDING if direction == SortDirection.DESCENDING
                else SortDirection.DESCENDING
            )
        _print_results(engine.set_sort(sort, direction))
        return 0
    finally:
        await engine.cleanup()


async def _serve(config: EngineConfig) -> int:
    """Answer one query per stdin line until EOF."""
    engine = Engine(config)
    loop = asyncio.get_running_loop()
    try:
        await engine.start()
        await engine.wait_ready()
        print("Ready. One query per line; :refresh, :reindex or EOF to stop.", file=sys.stderr)

        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            text = line.rstrip("\n")

            if text == ":refresh":
                await engine.refresh(full_reindex=False)
                continue
            if text == ":reindex":
                await engine.refresh(full_reindex=True)
                continue

            _print_results(await _search(engine, text))
            print()
            sys.stdout.flush()
        return 0
    finally:
        await engine.cleanup()


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Incremental fuzzy file search")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    sub = parser.add_subparsers(dest="command", required=True)

    index_parser = sub.add_parser("index", help="Build or refresh the corpus files")
    index_parser.add_argument("--full", action="store_true", help="Reindex every scope")
    index_parser.add_argument("--volumes", action="store_true", help="Index mounted volumes too")

    search_parser = sub.add_parser("search", help="Run one query and print the matches")
    search_parser.add_argument("query", help="Query in fzf syntax")
    search_parser.add_argument("--limit", type=int, help="Maximum number of results")
    search_parser.add_argument(
        "--sort",
        choices=[k.value for k in SortKey],
        default=SortKey.RELEVANCE.value,
        help="Sort field",
    )
    search_parser.add_argument("--reverse", action="store_true", help="Reverse the sort direction")

    sub.add_parser("serve", help="Keep the engine running, reading queries from stdin")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s"
    )

    config = EngineConfig.from_env()

    try:
        if args.command == "index":
            code = asyncio.run(_index(config, args.full, args.volumes))
        elif args.command == "search":
            if args.limit:
                config.max_results = args.limit
            code = asyncio.run(_search_once(config, args.query, SortKey(args.sort), args.reverse))
        else:
            code = asyncio.run(_serve(config))
    except KeyboardInterrupt:
        print("\nStopped.")
        code = 130

    sys.exit(code)


if __name__ == "__main__":
    main()
