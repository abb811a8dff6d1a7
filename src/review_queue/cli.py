"""CLI entry point and subcommand definitions."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

from review_queue.cache import FetchError, ResponseCache, clear_cache, open_memory_store, open_store
from review_queue.config import (
    ConfigError,
    describe_policy,
    load_and_resolve_config,
    write_default_config,
)
from review_queue.credentials import get_token, prompt_for_token
from review_queue.fetch import DEFAULT_REFRESH_TIMEOUT, refresh_with_reauth
from review_queue.github import AuthError
from review_queue.output import format_detail, print_table, result_to_json

if TYPE_CHECKING:
    from review_queue.config import Config
    from review_queue.fetch import RefreshResult

logger = logging.getLogger(__name__)


def _fail(message: str) -> NoReturn:
    print(message, file=sys.stderr)
    sys.exit(1)


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        msg = f"invalid int value: {value!r}"
        raise argparse.ArgumentTypeError(msg) from None
    if number <= 0:
        msg = f"must be a positive number of seconds, got {number}"
        raise argparse.ArgumentTypeError(msg)
    return number


def _load_config(args: argparse.Namespace) -> Config:
    try:
        return load_and_resolve_config(args.config)
    except ConfigError as e:
        print("Invalid configuration:", file=sys.stderr)
        for problem in e.problems:
            print(f"  {problem}", file=sys.stderr)
        sys.exit(1)


def _resolve_token() -> str:
    try:
        return get_token()
    except AuthError as e:
        logger.warning("%s", e)
    return prompt_for_token()


def _open_cache(args: argparse.Namespace) -> ResponseCache:
    store = open_memory_store() if args.no_cache else open_store()
    return ResponseCache.open(store)


def _report(result: RefreshResult) -> None:
    for warning in result.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    for error in result.errors:
        print(f"error: {error}", file=sys.stderr)
    if result.timed_out:
        print("Refresh timed out; showing partial results.", file=sys.stderr)


async def _refresh_once(
    args: argparse.Namespace,
    config: Config,
    cache: ResponseCache,
    token: str,
    *,
    manual: bool,
) -> tuple[RefreshResult, str]:
    queries = config.queries
    if getattr(args, "query", None):
        try:
            queries = (config.query(args.query),)
        except KeyError as e:
            _fail(str(e.args[0]))
    return await refresh_with_reauth(
        token,
        cache,
        queries,
        bypass_memory=manual,
        timeout=args.timeout,
    )


def _run_refresh(args: argparse.Namespace) -> RefreshResult:
    config = _load_config(args)
    token = _resolve_token()
    cache = _open_cache(args)
    try:
        result, _token = asyncio.run(_refresh_once(args, config, cache, token, manual=True))
    except (AuthError, FetchError) as e:
        _fail(f"Error: {e}")
    finally:
        cache.store.close()
    return result


def _cmd_ls(args: argparse.Namespace) -> None:
    """List open PRs ranked by score."""
    result = _run_refresh(args)
    if args.json:
        print(result_to_json(result))
        return
    _report(result)
    if not result.ranked:
        print("No pull requests to review.")
        return
    print_table(result.ranked)


def _cmd_show(args: argparse.Namespace) -> None:
    """Show one PR with its score breakdown."""
    ref: str = args.ref
    if "#" not in ref and not ref.startswith("https://"):
        _fail(f"Invalid ref format: {ref}. Expected owner/repo#number")
    result = _run_refresh(args)
    _report(result)
    for item in result.ranked:
        if item.pr.short_ref.lower() == ref.lower() or item.pr.url == ref:
            print("\n".join(format_detail(item)))
            return
    _fail(f"{ref} is not in any configured query.")


def _cmd_watch(args: argparse.Namespace) -> None:
    """Refresh and print the list every auto_refresh_interval seconds."""
    config = _load_config(args)
    interval: int = args.interval or config.auto_refresh_interval
    token = _resolve_token()
    cache = _open_cache(args)

    async def _loop() -> None:
        nonlocal token
        manual = True
        while True:
            try:
                result, token = await _refresh_once(args, config, cache, token, manual=manual)
            except FetchError as e:
                print(f"error: {e}", file=sys.stderr)
            else:
                _report(result)
                print_table(result.ranked)
                print()
            manual = False
            await asyncio.sleep(interval)

    try:
        asyncio.run(_loop())
    except KeyboardInterrupt:
        pass
    except AuthError as e:
        _fail(f"Error: {e}")
    finally:
        cache.store.close()


def _cmd_config(args: argparse.Namespace) -> None:
    """Print the resolved policy of every query."""
    config = _load_config(args)
    print(f"Config: {config.path}")
    print(f"auto_refresh_interval: {config.auto_refresh_interval}")
    for query in config.queries:
        print()
        print(f"{query.name}: {query.query}")
        for line in describe_policy(query.policy):
            print(f"  {line}")


def _cmd_init(args: argparse.Namespace) -> None:
    """Write a starter config.yaml."""
    try:
        path = write_default_config(args.config, force=args.force)
    except ConfigError as e:
        _fail(str(e))
    print(f"Wrote {path}")


def _cmd_clear_cache(_args: argparse.Namespace) -> None:
    """Delete every persisted HTTP response."""
    removed = clear_cache()
    print(f"Cleared {removed} cached response(s).")


def main(argv: list[str] | None = None) -> None:
    """Parse arguments and dispatch to the appropriate subcommand."""
    parser = argparse.ArgumentParser(
        prog="review-queue",
        description="Rank the GitHub pull requests waiting for your review",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument(
        "--no-cache", action="store_true", help="Do not read or write the on-disk HTTP cache"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_REFRESH_TIMEOUT,
        help=f"Seconds allowed for one refresh (default: {DEFAULT_REFRESH_TIMEOUT:g})",
    )
    subparsers = parser.add_subparsers(dest="command")

    # ls
    ls_parser = subparsers.add_parser("ls", help="List PRs ranked by score")
    ls_parser.add_argument("--json", action="store_true", help="Output as JSON")
    ls_parser.add_argument("--query", help="Only run the query with this name")

    # show
    show_parser = subparsers.add_parser("show", help="Show a PR's score breakdown")
    show_parser.add_argument("ref", help="PR ref (owner/repo#number) or URL")

    # watch
    watch_parser = subparsers.add_parser("watch", help="Refresh the list periodically")
    watch_parser.add_argument(
        "--interval", type=_positive_int, help="Seconds between refreshes (default: from config)"
    )
    watch_parser.add_argument("--query", help="Only run the query with this name")

    # config
    subparsers.add_parser("config", help="Print the resolved scoring policy per query")

    # init
    init_parser = subparsers.add_parser("init", help="Write a starter config file")
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")

    # clear-cache
    subparsers.add_parser("clear-cache", help="Delete the persisted HTTP cache")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return

    dispatch = {
        "ls": _cmd_ls,
        "show": _cmd_show,
        "watch": _cmd_watch,
        "config": _cmd_config,
        "init": _cmd_init,
        "clear-cache": _cmd_clear_cache,
    }
    dispatch[args.command](args)
