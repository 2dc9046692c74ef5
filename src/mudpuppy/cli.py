"""mudpuppy memory CLI — add, search, inspect and index memories."""

import argparse
import json
import logging
import signal
import sys
import threading
import time

from mudpuppy.config import MemoryConfig
from mudpuppy.models import EntryType, SearchMode, SearchOptions
from mudpuppy.service import MemoryService

logger = logging.getLogger("mudpuppy.cli")


def _open_service(args) -> MemoryService:
    config = MemoryConfig.load(getattr(args, "home", None))
    if not config.enabled:
        print("Memory is disabled (memory.enabled=false in config.json)", file=sys.stderr)
        sys.exit(1)
    return MemoryService.from_config(config)


def _preview(text: str, width: int = 100) -> str:
    text = text.replace("\n", " ")
    return text if len(text) <= width else text[: width - 3] + "..."


def cmd_add(args):
    """Store a memory."""
    content = " ".join(args.content)
    if not content.strip():
        print("Usage: mudpuppy-memory add <text> [-t TYPE]", file=sys.stderr)
        sys.exit(1)

    with _open_service(args) as memory:
        result = memory.add(
            content,
            entry_type=args.type,
            source=args.source,
            context=args.context,
            confidence=args.confidence,
            importance=args.importance,
            tags=args.tag or [],
        )
    if args.json:
        print(json.dumps({"id": result.id, "created": result.created, "duplicate": result.duplicate}))
    elif result.duplicate:
        print(f"Already stored as #{result.id}")
    else:
        print(f"Stored #{result.id} [{args.type}]: {_preview(content, 80)}")


def cmd_search(args):
    """Search memories."""
    query_text = " ".join(args.query_text)
    if not query_text.strip():
        print("Usage: mudpuppy-memory search <text>", file=sys.stderr)
        sys.exit(1)

    start = time.monotonic()
    with _open_service(args) as memory:
        options = SearchOptions(
            query=query_text,
            mode=args.mode or memory.config.search_mode,
            limit=args.limit,
            entry_types=args.type or None,
            min_importance=args.min_importance,
            min_confidence=args.min_confidence,
            tags=args.tag or None,
        )
        results = memory.search(options, log_access=True)
    elapsed = time.monotonic() - start

    if args.json:
        print(json.dumps({"results": [r.to_dict() for r in results], "total": len(results)}, indent=2))
        return
    if not results:
        print(f'No results for "{query_text}" ({elapsed:.2f}s)')
        return
    for r in results:
        matched = "+".join(r.matched_by)
        print(f"{r.score:5.3f}  #{r.entry.id:<5} {r.entry.entry_type.value:<12} {matched:<14} {_preview(r.entry.content)}")
    print(f"\n{len(results)} result(s) ({elapsed:.2f}s)")


def cmd_get(args):
    """Show one memory."""
    with _open_service(args) as memory:
        entry = memory.get(args.id, log_access=True)
    if entry is None:
        print(f"Memory entry not found: {args.id}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(entry.to_dict(), indent=2))


def cmd_delete(args):
    """Delete one memory."""
    with _open_service(args) as memory:
        deleted = memory.delete(args.id)
    if not deleted:
        print(f"Memory entry not found: {args.id}", file=sys.stderr)
        sys.exit(1)
    print(f"Deleted #{args.id}")


def cmd_stats(args):
    """Show entry counts and averages."""
    with _open_service(args) as memory:
        stats = memory.stats()
    if args.json:
        print(json.dumps(stats.to_dict(), indent=2))
        return
    print(f"Entries:        {stats.total_entries}")
    for entry_type, count in sorted(stats.by_type.items(), key=lambda x: -x[1]):
        print(f"  {entry_type:<13} {count}")
    print(f"Avg importance: {stats.avg_importance:.2f}")
    print(f"Avg confidence: {stats.avg_confidence:.2f}")
    print(f"Total accesses: {stats.total_accesses}")


def cmd_scan(args):
    """Index workspace files once and exit."""
    with _open_service(args) as memory:
        count = memory.initial_scan()
        root = memory.indexer.root
    print(f"Indexed {count} file(s) from {root}")


def cmd_watch(args):
    """Index workspace files and keep watching until interrupted."""
    stop = threading.Event()

    def _handle_signal(signum, frame):
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    with _open_service(args) as memory:
        memory.reconcile()
        memory.start_indexer(interval=args.interval, skip_initial_scan=args.skip_initial_scan)
        if not memory.is_indexer_running():
            sys.exit(1)
        print(f"Watching {memory.indexer.root} (Ctrl-C to stop)", file=sys.stderr)
        stop.wait()
        memory.stop_indexer()


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="mudpuppy-memory",
        description="mudpuppy — long-lived memory store with hybrid search",
    )
    parser.add_argument("--home", help="Base directory (default: $MUDPUPPY_HOME or ~/.mudpuppy)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    entry_types = [t.value for t in EntryType]

    add_parser = subparsers.add_parser("add", help="Store a memory")
    add_parser.add_argument("content", nargs="+", help="Memory text")
    add_parser.add_argument("-t", "--type", choices=entry_types, default="fact")
    add_parser.add_argument("--source", default="manual")
    add_parser.add_argument("--context")
    add_parser.add_argument("--confidence", type=float, default=1.0, help="0-1 (default: 1.0)")
    add_parser.add_argument("--importance", type=int, default=5, help="1-10 (default: 5)")
    add_parser.add_argument("--tag", action="append", help="Tag (repeatable)")
    add_parser.add_argument("--json", action="store_true")

    search_parser = subparsers.add_parser("search", help="Search memories (hybrid, vector or keyword)")
    search_parser.add_argument("query_text", nargs="+", help="Search text")
    search_parser.add_argument("--mode", choices=[m.value for m in SearchMode])
    search_parser.add_argument("--limit", type=int, default=10, help="Max results (default: 10)")
    search_parser.add_argument("-t", "--type", action="append", choices=entry_types, help="Entry type filter")
    search_parser.add_argument("--min-importance", type=int)
    search_parser.add_argument("--min-confidence", type=float)
    search_parser.add_argument("--tag", action="append", help="Tag filter, any match (repeatable)")
    search_parser.add_argument("--json", action="store_true")

    get_parser = subparsers.add_parser("get", help="Show a memory by id")
    get_parser.add_argument("id", type=int)

    delete_parser = subparsers.add_parser("delete", help="Delete a memory by id")
    delete_parser.add_argument("id", type=int)

    stats_parser = subparsers.add_parser("stats", help="Show memory statistics")
    stats_parser.add_argument("--json", action="store_true")

    subparsers.add_parser("scan", help="Index workspace notes once")

    watch_parser = subparsers.add_parser("watch", help="Index workspace notes and watch for changes")
    watch_parser.add_argument("--interval", type=float, help="Polling interval in seconds (fallback mode)")
    watch_parser.add_argument("--skip-initial-scan", action="store_true")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING, stream=sys.stderr)

    commands = {
        "add": cmd_add,
        "search": cmd_search,
        "get": cmd_get,
        "delete": cmd_delete,
        "stats": cmd_stats,
        "scan": cmd_scan,
        "watch": cmd_watch,
    }

    if args.command in commands:
        commands[args.command](args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
