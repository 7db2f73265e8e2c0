"""
Command-line interface for cortex-memory.

Sub-commands
------------
archive    – Archive a session transcript (alias: save).
add        – Store a piece of text as one memory.
search     – Search memories for a query (alias: recall).
stats      – Print store and project statistics.
setup      – Create the data directory and verify the embedding model.
configure  – Apply a configuration preset.
test-embed – Check that the embedding model works.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from datetime import datetime

from .archive import ArchiveAborted, ArchiveResult
from .config import PRESETS, Settings, apply_preset, load_config, project_id_for
from .embeddings import ProviderUnavailable
from .memory import MemoryManager
from .search import SearchResult
from .store import StoreError

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cortex",
        description="Persistent hybrid-search memory for coding-assistant sessions.",
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        metavar="PATH",
        help="Data directory holding memory.db and config.json (default: ~/.cortex).",
    )
    parser.add_argument(
        "--project",
        default=None,
        metavar="NAME",
        help="Project scope (default: name of the current directory).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log progress to stderr.")

    sub = parser.add_subparsers(dest="command", required=True)

    # archive
    p_archive = sub.add_parser("archive", aliases=["save"], help="Archive a session transcript.")
    p_archive.add_argument("transcript", help="Path to a JSONL transcript.")
    p_archive.add_argument(
        "--global",
        action="store_true",
        dest="as_global",
        help="Store fragments without a project scope.",
    )

    # add
    p_add = sub.add_parser("add", help="Store text as a single memory.")
    p_add.add_argument("text", nargs="?", help="Text to store (reads stdin if omitted).")
    p_add.add_argument("--global", action="store_true", dest="as_global", help="No project scope.")

    # search
    p_search = sub.add_parser("search", aliases=["recall"], help="Search memories.")
    p_search.add_argument("query", nargs="+", help="Natural-language query.")
    p_search.add_argument(
        "--all",
        "--global",
        action="store_true",
        dest="include_all",
        help="Search across all projects.",
    )
    p_search.add_argument(
        "-n",
        type=int,
        default=None,
        metavar="N",
        help="Number of results to return (default: 5).",
    )
    p_search.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # stats
    p_stats = sub.add_parser("stats", help="Print memory statistics.")
    p_stats.add_argument("--json", action="store_true", dest="as_json", help="Output as JSON.")

    # setup
    sub.add_parser("setup", help="Initialise the data directory and embedding model.")

    # configure
    p_configure = sub.add_parser("configure", help="Apply a configuration preset.")
    p_configure.add_argument("preset", choices=sorted(PRESETS), help="Preset name.")

    # test-embed
    p_embed = sub.add_parser("test-embed", help="Check the embedding model.")
    p_embed.add_argument("text", nargs="?", default="hello world", help="Sample text.")

    return parser


def _configure_logging(settings: Settings, verbose: bool) -> None:
    level = logging.INFO if verbose else getattr(logging, settings.log_level.upper(), logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def format_archive_result(result: ArchiveResult, heading: str = "Archive Complete") -> str:
    return "\n".join(
        [
            heading,
            "-" * len(heading),
            f"Archived:   {result.archived} fragments",
            f"Skipped:    {result.skipped} (too short/noise)",
            f"Duplicates: {result.duplicates} (already stored)",
        ]
    )


def format_search_results(results: list[SearchResult]) -> str:
    if not results:
        return "No memories found."
    lines: list[str] = []
    for i, r in enumerate(results, 1):
        lines.append(f"[{i}] (score={r.score:.4f}, {r.source}, {r.timestamp:%Y-%m-%d})")
        lines.append(f"    {r.content[:200]}")
        lines.append(f"    id={r.id} project={r.project_id or 'global'}")
        lines.append("")
    return "\n".join(lines).rstrip()


def _date(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_archive(manager: MemoryManager, args: argparse.Namespace, project_id: str | None) -> int:
    project_id = None if args.as_global else project_id
    scope = f" to {project_id}" if project_id else " (global)"
    print(f"[Cortex] Archiving session{scope}...")

    reported = False

    def progress(done: int, total: int) -> None:
        nonlocal reported
        reported = True
        print(f"\r[Cortex] Embedding {done}/{total}...", end="", file=sys.stderr, flush=True)

    try:
        result = manager.archive_session(
            args.transcript, project_id=project_id, on_progress=progress
        )
    finally:
        if reported:
            print(file=sys.stderr)
    print(format_archive_result(result))
    return 0


def _cmd_add(manager: MemoryManager, args: argparse.Namespace, project_id: str | None) -> int:
    text = args.text
    if text is None:
        text = sys.stdin.read()
    if not text.strip():
        print("Error: no text provided.", file=sys.stderr)
        return 1
    inserted = manager.add(text, project_id=None if args.as_global else project_id)
    if inserted.is_duplicate:
        print(f"Already stored as memory {inserted.id}.")
    else:
        print(f"Stored memory {inserted.id}.")
    return 0


def _cmd_search(manager: MemoryManager, args: argparse.Namespace, project_id: str | None) -> int:
    query = " ".join(args.query)
    results = manager.search(
        query,
        project_id=project_id,
        include_all_projects=args.include_all,
        limit=args.n,
    )
    if args.as_json:
        print(json.dumps([r.to_dict() for r in results], indent=2))
    else:
        print(format_search_results(results))
    return 0


def _cmd_stats(manager: MemoryManager, args: argparse.Namespace, project_id: str | None) -> int:
    stats = manager.stats()
    project = manager.project_stats(project_id) if project_id else None

    if args.as_json:
        payload = {
            "fragment_count": stats.fragment_count,
            "project_count": stats.project_count,
            "session_count": stats.session_count,
            "db_size_bytes": stats.db_size_bytes,
            "oldest_timestamp": _date(stats.oldest_timestamp),
            "newest_timestamp": _date(stats.newest_timestamp),
            "model": manager.provider.model_name,
        }
        if project is not None:
            payload["project"] = {
                "id": project_id,
                "fragment_count": project.fragment_count,
                "session_count": project.session_count,
                "last_archive": _date(project.last_archive),
            }
        print(json.dumps(payload, indent=2))
        return 0

    lines = [
        "Cortex Memory Stats",
        "-------------------",
        f"  Fragments: {stats.fragment_count}",
        f"  Projects:  {stats.project_count}",
        f"  Sessions:  {stats.session_count}",
        f"  DB Size:   {format_bytes(stats.db_size_bytes)}",
        f"  Model:     {manager.provider.model_name}",
    ]
    if stats.oldest_timestamp:
        lines.append(f"  Oldest:    {stats.oldest_timestamp:%Y-%m-%d}")
    if stats.newest_timestamp:
        lines.append(f"  Newest:    {stats.newest_timestamp:%Y-%m-%d}")
    if project is not None:
        lines += [
            "",
            f"Project: {project_id}",
            f"  Fragments: {project.fragment_count}",
            f"  Sessions:  {project.session_count}",
        ]
        if project.last_archive:
            lines.append(f"  Last Save: {project.last_archive:%Y-%m-%d %H:%M}")
    print("\n".join(lines))
    return 0


def _cmd_verify(manager: MemoryManager, heading: str, sample: str = "test") -> int:
    print(heading)
    status = manager.verify(sample)
    if not status.success:
        print(f"  ✗ Model failed: {status.error}")
        return 1
    print(f"  ✓ Model loaded: {status.model} ({status.dimensions}d)")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    settings = Settings(data_dir=args.data_dir) if args.data_dir else Settings()
    _configure_logging(settings, args.verbose)

    if args.command == "configure":
        config = apply_preset(args.preset, settings.config_path)
        print(f'[Cortex] Applied "{args.preset}" preset')
        print(f"  Auto-archive:   {'enabled' if config.archive.auto_on_compact else 'disabled'}")
        print(f"  Min length:     {config.archive.min_content_length}")
        return 0

    config = load_config(settings.config_path)
    project_id = args.project
    if project_id is None and config.archive.project_scope:
        project_id = project_id_for(os.getcwd())

    manager: MemoryManager | None = None
    try:
        manager = MemoryManager(settings=settings, config=config)
        if args.command in ("archive", "save"):
            return _cmd_archive(manager, args, project_id)
        if args.command == "add":
            return _cmd_add(manager, args, project_id)
        if args.command in ("search", "recall"):
            return _cmd_search(manager, args, project_id)
        if args.command == "stats":
            return _cmd_stats(manager, args, project_id)
        if args.command == "setup":
            print(f"  ✓ Data directory: {settings.data_dir}")
            print(f"  ✓ Database: {settings.db_path}")
            return _cmd_verify(manager, "[Cortex] Loading embedding model...")
        if args.command == "test-embed":
            return _cmd_verify(manager, f'[Cortex] Testing embedding for: "{args.text}"', args.text)
    except ArchiveAborted as exc:
        print(f"[Cortex Error] {exc}", file=sys.stderr)
        print(format_archive_result(exc.result, "Archive Aborted"))
        return 1
    except (StoreError, ProviderUnavailable) as exc:
        print(f"[Cortex Error] {exc}", file=sys.stderr)
        return 1
    finally:
        if manager is not None:
            manager.close()

    parser.error(f"unknown command {args.command!r}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
