"""
Recollect CLI - administration of a memory store.

Usage:
    python -m recollect [--json] [--storage-path PATH] <command>

    python -m recollect consolidate [--dry-run] [--threshold T] [--max N] [--no-llm] [--skip-guards]
    python -m recollect undo <memory_id>
    python -m recollect history [--limit N]
    python -m recollect stats [--threshold T]
    python -m recollect enrich [--force] [--limit N] [--batch-size N]
    python -m recollect communities
    python -m recollect centrality
    python -m recollect proximity [--min-cooccurrence N] [--dry-run]
    python -m recollect cleanup [--dry-run] [--prune-threshold T] [--orphan-threshold T] [--skip-enrich] ...
    python -m recollect lock [--force-release]

Global Options:
    --json              Output as JSON for automation/scripting
    --storage-path PATH Storage directory (sets RECOLLECT_STORAGE_PATH)
"""

import sys
import asyncio
import argparse
import json
from typing import Any, Dict

from .config import settings
from .daemon import KnowledgeDaemon
from .lock import FileLock
from .logging_config import setup_logging


def safe_print(text: str, file=None) -> None:
    """Print text safely, handling Unicode encoding errors on Windows."""
    output = file or sys.stdout
    try:
        print(text, file=output)
    except UnicodeEncodeError:
        encoding = output.encoding or 'utf-8'
        safe_text = text.encode(encoding, errors='replace').decode(encoding, errors='replace')
        print(safe_text, file=output)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="recollect",
        description="Memory consolidation and knowledge graph maintenance"
    )
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    parser.add_argument("--storage-path", help="Storage directory (default: .recollect/storage)")
    parser.add_argument("--log-level", default=None, help="Logging level (default from settings)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    consolidate_parser = subparsers.add_parser("consolidate", help="Merge or remove redundant memories")
    consolidate_parser.add_argument("--dry-run", action="store_true", help="Report without changing anything")
    consolidate_parser.add_argument("--threshold", type=float, help="Minimum similarity")
    consolidate_parser.add_argument("--max", type=int, dest="max_candidates", help="Maximum candidate pairs")
    consolidate_parser.add_argument("--no-llm", action="store_true", help="Link instead of merging")
    consolidate_parser.add_argument("--skip-guards", action="store_true", help="Ignore corpus size and age guards")

    undo_parser = subparsers.add_parser("undo", help="Restore the memories a consolidation replaced")
    undo_parser.add_argument("memory_id", type=int, help="Surviving or merged memory id")

    history_parser = subparsers.add_parser("history", help="Recent consolidations")
    history_parser.add_argument("--limit", type=int, default=20)

    stats_parser = subparsers.add_parser("stats", help="Consolidation potential and graph statistics")
    stats_parser.add_argument("--threshold", type=float, help="Minimum similarity")

    enrich_parser = subparsers.add_parser("enrich", help="Classify similar_to links with the LLM")
    enrich_parser.add_argument("--force", action="store_true", help="Re-classify already enriched links")
    enrich_parser.add_argument("--limit", type=int, help="Maximum links to process")
    enrich_parser.add_argument("--batch-size", type=int, help="Links per LLM call")

    subparsers.add_parser("communities", help="Detect communities and update community tags")
    subparsers.add_parser("centrality", help="Rebuild the centrality cache")

    proximity_parser = subparsers.add_parser("proximity", help="Link memories that share contexts")
    proximity_parser.add_argument("--min-cooccurrence", type=int, help="Shared contexts required")
    proximity_parser.add_argument("--dry-run", action="store_true")

    cleanup_parser = subparsers.add_parser("cleanup", help="Run the graph maintenance pipeline")
    cleanup_parser.add_argument("--dry-run", action="store_true")
    cleanup_parser.add_argument("--prune-threshold", type=float)
    cleanup_parser.add_argument("--orphan-threshold", type=float)
    cleanup_parser.add_argument("--orphan-max-links", type=int)
    cleanup_parser.add_argument("--skip-enrich", action="store_true")
    cleanup_parser.add_argument("--skip-orphans", action="store_true")
    cleanup_parser.add_argument("--skip-finalize", action="store_true")

    lock_parser = subparsers.add_parser("lock", help="Show or clear the store lock")
    lock_parser.add_argument("--force-release", action="store_true", help="Delete the lock file")

    return parser


async def run_command(args: argparse.Namespace, storage_path: str) -> Any:
    """Run one daemon-backed command and return its result."""
    async with KnowledgeDaemon(storage_path=storage_path) as daemon:
        if args.command == "consolidate":
            return await daemon.consolidate(
                dry_run=args.dry_run,
                threshold=args.threshold,
                max_candidates=args.max_candidates,
                use_llm=False if args.no_llm else None,
                skip_guards=args.skip_guards
            )
        if args.command == "undo":
            return await daemon.undo_consolidation(args.memory_id)
        if args.command == "history":
            return await daemon.get_consolidation_history(args.limit)
        if args.command == "stats":
            stats = await daemon.get_consolidation_stats(args.threshold)
            stats["graph"] = await daemon.get_graph_stats()
            return stats
        if args.command == "enrich":
            return await daemon.enrich_existing_links(args.force, args.limit, args.batch_size)
        if args.command == "communities":
            return await daemon.detect_communities()
        if args.command == "centrality":
            return await daemon.update_centrality_cache()
        if args.command == "proximity":
            return await daemon.create_proximity_links(args.min_cooccurrence, args.dry_run)
        if args.command == "cleanup":
            progress = None if args.json else (lambda step, detail: safe_print(f"  [{step}] {detail}"))
            return await daemon.graph_cleanup(
                prune_threshold=args.prune_threshold,
                orphan_threshold=args.orphan_threshold,
                orphan_max_links=args.orphan_max_links,
                skip_enrich=args.skip_enrich,
                skip_orphans=args.skip_orphans,
                skip_finalize=args.skip_finalize,
                dry_run=args.dry_run,
                on_progress=progress
            )
    raise ValueError(f"Unknown command: {args.command}")


def print_result(command: str, result: Any) -> None:
    """Human-readable rendering of a command result."""
    if command == "consolidate":
        prefix = "[dry run] " if result["dry_run"] else ""
        approx = "~" if result.get("merged_is_estimate") else ""
        print(f"{prefix}Consolidation: {result['candidates_found']} candidates")
        print(f"  Merged: {approx}{result['merged']}")
        print(f"  Deleted duplicates: {result['deleted']}")
        print(f"  Kept (linked): {result['kept']}")
        print(f"  Skipped: {result['skipped']}")
    elif command == "undo":
        if result["restored"]:
            print(f"Restored {len(result['restored'])} memories: {', '.join(f'#{i}' for i in result['restored'])}")
        if result["deleted_merge"]:
            print(f"  Deleted merged memory #{result['merged_id']}")
    elif command == "history":
        if not result:
            print("No consolidation history found.")
        for entry in result:
            preview = entry["merged_content"][:80].replace("\n", " ")
            kind = "merge" if entry["synthetic"] else "duplicate"
            safe_print(f"  #{entry['merged_memory_id']} ({entry['merged_at']}, {kind})")
            print(f"    Supersedes: {', '.join(str(i) for i in entry['original_ids'])}")
            safe_print(f"    {preview}")
        if result:
            print("Use 'recollect undo <id>' to restore originals.")
    elif command == "stats":
        print(f"Memories: {result['total_memories']}")
        print(f"  Duplicate pairs: {result['duplicate_pairs']}")
        print(f"  Merge candidates: {result['merge_candidates']}")
        print(f"  Potential reduction: {result['potential_reduction']}")
        graph = result.get("graph", {})
        print(f"Links: {graph.get('total_links', 0)} ({graph.get('isolated_memories', 0)} isolated memories)")
        for relation, count in sorted(graph.get("relations", {}).items()):
            print(f"  {relation}: {count}")
    elif command == "enrich":
        print(f"Enriched {result['enriched']}, failed {result['failed']}, skipped {result['skipped']}")
    elif command == "communities":
        print(f"Detected {len(result['communities'])} communities "
              f"({result['isolated']} isolated, {result['iterations']} iterations)")
        for community in result["communities"][:10]:
            print(f"  community:{community['id']} - {community['size']} members")
    elif command == "centrality":
        print(f"Updated {result['updated']} centrality scores")
    elif command == "proximity":
        print(f"Proximity links: {result['created']} created, {result['skipped']} skipped "
              f"({result['total_pairs']} qualifying pairs)")
    elif command == "cleanup":
        estimated = set(result.get("estimated", []))

        def show(field: str) -> str:
            return f"~{result[field]}" if field in estimated else str(result[field])

        prefix = "[dry run] " if result["dry_run"] else ""
        print(f"{prefix}Graph cleanup:")
        print(f"  Pruned: {result['pruned']}")
        print(f"  Enriched: {show('enriched')}")
        print(f"  Orphans connected: {show('orphans_connected')}")
        print(f"  Communities: {result['communities_detected']}")
        print(f"  Centrality updated: {result['centrality_updated']}")

    for error in (result.get("errors", []) if isinstance(result, dict) else []):
        safe_print(f"  Error: {error}", file=sys.stderr)


def lock_command(args: argparse.Namespace, storage_path: str) -> Dict[str, Any]:
    lock = FileLock(settings.get_lock_path(storage_path), stale_seconds=settings.lock_stale_seconds)
    if args.force_release:
        return {"released": lock.force_release()}
    return lock.get_lock_status()


def main():
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.log_level or settings.log_level, settings.log_structured)
    storage_path = args.storage_path or settings.get_storage_path()

    if args.command == "lock":
        result = lock_command(args, storage_path)
        if args.json:
            print(json.dumps(result, default=str))
        elif "released" in result:
            print("Lock released" if result["released"] else "No lock file present")
        elif result["locked"]:
            info = result["info"] or {}
            print(f"Locked by pid {info.get('pid')} ({info.get('operation', 'unknown')})")
        else:
            print("Not locked")
        return

    try:
        result = asyncio.run(run_command(args, storage_path))
    except Exception as e:
        if args.json:
            print(json.dumps({"error": str(e)}))
        else:
            safe_print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(result, default=str))
    else:
        print_result(args.command, result)

    if isinstance(result, dict) and result.get("errors") and args.command == "undo":
        sys.exit(1)


if __name__ == "__main__":
    main()
