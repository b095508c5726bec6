"""
`codekb` command-line interface.

Builds, queries and watches the structural index of a project.

Commands
--------
codekb scan                           -- incremental scan of the project
codekb scan --watch                   -- scan, then keep watching for changes
codekb watch                          -- watch for changes (scans first)
codekb status [--json]                -- show index statistics
codekb repair                         -- replay interrupted file replacements
codekb reset                          -- drop every stored node, edge and vector
codekb query callers         <function_name>
codekb query callees         <function_name>
codekb query importers       <file_path>
codekb query impact          <file_path>
codekb query symbol          <name>
codekb query implementations <interface_name>
codekb search "<query>" [--top-k 10] [--filter language=python]
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from typing import Optional

from tqdm import tqdm

from .config import Config
from .local.indexer import Indexer

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_indexer(args: argparse.Namespace) -> Indexer:
    project_root = os.path.abspath(args.root)
    config = Config.load(args.config, project_root=project_root)
    return Indexer(project_root, config)


def _require_index(indexer: Indexer) -> None:
    """Exit with an informative message if the project has not been scanned."""
    if not indexer.is_indexed():
        print("No index found. Run `codekb scan` first.", file=sys.stderr)
        sys.exit(1)


def _print_results(results: list[dict], title: str) -> None:
    """Pretty-print a list of node summary dicts."""
    if not results:
        print(f"  (no results for: {title})")
        return
    print(f"\n{title}  [{len(results)} result(s)]")
    print("-" * 60)
    for r in results:
        ntype = r.get("node_type", "")
        name = r.get("name", "")
        fpath = r.get("file_path", "")
        ls = r.get("line_start", 0)
        le = r.get("line_end", 0)
        parent = r.get("parent_name")
        location = f"{fpath}:{ls}-{le}" if ls else fpath
        label = f"{ntype:<10}  {name}"
        if parent:
            label += f"  (in {parent})"
        if r.get("speculative"):
            label += "  [unresolved]"
        print(f"  {label:<50}  {location}")


def _print_paths(paths: list[str], title: str) -> None:
    if not paths:
        print(f"  (no results for: {title})")
        return
    print(f"\n{title}  [{len(paths)} file(s)]")
    print("-" * 60)
    for fp in paths:
        print(f"  {fp}")


def _print_scan(result, elapsed: float) -> None:
    s = result.stats
    print(
        f"\nScan complete:\n"
        f"  Files:      {s.files_scanned} scanned, {s.files_failed} failed\n"
        f"  Nodes:      +{s.nodes_added} ~{s.nodes_updated} -{s.nodes_deleted}\n"
        f"  Edges:      +{s.edges_added} -{s.edges_deleted}\n"
        f"  Embeddings: {s.embeddings_regenerated}/{s.documents_updated} "
        f"written, {s.embeddings_deleted} deleted\n"
        f"  Time:       {elapsed:.1f}s"
    )
    for path, error in sorted(result.failures.items()):
        print(f"  FAILED {path}: {error}", file=sys.stderr)


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------

def _cmd_scan(args: argparse.Namespace) -> None:
    """Scan the project, re-indexing only what changed."""
    indexer = _make_indexer(args)
    print(f"Scanning project: {indexer.project_root}")

    pbar = tqdm(total=None, unit="file", desc="Indexing")

    def _progress(current: int, total: int, filename: str) -> None:
        if pbar.total != total:
            pbar.total = total
            pbar.refresh()
        pbar.set_postfix_str(os.path.basename(filename), refresh=False)
        pbar.update(1)

    t0 = time.perf_counter()
    try:
        result = indexer.scan(progress_callback=_progress)
    finally:
        pbar.close()
    _print_scan(result, time.perf_counter() - t0)

    if getattr(args, "watch", False):
        _watch(indexer)
    elif not result.ok:
        sys.exit(1)


def _cmd_watch(args: argparse.Namespace) -> None:
    """Scan once, then watch the project for changes."""
    indexer = _make_indexer(args)
    result = indexer.scan()
    print(f"Initial scan: {len(result.changes)} change(s), {len(result.failures)} failure(s)")
    _watch(indexer)


def _watch(indexer: Indexer) -> None:
    from .local.watcher import CodeWatcher

    watcher = CodeWatcher(indexer, debounce_seconds=indexer.config.WATCH_DEBOUNCE_SECONDS)
    watcher.start()
    print("\nWatching for changes... (Ctrl+C to stop)")
    try:
        while watcher.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        watcher.stop()
        indexer.close()
    print("\nFile watcher stopped.")


def _cmd_status(args: argparse.Namespace) -> None:
    """Print index statistics."""
    indexer = _make_indexer(args)
    status = indexer.status()
    if args.json:
        print(json.dumps(status, indent=2))
        return
    if status["last_scan"] is None:
        print("No index found. Run `codekb scan` first.")
        return

    graph = status["graph"]
    last = status["last_scan"]
    print("\nCode Index Status")
    print("=" * 40)
    print(f"  {'project':<22} {status['project_root']}")
    print(f"  {'last_scan':<22} {last.get('last_scan')}")
    print(f"  {'files':<22} {status['files']}")
    print(f"  {'nodes':<22} {graph['node_count']}")
    for ntype, count in sorted(graph["nodes_by_type"].items()):
        print(f"    {ntype:<20} {count}")
    print(f"  {'edges':<22} {graph['edge_count']}")
    for etype, count in sorted(graph["edges_by_type"].items()):
        print(f"    {etype:<20} {count}")
    print(f"  {'vectors':<22} {status['vectors']}")
    print(f"  {'embedding_provider':<22} {status['embedding_provider']}")
    if status["pending_replacements"]:
        print(f"  {'pending_replacements':<22} {status['pending_replacements']}"
              "  (run `codekb repair`)")
    print()


def _cmd_repair(args: argparse.Namespace) -> None:
    """Replay file replacements left behind by an interrupted scan."""
    indexer = _make_indexer(args)
    t0 = time.perf_counter()
    result = indexer.repair()
    if not result.changes:
        print("Nothing to repair.")
        return
    _print_scan(result, time.perf_counter() - t0)
    if not result.ok:
        sys.exit(1)


def _cmd_reset(args: argparse.Namespace) -> None:
    """Drop the whole index."""
    indexer = _make_indexer(args)
    indexer.reset()
    print(f"Index cleared: {indexer.project_root}")


def _cmd_query(args: argparse.Namespace) -> None:
    """Dispatch graph query subcommands."""
    indexer = _make_indexer(args)
    _require_index(indexer)
    graph = indexer.load_graph()

    query_cmd = args.query_cmd
    name = args.name
    t0 = time.perf_counter()

    if query_cmd == "callers":
        _print_results(graph.find_callers(name), f"Callers of '{name}'")
    elif query_cmd == "callees":
        _print_results(graph.find_callees(name), f"Callees of '{name}'")
    elif query_cmd == "importers":
        _print_paths(graph.who_imports(name), f"Files importing '{name}'")
    elif query_cmd == "impact":
        _print_paths(graph.impact_analysis(name), f"Files affected by changes to '{name}'")
    elif query_cmd == "symbol":
        _print_results(graph.find_symbol(name), f"Symbol '{name}'")
    elif query_cmd == "implementations":
        _print_results(graph.find_implementations(name), f"Implementations of '{name}'")
    else:
        print(f"Unknown query command: {query_cmd}", file=sys.stderr)
        sys.exit(1)

    elapsed_ms = (time.perf_counter() - t0) * 1000
    print(f"\n  Query time: {elapsed_ms:.1f}ms")


def _cmd_search(args: argparse.Namespace) -> None:
    """Semantic search over the embedded nodes."""
    indexer = _make_indexer(args)
    _require_index(indexer)

    filters: Optional[dict] = None
    if args.filter:
        try:
            key, val = args.filter.split("=", 1)
            filters = {key.strip(): val.strip()}
        except ValueError:
            print(
                f"Invalid --filter format '{args.filter}'. "
                "Use: --filter key=value  (e.g. --filter language=python)",
                file=sys.stderr,
            )
            sys.exit(1)

    t0 = time.perf_counter()
    try:
        results = indexer.search(args.query, top_k=args.top_k, filters=filters)
    except Exception as exc:
        print(f"Search failed: {exc}", file=sys.stderr)
        sys.exit(1)
    elapsed_ms = (time.perf_counter() - t0) * 1000

    if not results:
        print(f"No results found for: {args.query!r}")
        return

    print(f"\nSearch results for: {args.query!r}  [{len(results)} result(s)]")
    print("-" * 70)
    for i, r in enumerate(results, 1):
        p = r["payload"]
        print(f"\n  [{i}] {p.get('type', '')}: {p.get('title', '')}")
        print(f"       File   : {p.get('file', '')}:{p.get('start_line', 0)}-{p.get('end_line', 0)}")
        print(f"       Score  : {r['score']:.4f}")
        if p.get("signature"):
            print(f"       Sig    : {p['signature']}")
        if p.get("summary"):
            print(f"       Summary: {p['summary']}")

    print(f"\n  Search time: {elapsed_ms:.1f}ms")


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    """Build and return the `codekb` argument parser."""
    parser = argparse.ArgumentParser(
        prog="codekb",
        description="codekb: structural code index with incremental updates",
    )
    parser.add_argument(
        "--root", default=".",
        help="Project root directory (default: current directory)",
    )
    parser.add_argument(
        "--config", default=None,
        help="Path to a .codekb.yaml file",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Log progress at INFO level",
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    # --- scan ---
    scan_p = subparsers.add_parser("scan", help="Incrementally scan the project")
    scan_p.add_argument(
        "--watch", action="store_true",
        help="After scanning, keep watching for changes",
    )
    scan_p.set_defaults(func=_cmd_scan)

    # --- watch ---
    watch_p = subparsers.add_parser("watch", help="Watch the project and rescan changes")
    watch_p.set_defaults(func=_cmd_watch)

    # --- status ---
    status_p = subparsers.add_parser("status", help="Show index statistics")
    status_p.add_argument("--json", action="store_true", help="Print as JSON")
    status_p.set_defaults(func=_cmd_status)

    # --- repair ---
    repair_p = subparsers.add_parser(
        "repair", help="Replay file replacements interrupted by a crash",
    )
    repair_p.set_defaults(func=_cmd_repair)

    # --- reset ---
    reset_p = subparsers.add_parser("reset", help="Delete all indexed data")
    reset_p.set_defaults(func=_cmd_reset)

    # --- query ---
    query_p = subparsers.add_parser("query", help="Query the code graph")
    query_sub = query_p.add_subparsers(dest="query_cmd", metavar="QUERY")
    query_sub.required = True
    query_p.set_defaults(func=_cmd_query)

    for qname, qhelp in [
        ("callers",         "List all functions that call FUNCTION_NAME"),
        ("callees",         "List all functions called by FUNCTION_NAME"),
        ("importers",       "List files that import FILE_PATH"),
        ("impact",          "List files affected if FILE_PATH changes"),
        ("symbol",          "Find any symbol by name"),
        ("implementations", "List classes implementing INTERFACE_NAME"),
    ]:
        qp = query_sub.add_parser(qname, help=qhelp)
        qp.add_argument("name", help="Target name to look up")

    # --- search ---
    search_p = subparsers.add_parser("search", help="Semantic search over embedded code")
    search_p.add_argument("query", help="Natural-language search query")
    search_p.add_argument(
        "--top-k", dest="top_k", type=int, default=10,
        help="Number of results to return (default: 10)",
    )
    search_p.add_argument(
        "--filter", dest="filter", default=None, metavar="KEY=VALUE",
        help="Payload filter, e.g. --filter language=python or --filter type=class",
    )
    search_p.set_defaults(func=_cmd_search)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> None:
    """
    Main entry point for the `codekb` command.

    Parameters
    ----------
    argv:
        Argument list without the program name. Defaults to sys.argv.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    # Configure logging if not already configured
    if not logging.root.handlers:
        logging.basicConfig(
            level=logging.INFO if args.verbose else logging.WARNING,
            format="%(levelname)s  %(name)s  %(message)s",
        )

    args.func(args)


if __name__ == "__main__":
    main()
