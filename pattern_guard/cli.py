"""
`pattern-guard` command-line interface.

Commands
--------
pattern-guard index                       -- warm start / full index of the project
pattern-guard index --watch               -- index, then follow file changes
pattern-guard status                      -- persisted index and pattern summary
pattern-guard evaluate <file>             -- findings for every chunk of a file
pattern-guard evaluate <file> --threshold 0.7
pattern-guard patterns                    -- active patterns, largest first
pattern-guard patterns --archived         -- include archived patterns
pattern-guard rebuild                     -- recompute all patterns from scratch
pattern-guard debt                        -- technical-debt report

Structured results are printed as JSON on stdout; logs go to
``<data_dir>/logs``.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Optional

from tqdm import tqdm

from .config import Config
from .engine import PatternGuard, embedder_signature
from .errors import StoreUnavailableError
from .log_setup import setup_logger
from .patterns.detector import LOW_CONFIDENCE

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _project_root(args: argparse.Namespace) -> str:
    """Return the project root (``--root`` or the current directory)."""
    return os.path.abspath(args.root or os.getcwd())


def _open_engine(args: argparse.Namespace, config: Config) -> PatternGuard:
    """Create the engine or exit with an informative message."""
    try:
        return PatternGuard(_project_root(args), config=config)
    except StoreUnavailableError as exc:
        print(f"State store unavailable: {exc}", file=sys.stderr)
        sys.exit(2)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def _start_with_progress(engine: PatternGuard) -> dict:
    """Warm start with a tqdm progress bar over the re-index phase."""
    pbar = tqdm(total=None, unit="file", desc="Indexing", file=sys.stderr)

    def _progress(current: int, total: int, filename: str) -> None:
        if pbar.total != total:
            pbar.total = total
            pbar.refresh()
        pbar.set_postfix_str(os.path.basename(filename), refresh=False)
        pbar.update(1)

    try:
        return engine.start(progress_callback=_progress)
    finally:
        pbar.close()


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------

def _cmd_index(args: argparse.Namespace, config: Config) -> None:
    """Index the project, optionally followed by a file watcher."""
    engine = _open_engine(args, config)
    print(f"Indexing project: {engine.project_root}", file=sys.stderr)
    try:
        summary = _start_with_progress(engine)
        _print_json(summary)

        if args.watch:
            print("\nStarting file watcher... (Ctrl+C to stop)", file=sys.stderr)
            from .index.watcher import KBWatcher
            watcher = KBWatcher(engine.handle_event, engine.project_root,
                                debounce_seconds=config.DEBOUNCE_SECONDS,
                                include=config.INCLUDE, exclude=config.EXCLUDE)
            try:
                watcher.start()  # blocking
            except KeyboardInterrupt:
                watcher.stop()
                print("\nFile watcher stopped.", file=sys.stderr)
    finally:
        engine.close()


def _cmd_status(args: argparse.Namespace, config: Config) -> None:
    """Summarise persisted state without re-indexing."""
    engine = _open_engine(args, config)
    try:
        engine.detector.load()
        everything = engine.patterns(include_archived=True)
        _print_json({
            "project_root": engine.project_root,
            "store": engine.store.stats(),
            "embedder": embedder_signature(engine.embedder),
            "stored_embedder": engine.store.get_meta("embedder_signature"),
            "patterns": {
                "active": sum(1 for p in everything if p.active),
                "archived": sum(1 for p in everything if p.archived),
            },
        })
    finally:
        engine.close()


def _cmd_evaluate(args: argparse.Namespace, config: Config) -> None:
    """Evaluate every chunk of a file against the pattern knowledge base."""
    engine = _open_engine(args, config)
    try:
        _start_with_progress(engine)
        if not os.path.isfile(args.file):
            print(f"No such file: {args.file}", file=sys.stderr)
            sys.exit(1)
        findings = engine.evaluate_file(os.path.abspath(args.file), threshold=args.threshold)
        _print_json([f.to_dict() for f in findings])
    finally:
        engine.close()


def _cmd_patterns(args: argparse.Namespace, config: Config) -> None:
    """List persisted patterns."""
    engine = _open_engine(args, config)
    try:
        engine.detector.load()
        _print_json([p.summary() for p in engine.patterns(include_archived=args.archived)])
    finally:
        engine.close()


def _cmd_rebuild(args: argparse.Namespace, config: Config) -> None:
    """Recompute every pattern from the current index."""
    engine = _open_engine(args, config)
    try:
        _start_with_progress(engine)
        updated = engine.rebuild_patterns()
        active = engine.patterns()
        _print_json({
            "updated": len(updated),
            "active": len(active),
            "patterns": [p.summary() for p in active],
        })
    finally:
        engine.close()


def _cmd_debt(args: argparse.Namespace, config: Config) -> None:
    """Print the technical-debt report (archived and weak patterns)."""
    engine = _open_engine(args, config)
    try:
        engine.detector.load()
        engine.detector.refresh_confidence()
        _print_json(engine.technical_debt_report(args.low_confidence))
    finally:
        engine.close()


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    """Build and return the `pattern-guard` argument parser."""
    parser = argparse.ArgumentParser(
        prog="pattern-guard",
        description="Detect drift from the architectural patterns already in a codebase",
    )
    parser.add_argument("--root", default=None, help="Project root (default: current directory)")
    parser.add_argument("--config", default=None, help="Path to a .pattern_guard.yaml file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log to stderr as well")
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    # --- index ---
    index_p = subparsers.add_parser("index", help="Index the project (warm start)")
    index_p.add_argument(
        "--watch", action="store_true",
        help="After indexing, start a file watcher for incremental updates",
    )
    index_p.set_defaults(func=_cmd_index)

    # --- status ---
    status_p = subparsers.add_parser("status", help="Show persisted index summary")
    status_p.set_defaults(func=_cmd_status)

    # --- evaluate ---
    eval_p = subparsers.add_parser("evaluate", help="Evaluate a file against known patterns")
    eval_p.add_argument("file", help="Source file to evaluate")
    eval_p.add_argument(
        "--threshold", type=float, default=None,
        help="Minimum similarity for a pattern match (default: match_threshold)",
    )
    eval_p.set_defaults(func=_cmd_evaluate)

    # --- patterns ---
    patterns_p = subparsers.add_parser("patterns", help="List detected patterns")
    patterns_p.add_argument("--archived", action="store_true", help="Include archived patterns")
    patterns_p.set_defaults(func=_cmd_patterns)

    # --- rebuild ---
    rebuild_p = subparsers.add_parser("rebuild", help="Recompute all patterns from scratch")
    rebuild_p.set_defaults(func=_cmd_rebuild)

    # --- debt ---
    debt_p = subparsers.add_parser("debt", help="Technical-debt report")
    debt_p.add_argument(
        "--low-confidence", type=float, default=LOW_CONFIDENCE,
        help=f"Patterns below this confidence are reported as weak (default: {LOW_CONFIDENCE})",
    )
    debt_p.set_defaults(func=_cmd_debt)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> None:
    """
    Main entry point for `pattern-guard`.

    Parameters
    ----------
    argv:
        Argument list; defaults to sys.argv if None.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    config = Config.load(args.config)
    setup_logger(config.data_path(_project_root(args), "logs"), verbose=args.verbose)
    logger.debug("[cli] Command: %s", args.command)

    args.func(args, config)


if __name__ == "__main__":
    main()
