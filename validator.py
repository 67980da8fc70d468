#!/usr/bin/env python3
"""
Validator: detect and repair corrupted files against a master copy.

Indexes a MASTER and a CURRENT directory tree by content fingerprint
(SHA-256), caches each index beside its tree, and reports every master file
that is missing from or differs in CURRENT. With --force, master files are
copied over the bad ones.

Cached indexes:
  <parent of MASTER>/_index.json    reused as-is once built
  <parent of CURRENT>/index.json    refreshed incrementally on every run

Use --help for full options and examples.
"""

import argparse
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

from common import (
    BENCHMARK_COUNT,
    CURRENT_INDEX_NAME,
    DEFAULT_WORKERS,
    MASTER_INDEX_NAME,
    Discrepancy,
    FileFailure,
    RepairFailure,
    SnapshotNotFoundError,
    SnapshotParseError,
    build_report,
    format_bytes,
    parse_exclude_extensions,
    setup_logging,
    sha256_fingerprint,
    write_report,
)
from file_index import FileIndex, FingerprintFn
from reconcile_cmd import reconcile


EXIT_OK = 0
EXIT_DISCREPANCIES = 1
EXIT_INVALID_ARGUMENTS = 2
EXIT_RESET_FAILED = 3


def get_index_path(target: Path, name: str) -> Path:
    """Cached index location: a sibling of the target directory."""
    return target.resolve().parent / name


def load_master_index(
    master_dir: Path,
    fingerprint_fn: FingerprintFn = sha256_fingerprint,
    use_cache: bool = True,
    exclude_exts: Optional[Set[str]] = None,
    workers: Optional[int] = DEFAULT_WORKERS,
) -> FileIndex:
    """Load the cached master index, building and caching it when absent."""
    index_path = get_index_path(master_dir, MASTER_INDEX_NAME)
    if use_cache:
        try:
            master = FileIndex.load(index_path, fingerprint_fn, exclude_exts=exclude_exts, workers=workers)
            if master.root == master_dir.resolve():
                logging.info(f"Loaded MASTER cache @ {index_path}")
                return master
            logging.info(f"MASTER cache @ {index_path} belongs to {master.root}; rebuilding")
        except (SnapshotNotFoundError, SnapshotParseError) as exc:
            logging.info(f"No usable MASTER cache ({exc}); building index")

    master = FileIndex(master_dir, fingerprint_fn, exclude_exts=exclude_exts, workers=workers)
    master.build()
    if use_cache:
        master.save(index_path)
        logging.info(f"Cached MASTER @ {index_path}")
    return master


def load_current_index(
    current_dir: Path,
    fingerprint_fn: FingerprintFn = sha256_fingerprint,
    use_cache: bool = True,
    exclude_exts: Optional[Set[str]] = None,
    workers: Optional[int] = DEFAULT_WORKERS,
) -> FileIndex:
    """Load and refresh the cached current index, building it when absent."""
    index_path = get_index_path(current_dir, CURRENT_INDEX_NAME)
    current: Optional[FileIndex] = None
    if use_cache:
        try:
            current = FileIndex.load(index_path, fingerprint_fn, exclude_exts=exclude_exts, workers=workers)
            if current.root == current_dir.resolve():
                logging.info(f"Loaded CURRENT cache @ {index_path}")
            else:
                logging.info(f"CURRENT cache @ {index_path} belongs to {current.root}; rebuilding")
                current = None
        except (SnapshotNotFoundError, SnapshotParseError) as exc:
            logging.info(f"No usable CURRENT cache ({exc}); building index")

    if current is None:
        current = FileIndex(current_dir, fingerprint_fn, exclude_exts=exclude_exts, workers=workers)
        current.build()
        if use_cache:
            current.save(index_path)
            logging.info(f"Cached CURRENT @ {index_path}")
        return current

    logging.info("Checking CURRENT cache for changes")
    updates = current.update()
    if updates > 0:
        current.save(index_path)
        logging.info(f"Updated CURRENT cache @ {index_path} ({updates} changes)")
    return current


def load_indexes(
    master_dir: Path,
    current_dir: Path,
    use_cache: bool = True,
    exclude_exts: Optional[Set[str]] = None,
    workers: Optional[int] = DEFAULT_WORKERS,
) -> List[FileIndex]:
    """Load master and current concurrently; returns [master, current]."""
    with ThreadPoolExecutor(max_workers=2) as executor:
        master_future = executor.submit(
            load_master_index, master_dir, sha256_fingerprint, use_cache, exclude_exts, workers
        )
        current_future = executor.submit(
            load_current_index, current_dir, sha256_fingerprint, use_cache, exclude_exts, workers
        )
        return [master_future.result(), current_future.result()]


def delete_index(target: Path, name: str) -> bool:
    """Remove a cached index; a missing index counts as removed."""
    index_path = get_index_path(target, name)
    try:
        index_path.unlink(missing_ok=True)
    except OSError as exc:
        logging.error(f"Encountered an error deleting index @ {index_path}: {exc}")
        return False
    logging.info(f"Removed cached index @ {index_path}")
    return True


def _report_items(items: Sequence[object]) -> List[Dict[str, object]]:
    return [{key: str(value) if isinstance(value, Path) else value for key, value in asdict(item).items()}
            for item in items]


def run_benchmark(
    master_dir: Path,
    current_dir: Path,
    passes: int = BENCHMARK_COUNT,
    exclude_exts: Optional[Set[str]] = None,
    workers: Optional[int] = DEFAULT_WORKERS,
) -> int:
    """Index both trees repeatedly without caches and log throughput. Files are not changed."""
    logging.info(f"Running {passes} benchmark passes")
    total_bytes = 0
    start = time.perf_counter()

    for i in range(passes):
        logging.info(f"\t{i + 1}/{passes}")
        master, current = load_indexes(master_dir, current_dir, False, exclude_exts, workers)
        total_bytes += master.last_stats.bytes_read + current.last_stats.bytes_read

    total_time = time.perf_counter() - start
    logging.info(f"Validated {format_bytes(total_bytes)} in {total_time:.2f}s")
    if passes and total_time > 0:
        rate = format_bytes(total_bytes / total_time)
        logging.info(f"Average cycle time {total_time / passes:.2f}s @ {rate}/s")
    return EXIT_OK


def run_validation(
    master_dir: Path,
    current_dir: Path,
    force: bool = False,
    use_cache: bool = True,
    report_path: Optional[Path] = None,
    exclude_exts: Optional[Set[str]] = None,
    workers: Optional[int] = DEFAULT_WORKERS,
) -> int:
    """Load both indexes, reconcile them and report. Returns a process exit code."""
    run_started = time.time()
    master, current = load_indexes(master_dir, current_dir, use_cache, exclude_exts, workers)

    discrepancies: List[Discrepancy] = []
    repair_failures: List[RepairFailure] = []
    errors = reconcile(master, current, repair=force,
                       discrepancies=discrepancies, repair_failures=repair_failures)
    index_failures: List[FileFailure] = master.failures + current.failures
    run_finished = time.time()
    total_time = run_finished - run_started

    bytes_read = master.last_stats.bytes_read + current.last_stats.bytes_read
    if errors == 0:
        if bytes_read > 0:
            logging.info(f"Validated {format_bytes(bytes_read)} in {total_time:.2f}s")
        else:
            logging.info(f"Validated CURRENT in {total_time:.2f}s")
    elif force:
        repaired = sum(1 for item in discrepancies if item.repaired)
        logging.warning(f"Found {errors} errors and fixed {repaired} in {total_time:.2f}s")
    else:
        logging.warning(f"Found {errors} errors in {total_time:.2f}s")

    for failure in repair_failures:
        logging.error(f"Repair failed: {failure.relative_path}: {failure.error}")
    for failure in index_failures:
        logging.error(f"Could not index {failure.path} ({failure.kind}): {failure.error}")

    if report_path is not None:
        stats = {
            "master_entries": len(master),
            "current_entries": len(current),
            "discrepancies": errors,
            "repaired": sum(1 for item in discrepancies if item.repaired),
            "repair_failures": len(repair_failures),
            "index_failures": len(index_failures),
            "bytes_read": bytes_read,
        }
        report = build_report(
            master=master.root,
            current=current.root,
            stats=stats,
            run_started=run_started,
            run_finished=run_finished,
            mode="repair" if force else "validate",
            details={
                "discrepancies": _report_items(discrepancies),
                "repair_failures": _report_items(repair_failures),
                "index_failures": _report_items(index_failures),
            },
        )
        write_report(report, report_path)

    unrepaired = any(not item.repaired for item in discrepancies)
    if unrepaired or repair_failures or index_failures:
        return EXIT_DISCREPANCIES
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Validate a CURRENT directory against a MASTER directory by content hash, '
                    'optionally overwriting corrupted files with master copies.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python validator.py /path/to/master /path/to/current
  python validator.py /path/to/master /path/to/current --force
  python validator.py /path/to/master /path/to/current --reset
  python validator.py /path/to/master /path/to/current --benchmark --benchmark-passes 3

Exit codes:
  0   No discrepancies (or all repaired).
  1   Discrepancies remain, or files could not be indexed or repaired.
  2   Invalid arguments, or MASTER or CURRENT is not a directory.
  3   Cached indexes could not be reset.
        """,
    )
    parser.add_argument(
        'master',
        type=Path,
        help='Directory containing the reference files',
    )
    parser.add_argument(
        'current',
        type=Path,
        help='Directory to validate against the master',
    )
    parser.add_argument(
        '-f', '--force',
        action='store_true',
        help='Overwrite corrupted or missing files with master copies. Files ARE changed',
    )
    parser.add_argument(
        '-r', '--reset',
        action='store_true',
        help='Delete the cached MASTER and CURRENT indexes before running',
    )
    parser.add_argument(
        '-b', '--benchmark',
        action='store_true',
        help='Repeatedly index both trees without caches and report throughput. Files are NOT changed',
    )
    parser.add_argument(
        '--benchmark-passes',
        type=int,
        default=BENCHMARK_COUNT,
        help=f'Number of benchmark passes (default: {BENCHMARK_COUNT})',
    )
    parser.add_argument(
        '--no-cache',
        action='store_true',
        help='Neither read nor write cached indexes',
    )
    parser.add_argument(
        '--exclude-ext',
        action='append',
        default=[],
        help='Extensions to exclude (e.g. .tmp,.log). Comma-separated or repeatable.',
    )
    parser.add_argument(
        '--workers',
        type=int,
        default=DEFAULT_WORKERS,
        help='Maximum parallel fingerprinting threads (default: thread pool default)',
    )
    parser.add_argument(
        '--report',
        type=Path,
        help='Write a JSON report to this path',
    )
    parser.add_argument(
        '--log',
        type=Path,
        help='Write log output to this file',
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose (debug) logging',
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the script."""
    args = build_parser().parse_args(argv)

    setup_logging(args.log, args.verbose)

    master_dir = args.master.resolve()
    current_dir = args.current.resolve()
    for label, directory in (("MASTER", master_dir), ("CURRENT", current_dir)):
        if not directory.is_dir():
            logging.error(f"Invalid {label} directory specified [{directory}]: "
                          f"it does not exist or is not a directory")
            return EXIT_INVALID_ARGUMENTS

    if args.workers is not None and args.workers < 1:
        logging.error("--workers must be at least 1")
        return EXIT_INVALID_ARGUMENTS

    exclude_exts = parse_exclude_extensions(args.exclude_ext)

    if args.reset:
        if not (delete_index(master_dir, MASTER_INDEX_NAME) and delete_index(current_dir, CURRENT_INDEX_NAME)):
            return EXIT_RESET_FAILED

    try:
        if args.benchmark:
            return run_benchmark(master_dir, current_dir, args.benchmark_passes, exclude_exts, args.workers)

        return run_validation(
            master_dir,
            current_dir,
            force=args.force,
            use_cache=not args.no_cache,
            report_path=args.report,
            exclude_exts=exclude_exts,
            workers=args.workers,
        )
    except OSError as exc:
        logging.error(str(exc))
        return EXIT_DISCREPANCIES


if __name__ == "__main__":
    sys.exit(main())
