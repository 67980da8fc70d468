"""
Shared code for the validator: constants, types, errors, directory walking,
fingerprinting and reporting.
"""

import hashlib
import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterable, List, Optional, Set, Tuple


MASTER_INDEX_NAME = "_index.json"
CURRENT_INDEX_NAME = "index.json"
SNAPSHOT_FORMAT = 1
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024
DEFAULT_WORKERS = None  # ThreadPoolExecutor default
PROGRESS_EVERY = 1000
BENCHMARK_COUNT = 10


class ValidatorError(Exception):
    """Base class for validator errors."""


class SnapshotNotFoundError(ValidatorError, FileNotFoundError):
    """The index snapshot file does not exist."""


class SnapshotParseError(ValidatorError, ValueError):
    """The index snapshot exists but could not be decoded."""


@dataclass
class FileFailure:
    """A file that could not be fingerprinted during a pass."""
    relative_path: str
    path: Path
    kind: str  # "io" or "fingerprint"
    error: str


@dataclass
class PassStats:
    """Counters for a single build or update pass."""
    scanned: int = 0
    excluded: int = 0
    fingerprinted: int = 0
    unchanged: int = 0
    removed: int = 0
    errors: int = 0
    bytes_read: int = 0


@dataclass
class Discrepancy:
    """A master file whose counterpart in the current tree is missing or differs."""
    relative_path: str
    source: Path
    destination: Path
    reason: str  # "missing" or "mismatch"
    repaired: bool = False


@dataclass
class RepairFailure:
    """A discrepancy that could not be repaired by copying."""
    relative_path: str
    source: Path
    destination: Path
    error: str


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> None:
    """Configure logging to file and console."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def parse_exclude_extensions(exclude_args: List[str]) -> Set[str]:
    """Normalize exclude extensions into a set of lowercase suffixes."""
    extensions: Set[str] = set()
    for item in exclude_args:
        for part in item.split(','):
            ext = part.strip().lower()
            if not ext:
                continue
            if not ext.startswith('.'):
                ext = f".{ext}"
            extensions.add(ext)
    return extensions


def walk_tree(
    root: Path,
    on_error: Optional[Callable[[Path, OSError], None]] = None,
) -> Iterable[Tuple[Path, List[Path]]]:
    """Yield (directory, regular files directly inside it) for root and below.

    Each directory is scanned once and symlinks are not followed. An explicit
    stack keeps deep trees off the call stack. An unreadable root raises;
    unreadable subdirectories and entries are logged, passed to on_error and
    skipped.
    """
    stack = [root]
    while stack:
        current = stack.pop()
        files: List[Path] = []
        try:
            with os.scandir(current) as entries:
                for entry in entries:
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            stack.append(Path(entry.path))
                        elif entry.is_file(follow_symlinks=False):
                            files.append(Path(entry.path))
                    except OSError as exc:
                        logging.warning(f"Skipping entry {entry.path}: {exc}")
                        if on_error:
                            on_error(Path(entry.path), exc)
        except OSError as exc:
            if current == root:
                raise
            logging.warning(f"Skipping directory {current}: {exc}")
            if on_error:
                on_error(current, exc)
            continue
        yield current, files


def sha256_fingerprint(handle: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Compute the SHA-256 hex digest of an open binary file."""
    hasher = hashlib.sha256()
    for chunk in iter(lambda: handle.read(chunk_size), b''):
        hasher.update(chunk)
    return hasher.hexdigest()


def format_bytes(count: float) -> str:
    """Render a byte count with a binary unit suffix."""
    for unit, scale in (("TB", 1024 ** 4), ("GB", 1024 ** 3), ("MB", 1024 ** 2), ("KB", 1024)):
        if count / scale >= 1:
            return f"{count / scale:.2f}{unit}"
    return f"{int(count)}B"


def build_report(
    master: Path,
    current: Path,
    stats: Dict[str, int],
    run_started: float,
    run_finished: float,
    mode: str,
    details: Optional[Dict[str, object]],
) -> Dict[str, object]:
    """Build JSON-compatible report."""
    report: Dict[str, object] = {
        "run_started": datetime.fromtimestamp(run_started).isoformat(),
        "run_finished": datetime.fromtimestamp(run_finished).isoformat(),
        "duration_seconds": round(run_finished - run_started, 3),
        "master": str(master),
        "current": str(current),
        "mode": mode,
        "stats": stats,
    }
    if details:
        report.update(details)
    return report


def write_report(report: Dict[str, object], report_path: Path) -> None:
    """Write report to file."""
    report_json = json.dumps(report, indent=2, sort_keys=True)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(report_json, encoding='utf-8')
    logging.info(f"Report written to {report_path}")
