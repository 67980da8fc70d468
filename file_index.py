"""
File index: map relative paths under a root to content fingerprints, refresh
only stale entries on re-scan, and persist the map as a JSON snapshot.
"""

import json
import logging
import os
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Any, BinaryIO, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Set, Tuple

from common import (
    DEFAULT_WORKERS,
    PROGRESS_EVERY,
    SNAPSHOT_FORMAT,
    FileFailure,
    PassStats,
    SnapshotNotFoundError,
    SnapshotParseError,
    walk_tree,
)


FingerprintFn = Callable[[BinaryIO], Any]
ProgressCallback = Callable[[int, Dict[str, int]], None]


@dataclass(frozen=True)
class IndexedEntry:
    """Fingerprint of one file, and when it was computed (UTC)."""
    relative_path: str
    fingerprint: Any
    indexed_at: datetime


@dataclass
class FingerprintResult:
    """Outcome of fingerprinting one file (for use in thread pool)."""
    relative_path: str
    path: Path
    fingerprint: Any = None
    indexed_at: Optional[datetime] = None
    size: int = 0
    kind: Optional[str] = None
    error: Optional[str] = None


def fingerprint_task(fingerprint_fn: FingerprintFn, path: Path, relative_path: str) -> FingerprintResult:
    """Open a file and fingerprint it, capturing any failure in the result."""
    try:
        handle = path.open('rb')
    except OSError as exc:
        return FingerprintResult(relative_path, path, kind="io", error=str(exc))

    with handle:
        try:
            fingerprint = fingerprint_fn(handle)
            size = os.fstat(handle.fileno()).st_size
        except OSError as exc:
            return FingerprintResult(relative_path, path, kind="io", error=str(exc))
        except Exception as exc:
            return FingerprintResult(
                relative_path, path, kind="fingerprint", error=f"{type(exc).__name__}: {exc}"
            )

    return FingerprintResult(
        relative_path,
        path,
        fingerprint=fingerprint,
        indexed_at=datetime.now(timezone.utc),
        size=size,
    )


def modified_at(path: Path) -> datetime:
    """Return the file's last modification time as an aware UTC datetime."""
    return datetime.fromtimestamp(path.stat().st_mtime_ns / 1e9, tz=timezone.utc)


def read_snapshot(snapshot_path: Path) -> Dict[str, Any]:
    """Read and decode a snapshot document without interpreting it."""
    try:
        text = Path(snapshot_path).read_text(encoding='utf-8')
    except FileNotFoundError as exc:
        raise SnapshotNotFoundError(f"Index not found: {snapshot_path}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise SnapshotParseError(f"Unable to read index {snapshot_path}: {exc}") from exc

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SnapshotParseError(f"Unable to parse index {snapshot_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise SnapshotParseError(f"Unable to parse index {snapshot_path}: not a JSON object")
    return data


class FileIndex:
    """Mapping of relative file paths under root to fingerprints.

    The fingerprint function is injected and is never persisted; it must be
    supplied again when an index is loaded from a snapshot.
    """

    def __init__(
        self,
        root: Path,
        fingerprint_fn: FingerprintFn,
        exclude_exts: Optional[Set[str]] = None,
        workers: Optional[int] = DEFAULT_WORKERS,
    ) -> None:
        self._root = Path(root).resolve()
        self._fingerprint_fn = fingerprint_fn
        self._entries: Dict[str, IndexedEntry] = {}
        self.exclude_exts = set(exclude_exts or ())
        self.workers = workers
        self.failures: List[FileFailure] = []
        self.last_stats = PassStats()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def entries(self) -> Mapping[str, IndexedEntry]:
        """Read-only view of the entry mapping."""
        return MappingProxyType(self._entries)

    def keys(self) -> Iterable[str]:
        return self._entries.keys()

    def get(self, relative_path: str) -> Optional[IndexedEntry]:
        return self._entries.get(relative_path)

    def fingerprint_of(self, relative_path: str) -> Any:
        return self._entries[relative_path].fingerprint

    def resolve(self, relative_path: str) -> Path:
        """Absolute path of a key under this index's root."""
        return self._root.joinpath(*relative_path.split('/'))

    def relative_key(self, path: Path) -> str:
        """Separator-normalized key for a path under root."""
        return path.relative_to(self._root).as_posix()

    def __contains__(self, relative_path: object) -> bool:
        return relative_path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __repr__(self) -> str:
        return f"FileIndex(root={str(self._root)!r}, entries={len(self._entries)})"

    def _walk(
        self,
        stats: PassStats,
        failures: List[FileFailure],
        skipped: List[str],
    ) -> Iterator[Tuple[Path, str]]:
        """Yield (path, key) for every included file; unreadable paths go to skipped."""
        def on_error(path: Path, exc: OSError) -> None:
            key = self.relative_key(path)
            stats.errors += 1
            failures.append(FileFailure(key, path, "io", str(exc)))
            skipped.append(key)

        for _, files in walk_tree(self._root, on_error):
            for file_path in files:
                if file_path.suffix.lower() in self.exclude_exts:
                    stats.excluded += 1
                    logging.debug(f"Excluded {file_path}")
                    continue
                stats.scanned += 1
                yield file_path, self.relative_key(file_path)

    def _collect(
        self,
        futures: List["Future[FingerprintResult]"],
        entries: Dict[str, IndexedEntry],
        stats: PassStats,
        failures: List[FileFailure],
        progress_callback: Optional[ProgressCallback],
    ) -> int:
        """Consume results as they finish; returns the number stored."""
        completed = 0
        stored = 0
        for future in as_completed(futures):
            result = future.result()
            completed += 1
            if result.error is not None:
                stats.errors += 1
                logging.warning(f"Failed to fingerprint {result.path}: {result.error}")
                failures.append(
                    FileFailure(result.relative_path, result.path, result.kind, result.error)
                )
            else:
                entries[result.relative_path] = IndexedEntry(
                    result.relative_path, result.fingerprint, result.indexed_at
                )
                stats.fingerprinted += 1
                stats.bytes_read += result.size
                stored += 1

            if completed % PROGRESS_EVERY == 0:
                logging.info(
                    f"Progress: {completed}/{len(futures)} fingerprinted under {self._root}, "
                    f"errors={stats.errors}"
                )
            if progress_callback:
                progress_callback(completed, asdict(stats))
        return stored

    def build(self, progress_callback: Optional[ProgressCallback] = None) -> int:
        """Fingerprint every file under root, replacing all entries.

        Returns the number of files indexed. Files that fail are listed in
        ``failures`` and get no entry.
        """
        stats = PassStats()
        failures: List[FileFailure] = []
        entries: Dict[str, IndexedEntry] = {}

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = [
                executor.submit(fingerprint_task, self._fingerprint_fn, file_path, key)
                for file_path, key in self._walk(stats, failures, [])
            ]
            indexed = self._collect(futures, entries, stats, failures, progress_callback)

        self._entries = entries
        self.failures = failures
        self.last_stats = stats
        logging.info(
            f"Indexed {indexed} files under {self._root} "
            f"(excluded: {stats.excluded}, errors: {stats.errors})"
        )
        return indexed

    def update(self, progress_callback: Optional[ProgressCallback] = None) -> int:
        """Refresh new or modified files and drop entries for deleted files.

        An entry is fresh when it was indexed strictly after the file's last
        modification. Returns insertions + refreshes + removals.
        """
        stats = PassStats()
        failures: List[FileFailure] = []
        unseen = set(self._entries)
        skipped: List[str] = []

        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = []
            for file_path, key in self._walk(stats, failures, skipped):
                try:
                    modified = modified_at(file_path)
                except FileNotFoundError:
                    logging.debug(f"File vanished during scan: {file_path}")
                    continue
                except OSError as exc:
                    unseen.discard(key)
                    stats.errors += 1
                    logging.warning(f"Failed to stat {file_path}: {exc}")
                    failures.append(FileFailure(key, file_path, "io", str(exc)))
                    continue

                unseen.discard(key)
                existing = self._entries.get(key)
                if existing is not None and existing.indexed_at > modified:
                    stats.unchanged += 1
                    continue
                futures.append(
                    executor.submit(fingerprint_task, self._fingerprint_fn, file_path, key)
                )
            changes = self._collect(futures, self._entries, stats, failures, progress_callback)

        # Entries under an unreadable directory are kept, not treated as deleted
        unseen = {
            key for key in unseen
            if not any(key == prefix or key.startswith(prefix + '/') for prefix in skipped)
        }
        for key in unseen:
            del self._entries[key]
            stats.removed += 1
            logging.debug(f"Removed orphan entry {key}")
        changes += len(unseen)

        self.failures = failures
        self.last_stats = stats
        logging.info(
            f"Updated index for {self._root}: refreshed={stats.fingerprinted}, "
            f"unchanged={stats.unchanged}, removed={stats.removed}, errors={stats.errors}"
        )
        return changes

    def to_snapshot(self, encode_fingerprint: Optional[Callable[[Any], Any]] = None) -> Dict[str, Any]:
        """Plain, JSON-compatible representation of root and entries."""
        encode = encode_fingerprint or (lambda value: value)
        return {
            "format": SNAPSHOT_FORMAT,
            "root": str(self._root),
            "entries": {
                key: {
                    "relative_path": entry.relative_path,
                    "fingerprint": encode(entry.fingerprint),
                    "indexed_at": entry.indexed_at.isoformat(),
                }
                for key, entry in sorted(self._entries.items())
            },
        }

    def save(self, snapshot_path: Path, encode_fingerprint: Optional[Callable[[Any], Any]] = None) -> None:
        """Write the snapshot, replacing any existing one."""
        snapshot_path = Path(snapshot_path)
        snapshot_json = json.dumps(self.to_snapshot(encode_fingerprint), indent=2)
        snapshot_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = snapshot_path.with_name(snapshot_path.name + ".tmp")
        tmp_path.write_text(snapshot_json, encoding='utf-8')
        os.replace(tmp_path, snapshot_path)
        logging.debug(f"Saved {len(self._entries)} entries to {snapshot_path}")

    @classmethod
    def from_snapshot(
        cls,
        snapshot: Mapping[str, Any],
        fingerprint_fn: FingerprintFn,
        decode_fingerprint: Optional[Callable[[Any], Any]] = None,
        exclude_exts: Optional[Set[str]] = None,
        workers: Optional[int] = DEFAULT_WORKERS,
    ) -> "FileIndex":
        """Rebuild an index from decoded snapshot data and attach fingerprint_fn."""
        decode = decode_fingerprint or (lambda value: value)
        if snapshot.get("format") != SNAPSHOT_FORMAT:
            raise SnapshotParseError(f"Unsupported snapshot format: {snapshot.get('format')!r}")
        root = snapshot.get("root")
        raw_entries = snapshot.get("entries")
        if not isinstance(root, str) or not isinstance(raw_entries, dict):
            raise SnapshotParseError("Snapshot must contain a 'root' string and an 'entries' object")

        entries: Dict[str, IndexedEntry] = {}
        for key, item in raw_entries.items():
            try:
                relative_path = item.get("relative_path", key)
                indexed_at = datetime.fromisoformat(item["indexed_at"])
                fingerprint = decode(item["fingerprint"])
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                raise SnapshotParseError(f"Invalid entry {key!r}: {exc}") from exc
            if relative_path != key:
                raise SnapshotParseError(f"Entry {key!r} has mismatched relative_path {relative_path!r}")
            if indexed_at.tzinfo is None:
                raise SnapshotParseError(f"Entry {key!r} has a timestamp without a UTC offset")
            entries[key] = IndexedEntry(key, fingerprint, indexed_at.astimezone(timezone.utc))

        index = cls(Path(root), fingerprint_fn, exclude_exts=exclude_exts, workers=workers)
        index._root = Path(root)
        index._entries = entries
        return index

    @classmethod
    def load(
        cls,
        snapshot_path: Path,
        fingerprint_fn: FingerprintFn,
        decode_fingerprint: Optional[Callable[[Any], Any]] = None,
        exclude_exts: Optional[Set[str]] = None,
        workers: Optional[int] = DEFAULT_WORKERS,
    ) -> "FileIndex":
        """Load a saved index. Indexed files are not re-checked until update()."""
        snapshot = read_snapshot(snapshot_path)
        index = cls.from_snapshot(
            snapshot,
            fingerprint_fn,
            decode_fingerprint=decode_fingerprint,
            exclude_exts=exclude_exts,
            workers=workers,
        )
        logging.debug(f"Loaded {len(index)} entries from {snapshot_path}")
        return index
