"""
Reconcile command: compare a current index against a master index and
optionally copy master files over corrupted or missing ones.
"""

import logging
import shutil
from typing import List, Optional

from common import Discrepancy, RepairFailure
from file_index import FileIndex


def _repair(discrepancy: Discrepancy, repair_failures: List[RepairFailure]) -> None:
    """Copy the master file onto the current path, recording any failure."""
    try:
        discrepancy.destination.parent.mkdir(parents=True, exist_ok=True)
        # copyfile leaves the destination with a fresh mtime so the next update re-fingerprints it
        shutil.copyfile(discrepancy.source, discrepancy.destination)
    except OSError as exc:
        logging.error(
            f"Failed to repair {discrepancy.relative_path}: "
            f"{discrepancy.source} -> {discrepancy.destination}: {exc}"
        )
        repair_failures.append(
            RepairFailure(
                relative_path=discrepancy.relative_path,
                source=discrepancy.source,
                destination=discrepancy.destination,
                error=str(exc),
            )
        )
        return
    discrepancy.repaired = True
    logging.info(f"Repaired {discrepancy.relative_path}")


def reconcile(
    master: FileIndex,
    current: FileIndex,
    repair: bool = False,
    discrepancies: Optional[List[Discrepancy]] = None,
    repair_failures: Optional[List[RepairFailure]] = None,
) -> int:
    """Report master files that are missing from or differ in current.

    Only master's paths are inspected; files that exist only in current are
    ignored. With repair, each discrepancy is fixed by copying the master
    file. Returns the number of discrepancies found, whether or not repair
    succeeded.
    """
    if discrepancies is None:
        discrepancies = []
    if repair_failures is None:
        repair_failures = []

    failures_before = len(repair_failures)
    found = 0
    for relative_path in sorted(master.keys()):
        current_entry = current.get(relative_path)
        if current_entry is None:
            reason = "missing"
        elif current_entry.fingerprint != master.fingerprint_of(relative_path):
            reason = "mismatch"
        else:
            continue

        discrepancy = Discrepancy(
            relative_path=relative_path,
            source=master.resolve(relative_path),
            destination=current.resolve(relative_path),
            reason=reason,
        )
        found += 1
        discrepancies.append(discrepancy)
        logging.warning(f"{relative_path} NG ({reason})")
        logging.warning(f"\t{discrepancy.source}->{discrepancy.destination}")

        if repair:
            _repair(discrepancy, repair_failures)

    logging.info(
        f"Reconciled {len(master)} master entries against {current.root}: "
        f"discrepancies={found}, repair_failures={len(repair_failures) - failures_before}"
    )
    return found
