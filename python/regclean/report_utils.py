"""
Utility functions for run reports.

This module provides functions to:
- Format sizes and per-repository candidate tables
- Build and log the end-of-run summary
- Save JSON run reports with timestamped filenames
"""
import json
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from tabulate import tabulate

from regclean.deletion import DELETED, FAILED, SKIPPED, WOULD_DELETE, DeletionOutcome
from regclean.image_ref import ImageRef
from regclean.logging_utils import get_logger

logger = get_logger(__name__)


# ============================================================================
# Formatting Utilities
# ============================================================================

def sizeof_fmt(num: float, suffix: str = "B") -> str:
    """Format bytes into human-readable size.

    Args:
        num: Number of bytes
        suffix: Suffix to append (default: "B")

    Returns:
        Formatted string like "1.5GiB", "500.0MiB", etc.
    """
    for unit in ("", "Ki", "Mi", "Gi", "Ti", "Pi", "Ei", "Zi"):
        if abs(num) < 1024.0:
            return f"{num:3.1f}{unit}{suffix}"
        num /= 1024.0
    return f"{num:.1f}Yi{suffix}"


def count_by_repository(refs: Iterable[ImageRef]) -> List[Dict[str, Any]]:
    """Number of images per (registry, repository), in first-seen order"""
    counts: Dict[tuple, int] = {}
    for ref in refs:
        key = (ref.registry_host, ref.repository)
        counts[key] = counts.get(key, 0) + 1
    return [{"registry": reg, "repository": repo, "count": count} for (reg, repo), count in counts.items()]


def format_repository_table(refs: Iterable[ImageRef]) -> str:
    """Render the per-repository candidate counts as a table"""
    rows = [[r["registry"], r["repository"], r["count"]] for r in count_by_repository(refs)]
    return tabulate(rows, headers=["REGISTRY", "REPOSITORY", "COUNT"], tablefmt="simple")


# ============================================================================
# Run Summary
# ============================================================================

def build_run_summary(
    considered: int,
    kept: int,
    filter_stats: Dict[str, int],
    outcomes: Sequence[DeletionOutcome],
    dry_run: bool,
) -> Dict[str, Any]:
    """Summarize one run.

    Args:
        considered: registry images examined
        kept: images referenced by a cluster
        filter_stats: candidates protected per retention rule
        outcomes: one entry per deletion candidate
        dry_run: whether deletions were simulated
    """
    by_status = {DELETED: 0, WOULD_DELETE: 0, FAILED: 0, SKIPPED: 0}
    freed = 0
    for outcome in outcomes:
        by_status[outcome.status] = by_status.get(outcome.status, 0) + 1
        if outcome.succeeded and outcome.size_bytes:
            freed += outcome.size_bytes

    return {
        "dry_run": dry_run,
        "considered": considered,
        "kept": kept,
        "filtered": sum(filter_stats.values()),
        "filtered_by": dict(filter_stats),
        "deleted": by_status[DELETED],
        "would_delete": by_status[WOULD_DELETE],
        "failed": by_status[FAILED],
        "skipped": by_status[SKIPPED],
        "bytes": freed,
    }


def log_run_summary(summary: Dict[str, Any]) -> None:
    """Log a run summary built by build_run_summary"""
    filtered_by = ", ".join(f"{rule}={count}" for rule, count in summary["filtered_by"].items())
    logger.info("=" * 60)
    logger.info("Run summary%s" % (" (dry run)" if summary["dry_run"] else ""))
    logger.info(f"  Images considered: {summary['considered']}")
    logger.info(f"  Kept (in use):     {summary['kept']}")
    logger.info(f"  Filtered:          {summary['filtered']} ({filtered_by})")
    if summary["dry_run"]:
        logger.info(f"  Would delete:      {summary['would_delete']} ({sizeof_fmt(summary['bytes'])})")
    else:
        logger.info(f"  Deleted:           {summary['deleted']} ({sizeof_fmt(summary['bytes'])})")
        logger.info(f"  Skipped:           {summary['skipped']}")
    if summary["failed"]:
        logger.warning(f"  Failed:            {summary['failed']}")
    else:
        logger.info("  Failed:            0")
    logger.info("=" * 60)


# ============================================================================
# Timestamp Utilities
# ============================================================================

def get_timestamp_suffix() -> str:
    """
    Generate a timestamp suffix for report filenames.

    Returns:
        String in format: YYYY-MM-DD-HH-MM-SS
    """
    return datetime.now().strftime("%Y-%m-%d-%H-%M-%S")


def add_timestamp_to_path(path: str, timestamp: Optional[str] = None) -> str:
    """
    Add a timestamp to a file path before the extension.

    Args:
        path: Original file path (e.g., 'reports/regclean.json')
        timestamp: Optional timestamp string (defaults to current time)

    Returns:
        Path with timestamp inserted (e.g., 'reports/regclean-2026-01-15-14-30-00.json')
    """
    if timestamp is None:
        timestamp = get_timestamp_suffix()

    p = Path(path)
    return str(p.parent / f"{p.stem}-{timestamp}{p.suffix}")


# ============================================================================
# Report Saving Functions
# ============================================================================

def _jsonable(data: Any) -> Any:
    """Recursively convert values json.dump cannot handle"""
    if isinstance(data, (datetime, date)):
        return data.isoformat()
    if isinstance(data, ImageRef):
        return str(data)
    if isinstance(data, DeletionOutcome):
        return data.to_dict()
    if isinstance(data, (set, frozenset)):
        try:
            return [_jsonable(item) for item in sorted(data)]
        except TypeError:
            return [_jsonable(item) for item in data]
    if isinstance(data, dict):
        return {k: _jsonable(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [_jsonable(item) for item in data]
    return data


def save_json(path: str, data: Any, timestamp: bool = False) -> str:
    """
    Write JSON data to a file with indentation.

    Args:
        path: Path to save the JSON file
        data: Data to save
        timestamp: If True, add timestamp to filename

    Returns:
        Path to the saved file
    """
    p = Path(path)
    if timestamp:
        p = Path(add_timestamp_to_path(str(p)))

    p.parent.mkdir(parents=True, exist_ok=True)

    with open(p, "w") as f:
        json.dump(_jsonable(data), f, indent=2)
    logger.info(f"Saved JSON to {p}")
    return str(p)
