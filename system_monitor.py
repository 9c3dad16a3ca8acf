"""
Lightweight helpers to collect host statistics for the health endpoint.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

import psutil


def _nearest_existing(path: Path) -> Optional[Path]:
    """Return ``path`` or its closest existing parent."""
    candidate = path.expanduser()
    for option in (candidate, *candidate.parents):
        try:
            if option.is_dir():
                return option
        except OSError:
            continue
    return None


def _bytes_to_gb(value: float) -> float:
    """Convert bytes to gigabytes rounded to one decimal place."""
    return round(value / (1024**3), 1)


def _disk_stats(path: Path) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"path": str(path), "used": None, "total": None, "percent": None}
    target = _nearest_existing(path)
    if target is None:
        return entry
    try:
        disk = psutil.disk_usage(str(target))
    except OSError:
        return entry
    entry["used"] = _bytes_to_gb(disk.used)
    entry["total"] = _bytes_to_gb(disk.total)
    entry["percent"] = round(disk.percent, 1)
    return entry


def get_system_stats(paths: Optional[Iterable[Union[str, Path]]] = None) -> Dict[str, Any]:
    """
    Gather basic host statistics.

    Args:
        paths: directories whose filesystems should be reported, typically the
            local store root and the upload spool directory.

    Returns:
        dict: Metrics keyed by name. Fields default to None when unavailable so
        the caller can handle missing data gracefully.
    """

    stats: Dict[str, Any] = {
        "cpu_percent": None,
        "memory_used": None,
        "memory_total": None,
        "memory_percent": None,
        "disks": [],
    }

    try:
        stats["cpu_percent"] = round(psutil.cpu_percent(interval=0.1), 1)
    except (OSError, RuntimeError):
        pass

    try:
        memory = psutil.virtual_memory()
        stats["memory_used"] = _bytes_to_gb(memory.used)
        stats["memory_total"] = _bytes_to_gb(memory.total)
        stats["memory_percent"] = round(memory.percent, 1)
    except (OSError, RuntimeError):
        pass

    seen = set()
    for raw in paths or ():
        path = Path(raw)
        key = str(path)
        if key in seen:
            continue
        seen.add(key)
        stats["disks"].append(_disk_stats(path))

    return stats
