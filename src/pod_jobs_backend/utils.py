"""
Small helpers shared by the persistence, probing and webhook modules.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def isoformat_utc(dt: Optional[datetime] = None) -> str:
    """
    Render a timestamp the way webhook payloads carry it.

    Example:
        >>> isoformat_utc(datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))
        '2024-01-02T03:04:05.000Z'
    """
    value = (dt or utcnow()).astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def is_local_path(location: str) -> bool:
    """
    Tell whether a file location refers to the local filesystem.

    Absolute paths and ``./``-relative paths are local; anything else
    (``http://``, ``https://``, ``s3://``...) is treated as remote.
    """
    return location.startswith("/") or location.startswith("./")
