"""Helpers shared by the discovery, sync and orchestration runs."""
import hashlib
import random
from typing import List, Sequence, TypeVar

from app.utils.time_helpers import utc_now

T = TypeVar("T")


def generate_run_id(prefix: str) -> str:
    """
    Build a unique, sortable run identifier.

    Format: ``<prefix>-<ISO timestamp with ':' and '.' replaced by '-'>-<8 hex chars>``
    e.g. ``discovery-2025-01-31T10-15-00-123456-1a2b3c4d``.
    """
    timestamp = utc_now().isoformat().replace(":", "-").replace(".", "-")
    digest = hashlib.md5(f"{timestamp}-{random.random()}".encode("utf-8")).hexdigest()[:8]
    return f"{prefix}-{timestamp}-{digest}"


def format_duration(seconds: float) -> str:
    """
    Format a duration for humans.

    Examples:
        >>> format_duration(5)
        '5s'
        >>> format_duration(125)
        '2m 5s'
        >>> format_duration(3725)
        '1h 2m 5s'
    """
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def create_batches(items: Sequence[T], batch_size: int) -> List[List[T]]:
    """Split a sequence into consecutive lists of at most batch_size items."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got: {batch_size}")
    return [list(items[i:i + batch_size]) for i in range(0, len(items), batch_size)]
