import logging
import fnmatch
from datetime import datetime, timezone
from typing import Iterable

logger = logging.getLogger("foundry-recovery")

BACKUP_NAME_PREFIX = "foundry-backup-"


def generate_timestamp() -> str:
    """Run-local timestamp used in backup names (UTC, second resolution)."""
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")


def backup_name_for(timestamp: str) -> str:
    return f"{BACKUP_NAME_PREFIX}{timestamp}"


def matches_any(name: str, patterns: Iterable[str]) -> bool:
    """Check a name against fnmatch-style patterns."""
    return any(fnmatch.fnmatch(name, pattern) for pattern in patterns)


def human_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024 or unit == "GiB":
            return f"{size:.1f} {unit}" if unit != "B" else f"{int(size)} B"
        size /= 1024
    return f"{size:.1f} GiB"
