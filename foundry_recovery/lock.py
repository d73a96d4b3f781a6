"""Single-flight guard: at most one mutating run per namespace on this host."""

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from filelock import FileLock, Timeout as FileLockTimeout

from ._utils import logger
from .exceptions import ConcurrentRunError


def lock_path_for(workspace_dir: Path, namespace: str) -> Path:
    return Path(workspace_dir) / f".foundry-{namespace}.lock"


@contextmanager
def namespace_lock(workspace_dir: Path, namespace: str) -> Iterator[Path]:
    """Hold the namespace lock for the duration of the block.

    Raises:
        ConcurrentRunError: Another process holds the lock
    """
    lock_path = lock_path_for(workspace_dir, namespace)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(lock_path))
    try:
        lock.acquire(timeout=0)
    except FileLockTimeout:
        raise ConcurrentRunError(namespace)

    logger.debug(f"Acquired lock {lock_path}")
    try:
        yield lock_path
    finally:
        lock.release()
        logger.debug(f"Released lock {lock_path}")
