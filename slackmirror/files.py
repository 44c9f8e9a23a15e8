"""
Atomic file writes.

Every piece of persisted state (credential file, DM cache) goes through
atomic_write(): the content lands in a sibling temp file first and is then
renamed over the target, so a crash mid-write never leaves a torn file.
"""

from __future__ import annotations

import os
import secrets
from pathlib import Path

import aiofiles
import aiofiles.os
from loguru import logger


def temp_path_for(path: Path) -> Path:
    """Sibling temp path, unique per process and per call."""
    return path.with_name(f"{path.name}.{os.getpid()}.{secrets.token_hex(4)}.tmp")


async def atomic_write(path: str | Path, content: str, mode: int = 0o600) -> None:
    """Atomically replace ``path`` with ``content``.

    The temp file is created exclusively with ``mode``. On failure it is
    removed and the error re-raised; the target keeps whatever it held before.
    """
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = temp_path_for(target)

    # Created with its final mode; never readable by others, even briefly
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    try:
        async with aiofiles.open(fd, "w", encoding="utf-8") as f:
            await f.write(content)
            await f.flush()
            os.fsync(f.fileno())
        await aiofiles.os.replace(tmp, target)
    except BaseException:
        try:
            await aiofiles.os.remove(tmp)
        except FileNotFoundError:
            pass
        raise

    _fsync_directory(target.parent)


def _fsync_directory(path: Path) -> None:
    """Best-effort fsync of a directory after a rename."""
    try:
        fd = os.open(path, os.O_DIRECTORY)
    except (AttributeError, OSError):
        return
    try:
        os.fsync(fd)
    except OSError as exc:
        logger.debug(f"[files] Directory fsync failed for {path}: {exc}")
    finally:
        os.close(fd)
