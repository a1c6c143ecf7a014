"""
Atomic object writes for the filesystem store.

Each object is written to a uniquely named sibling ``*.tmp`` file, synced,
then renamed over the target. Concurrent puts of the same key never share a
temp file, and readers only ever see a complete object.
"""

import logging
import os
import uuid
from pathlib import Path

logger = logging.getLogger("oteltape.storage.atomic")

TMP_SUFFIX = ".tmp"


def is_temp_file(name: str) -> bool:
    """In-flight write, not an object"""
    return name.endswith(TMP_SUFFIX)


def _temp_path(path: Path) -> Path:
    return path.with_name(f"{path.name}.{uuid.uuid4().hex[:8]}{TMP_SUFFIX}")


def _sync_directory(directory: Path) -> None:
    # makes the rename durable; not supported on every platform
    try:
        fd = os.open(str(directory), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write(path: Path | str, content: str | bytes, encoding: str = "utf-8", sync: bool = True) -> bool:
    """
    Write ``content`` to ``path`` atomically, creating parent directories.

    Returns False (after logging) when the write failed; the previous
    content of ``path``, if any, is left untouched.
    """
    path = Path(path)
    data = content.encode(encoding) if isinstance(content, str) else content
    tmp_path = _temp_path(path)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tmp_path.open("wb") as f:
            f.write(data)
            if sync:
                f.flush()
                os.fsync(f.fileno())
        tmp_path.replace(path)
    except OSError as e:
        logger.error(f"Atomic write failed for {path}: {e}")
        tmp_path.unlink(missing_ok=True)
        return False

    if sync:
        _sync_directory(path.parent)
    return True
