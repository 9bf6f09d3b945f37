"""
Filesystem helpers for the world and backup directories.

Copies are "forced": the destination's previous contents are removed first,
so after a mirror the destination matches the source exactly.
"""

import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

# Filesystem metadata created by the volume itself, never part of a world.
VOLATILE_ENTRIES = (".fseventsd", "lost+found")


def get_directory_size(path) -> int:
    """Get total size of a directory in bytes."""
    total = 0
    try:
        for dirpath, dirnames, filenames in os.walk(path):
            for filename in filenames:
                filepath = os.path.join(dirpath, filename)
                try:
                    total += os.path.getsize(filepath)
                except (OSError, FileNotFoundError):
                    pass
    except (OSError, PermissionError):
        pass
    return total


def is_empty_dir(path) -> bool:
    """True if the directory is missing or holds nothing but volatile entries."""
    path = Path(path)
    if not path.is_dir():
        return True
    return not any(entry.name not in VOLATILE_ENTRIES for entry in path.iterdir())


def clear_directory(path):
    """Remove everything inside a directory, keeping the directory itself."""
    path = Path(path)
    for entry in path.iterdir():
        if entry.name in VOLATILE_ENTRIES:
            continue
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()


def mirror_tree(src, dst, force: bool = True):
    """
    Copy the tree at src into dst.

    With force, dst is emptied first. A missing src is treated as an empty
    tree. dst itself is never removed since it may be a mount point.
    """
    src = Path(src)
    dst = Path(dst)
    dst.mkdir(parents=True, exist_ok=True)

    if force:
        clear_directory(dst)

    if not src.is_dir():
        logger.debug(f"Nothing to copy, {src} does not exist")
        return

    shutil.copytree(
        src,
        dst,
        dirs_exist_ok=True,
        ignore=shutil.ignore_patterns(*VOLATILE_ENTRIES),
    )
