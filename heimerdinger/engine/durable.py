"""Crash-safe file replacement for small state documents."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def sync_directory(directory: Path) -> None:
    """Flush a directory entry so a completed rename survives power loss.

    Silently skipped where directories cannot be opened or fsynced.
    """
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    try:
        fd = os.open(str(directory), flags)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        logger.debug("Directory fsync unsupported for %s", directory)
    finally:
        os.close(fd)


def replace_file(target: Path, text: str, *, encoding: str = "utf-8") -> None:
    """Write ``text`` next to ``target`` and rename it into place.

    Readers see either the old file or the complete new one. The
    scratch file is removed if anything fails before the rename.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, scratch_name = tempfile.mkstemp(
        dir=str(target.parent), prefix=f".{target.name}.", suffix=".tmp",
    )
    scratch = Path(scratch_name)
    renamed = False
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(scratch, target)
        renamed = True
    finally:
        if not renamed:
            scratch.unlink(missing_ok=True)
    sync_directory(target.parent)


def write_json(target: Path, document: Any) -> None:
    """Serialize ``document`` as indented UTF-8 JSON and replace ``target``."""
    replace_file(target, json.dumps(document, indent=2, ensure_ascii=False) + "\n")
