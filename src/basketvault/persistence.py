"""Atomic JSON persistence shared by the ledger and the trade queue."""

from __future__ import annotations

import contextlib
import json
import os
import tempfile
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pathlib import Path


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON using temp file + fsync + rename.

    The rename is atomic on POSIX filesystems, so readers always see either
    the old or the new file, never a partial write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def read_json(path: Path) -> Any | None:
    """Load JSON, or None when the file does not exist."""
    if not path.exists():
        return None
    with open(path) as f:
        return json.load(f)
