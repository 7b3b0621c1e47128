"""
Atomic file writes (temp file in the same directory, then os.replace).

Both privilege contexts read the same state files, so a reader must only
ever see the old content or the new content, never a partial write.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional


def atomic_write_bytes(path: Path, payload: bytes, mode: Optional[int] = None):
    """Write bytes to path atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def atomic_write_json(path: Path, data: Any, mode: Optional[int] = None):
    """Serialize data as indented JSON and write it atomically."""
    payload = json.dumps(data, indent=2, sort_keys=True, default=str) + "\n"
    atomic_write_bytes(path, payload.encode("utf-8"), mode=mode)
