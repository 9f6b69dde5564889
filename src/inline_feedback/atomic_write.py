"""Atomic file write utilities to prevent corruption from partial writes.

Store and archive writes go through these functions so that readers in
other processes only ever see the previous or the next complete document.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def atomic_write_text(content: str, target_path: str | Path) -> None:
    """Write text content to target_path atomically.

    Uses temp file + rename pattern to ensure atomic write:
    1. Write to temporary file in same directory as target
    2. Rename temp file to target (atomic operation)
    3. Clean up temp file on any failure

    Content is written byte-for-byte as UTF-8 with no newline translation,
    so a digest of ``content`` matches a digest of the file.

    Args:
        content: Text content to write
        target_path: Destination file path

    Raises:
        OSError: If write or rename fails
    """
    target_path = Path(target_path)
    dir_path = target_path.parent

    # Ensure parent directory exists
    dir_path.mkdir(parents=True, exist_ok=True)

    # Create temp file in same directory (required for atomic rename)
    fd, temp_path = tempfile.mkstemp(
        dir=dir_path,
        prefix=f".{target_path.name}.tmp_",
        suffix=target_path.suffix,
    )

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content.encode("utf-8"))

        # Set readable permissions (rw-r--r--)
        os.chmod(temp_path, 0o644)

        # Atomic rename (replaces target if it exists)
        os.replace(temp_path, target_path)

    except Exception:
        # Clean up temp file on any failure
        try:
            os.unlink(temp_path)
        except OSError:
            pass  # Temp file may already be gone if the rename happened
        raise


def dump_json(data: Any) -> str:
    """Serialize data the way every feedback file is written.

    2-space indent, non-ASCII kept as-is, trailing newline for friendlier
    diffs. Key order is the caller's insertion order.
    """
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def atomic_write_json(data: Any, target_path: str | Path) -> str:
    """Write data to target_path as JSON atomically.

    Args:
        data: Python object to serialize as JSON
        target_path: Destination file path

    Returns:
        The exact text that was written

    Raises:
        OSError: If write or rename fails
        TypeError: If data is not JSON-serializable
    """
    content = dump_json(data)
    atomic_write_text(content, target_path)
    return content
