from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Optional

CHUNK_SIZE = 64 * 1024


def hash_file(path: Path) -> Optional[str]:
    """Hex SHA-256 of the file, or None when it does not exist or cannot be read."""
    hasher = hashlib.sha256()
    try:
        with path.open("rb") as fh:
            for chunk in iter(lambda: fh.read(CHUNK_SIZE), b""):
                hasher.update(chunk)
    except OSError:
        return None
    return hasher.hexdigest()


def split_basic_auth(value: str) -> tuple[str, str]:
    login, sep, password = value.partition(":")
    if not sep:
        raise ValueError("Invalid auth configuration, needs format user:pass")
    return login, password
