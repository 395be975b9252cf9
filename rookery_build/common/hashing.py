from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Final


SENTINEL_HASH: Final[str] = "none"
DEFAULT_CHUNK_SIZE: Final[int] = 1024 * 1024


def new_hasher(algorithm: str) -> "hashlib._Hash":
    try:
        return hashlib.new(algorithm)
    except ValueError as exc:
        raise ValueError(f"Unsupported hash algorithm: {algorithm}") from exc


def file_digest(path: Path, algorithm: str = "sha256", *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Return the hex digest of a file's contents.

    The file is read in fixed-size chunks so multi-gigabyte source tarballs
    never have to fit in memory. A missing file raises FileNotFoundError.
    """
    h = new_hasher(algorithm)
    with Path(path).open("rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()
