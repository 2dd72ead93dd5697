"""Content hashing for change detection.

Files are hashed with SHA-256 in fixed-size blocks so that multi-gigabyte
files never have to fit in memory.
"""

import hashlib
from pathlib import Path

HASH_BLOCK_SIZE = 64 * 1024


def compute_file_hash(path: Path, block_size: int = HASH_BLOCK_SIZE) -> str:
    """Compute SHA-256 hash of a file.

    Reads the file in chunks to handle large files efficiently.

    Args:
        path: Path to the file to hash.
        block_size: Read buffer size in bytes.

    Returns:
        Hexadecimal SHA-256 hash string.
    """
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(block_size), b""):
            hasher.update(block)
    return hasher.hexdigest()
