"""Content hashing and verification for mod files."""

import hashlib
from pathlib import Path
from typing import BinaryIO

HASH_ALGORITHM = "sha256"
DIGEST_HEX_LENGTH = 64
DEFAULT_CHUNK_SIZE = 64 * 1024


class VerificationError(Exception):
    """Raised when a file cannot be read for hashing."""

    def __init__(self, path: Path, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Cannot verify {self.path}: {reason}")


def hash_stream(stream: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """Consume a binary stream and return its SHA-256 digest as lowercase hex."""
    hasher = hashlib.new(HASH_ALGORITHM)
    while chunk := stream.read(chunk_size):
        hasher.update(chunk)
    return hasher.hexdigest()


def compute_file_hash(path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """
    Compute the SHA-256 digest of a file on disk.

    The file is read in chunks, so arbitrarily large mods never sit in memory.
    Raises VerificationError if the file cannot be opened or read.
    """
    try:
        with open(path, "rb") as f:
            return hash_stream(f, chunk_size)
    except OSError as e:
        raise VerificationError(path, e.strerror or str(e)) from e


def verify_file_hash(path: Path, expected_hash: str) -> bool:
    """
    Check a file against an expected digest (case-insensitive).

    Returns False on a mismatch. An unreadable file raises VerificationError
    instead, so callers can tell "wrong content" from "could not check".
    """
    return compute_file_hash(path) == expected_hash.strip().lower()


def digests_equal(a: str | None, b: str | None) -> bool:
    """Compare two hex digests ignoring case and surrounding whitespace."""
    if a is None or b is None:
        return False
    return a.strip().lower() == b.strip().lower()
