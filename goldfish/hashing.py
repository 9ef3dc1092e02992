"""Content hashing for embedding change detection.

A checkpoint's embedding is stale exactly when the hash of its embedding
text changes. BLAKE2b (256-bit digest) is fast and stable across runs.
"""

import hashlib


def hash_content(content: str) -> str:
    """Hex-encoded BLAKE2b-256 hash of a string (64 characters)."""
    return hashlib.blake2b(content.encode("utf-8"), digest_size=32).hexdigest()
