"""
Content digests for backup files and whole backup documents.
"""

from __future__ import annotations

import hashlib
import hmac


class IntegrityHasher:
    """SHA-256 hex digests. Pure: identical bytes always give identical digests."""

    algorithm = "sha256"

    def hash(self, data: bytes) -> str:
        return hashlib.new(self.algorithm, data).hexdigest()

    def verify(self, data: bytes, expected: str) -> bool:
        return hmac.compare_digest(self.hash(data), (expected or "").lower())
