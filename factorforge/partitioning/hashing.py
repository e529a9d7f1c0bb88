"""
Deterministic item hashing.

``hash64`` is the single source of randomness for partition assignment.
Any worker can compute the slot of any id without communication, and
changing the salt (the epoch) reshuffles assignments every epoch.

The id is folded to 32 bits (high word XOR low word),
placed in the high word next to the salt, and then run through the
MurmurHash3 64-bit finalizer. Python's ``hash()`` is never used: it is
salted per process for str/bytes and not guaranteed stable across runs.
"""

from __future__ import annotations

import numpy as np

MASK32 = 0xFFFFFFFF
MASK64 = 0xFFFFFFFFFFFFFFFF

MIX_C1 = 0xFF51AFD7ED558CCD
MIX_C2 = 0xC4CEB9FE1A85EC53


def _fold(item_id: int) -> int:
    u = item_id & MASK64
    return (u ^ (u >> 32)) & MASK32


def hash64(item_id: int, salt: int, n: int) -> int:
    """
    Map ``(item_id, salt)`` to a bucket in ``[0, n)``.

    Parameters
    ----------
    item_id : int
        64-bit item identifier (negative values are taken two's complement).
    salt : int
        32-bit salt, usually the epoch.
    n : int
        Number of buckets. Must be positive.
    """
    if n <= 0:
        raise ValueError(f"n must be positive, got {n}")

    h = ((_fold(item_id) << 32) | (salt & MASK64)) & MASK64
    h ^= h >> 33
    h = (h * MIX_C1) & MASK64
    h ^= h >> 33
    h = (h * MIX_C2) & MASK64
    h ^= h >> 33

    if h >= 1 << 63:
        h -= 1 << 64
    return abs(h) % n


def hash64_array(item_ids: np.ndarray, salt: int, n: int) -> np.ndarray:
    """Vectorised ``hash64`` over an array of ids. Returns int64 buckets."""
    if n <= 0:
        raise ValueError(f"n must be positive, got {n}")

    u = np.atleast_1d(np.asarray(item_ids, dtype=np.int64)).view(np.uint64)
    s32, s33 = np.uint64(32), np.uint64(33)

    folded = (u ^ (u >> s32)) & np.uint64(MASK32)
    h = (folded << s32) | np.uint64(salt & MASK64)
    h ^= h >> s33
    h *= np.uint64(MIX_C1)
    h ^= h >> s33
    h *= np.uint64(MIX_C2)
    h ^= h >> s33

    # |h| of the signed value, computed in unsigned space so that
    # -2**63 does not overflow
    negative = h >= np.uint64(1 << 63)
    magnitude = np.where(negative, ~h + np.uint64(1), h)
    return (magnitude % np.uint64(n)).astype(np.int64)
