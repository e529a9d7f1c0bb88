"""
factorforge.partitioning — Slot Assignment
===========================================
Everything that decides which slot an item lands in at a given step:

    1. **Hashing** (`hashing.py`):
       Deterministic seeded ``hash64(id, salt, n)`` plus a numpy version.

    2. **Partition table** (`table.py`):
       Per-bucket random permutations of the slot ids, generated once
       per run and shared read-only.

    3. **Partitioners** (`partitioner.py`):
       STABLE_HASH for LEFT items, ROTATION for RIGHT items,
       IDENTITY_KEY for records already keyed by slot.
"""

from factorforge.partitioning.hashing import hash64, hash64_array
from factorforge.partitioning.table import (
    PART_TABLE_TOTAL_SIZE,
    PartitionTable,
    create_partition_table,
)
from factorforge.partitioning.partitioner import (
    PartitionStrategy,
    Partitioner,
    rotation_partition,
    stable_hash_partition,
)
