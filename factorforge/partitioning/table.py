"""
Partition rotation table.

A table of ``num_buckets`` rows, each an independent uniform permutation
of ``[0, num_partitions)``. An item's row is picked by ``hash64`` and its
slot at step ``partition_index`` is ``row[partition_index]``. Because each
row is a permutation, one sweep of ``partition_index`` sends every bucket
through every slot exactly once: a balanced all-pairs rotation that never
materializes an all-pairs join.

The table is generated once per run from the run seed and never changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)

PART_TABLE_TOTAL_SIZE = 10_000_000


@dataclass(frozen=True, eq=False)
class PartitionTable:
    """Read-only ``(num_buckets, num_partitions)`` permutation table."""
    rows: np.ndarray

    def __post_init__(self):
        rows = np.asarray(self.rows)
        if rows.ndim != 2:
            raise ValueError(f"rows must be 2-D, got shape {rows.shape}")
        rows.setflags(write=False)
        object.__setattr__(self, "rows", rows)

    @property
    def num_buckets(self) -> int:
        return self.rows.shape[0]

    @property
    def num_partitions(self) -> int:
        return self.rows.shape[1]

    def __len__(self) -> int:
        return self.num_buckets

    def __getitem__(self, bucket):
        return self.rows[bucket]

    def lookup(self, buckets: np.ndarray, partition_index: int) -> np.ndarray:
        """Slots of many buckets at one rotation step."""
        return self.rows[buckets, partition_index]


def create_partition_table(
    num_partitions: int,
    rng: np.random.Generator,
    table_size: int = PART_TABLE_TOTAL_SIZE,
) -> PartitionTable:
    """
    Build the rotation table for a run.

    Parameters
    ----------
    num_partitions : int
        Number of slots; the width of every row.
    rng : np.random.Generator
        Seeded generator. Every row is shuffled independently with it.
    table_size : int
        Total number of cells; ``num_buckets = table_size // num_partitions``.
    """
    if num_partitions < 1:
        raise ValueError(f"num_partitions must be >= 1, got {num_partitions}")
    if num_partitions > table_size:
        raise ValueError(
            f"num_partitions ({num_partitions}) cannot exceed "
            f"table_size ({table_size})"
        )

    num_buckets = table_size // num_partitions
    dtype = np.int32 if num_partitions <= np.iinfo(np.int32).max else np.int64
    base = np.tile(np.arange(num_partitions, dtype=dtype), (num_buckets, 1))
    rows = rng.permuted(base, axis=1)

    logger.info(
        f"Created partition table: {num_buckets:,} buckets x "
        f"{num_partitions} partitions"
    )
    return PartitionTable(rows)
