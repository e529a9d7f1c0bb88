"""
Partitioner strategies.

Three ways of turning a key into a slot, as a closed set of tagged
strategies over pure functions:

    STABLE_HASH  — ``hash64(id, epoch, P)``; places LEFT items.
    ROTATION     — ``table[hash64(id, epoch, buckets)][partition_index]``;
                   places RIGHT items, moving them one rotation step per
                   scheduler step.
    IDENTITY_KEY — the key already is a slot id.

A ``Partitioner`` is a frozen value: it closes over nothing mutable, so
the same instance can be handed to every worker task of a step.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from factorforge.partitioning.hashing import hash64, hash64_array
from factorforge.partitioning.table import PartitionTable


class PartitionStrategy(Enum):
    STABLE_HASH = "stable_hash"
    ROTATION = "rotation"
    IDENTITY_KEY = "identity_key"


def stable_hash_partition(item_id: int, epoch: int, num_partitions: int) -> int:
    return hash64(item_id, epoch, num_partitions)


def rotation_partition(
    item_id: int,
    epoch: int,
    partition_index: int,
    table: PartitionTable,
) -> int:
    bucket = hash64(item_id, epoch, table.num_buckets)
    return int(table.rows[bucket, partition_index])


@dataclass(frozen=True)
class Partitioner:
    """
    Slot assignment for one scheduler step.

    Build instances with the ``stable_hash``, ``rotation`` and
    ``identity`` constructors rather than directly.
    """
    strategy: PartitionStrategy
    num_partitions: int
    epoch: int = 0
    partition_index: int = 0
    table: Optional[PartitionTable] = None

    def __post_init__(self):
        if self.num_partitions < 1:
            raise ValueError(
                f"num_partitions must be >= 1, got {self.num_partitions}"
            )
        if self.strategy is PartitionStrategy.ROTATION:
            if self.table is None:
                raise ValueError("ROTATION partitioner requires a table")
            if self.table.num_partitions != self.num_partitions:
                raise ValueError(
                    f"Table width ({self.table.num_partitions}) does not match "
                    f"num_partitions ({self.num_partitions})"
                )
            if not 0 <= self.partition_index < self.num_partitions:
                raise ValueError(
                    f"partition_index must be in [0, {self.num_partitions}), "
                    f"got {self.partition_index}"
                )

    @classmethod
    def stable_hash(cls, num_partitions: int, epoch: int) -> Partitioner:
        return cls(PartitionStrategy.STABLE_HASH, num_partitions, epoch=epoch)

    @classmethod
    def rotation(
        cls,
        table: PartitionTable,
        epoch: int,
        partition_index: int,
    ) -> Partitioner:
        return cls(
            PartitionStrategy.ROTATION,
            table.num_partitions,
            epoch=epoch,
            partition_index=partition_index,
            table=table,
        )

    @classmethod
    def identity(cls, num_partitions: int) -> Partitioner:
        return cls(PartitionStrategy.IDENTITY_KEY, num_partitions)

    def get_partition(self, key: int) -> int:
        """Slot of a single key."""
        if self.strategy is PartitionStrategy.STABLE_HASH:
            return stable_hash_partition(key, self.epoch, self.num_partitions)
        if self.strategy is PartitionStrategy.ROTATION:
            return rotation_partition(
                key, self.epoch, self.partition_index, self.table
            )
        if not 0 <= key < self.num_partitions:
            raise ValueError(
                f"Slot key {key} out of range [0, {self.num_partitions})"
            )
        return int(key)

    def get_partitions(self, keys: np.ndarray) -> np.ndarray:
        """Slots of many keys at once (int64 array)."""
        keys = np.asarray(keys, dtype=np.int64)
        if self.strategy is PartitionStrategy.STABLE_HASH:
            return hash64_array(keys, self.epoch, self.num_partitions)
        if self.strategy is PartitionStrategy.ROTATION:
            buckets = hash64_array(keys, self.epoch, self.table.num_buckets)
            return self.table.lookup(buckets, self.partition_index).astype(np.int64)
        if keys.size and (keys.min() < 0 or keys.max() >= self.num_partitions):
            raise ValueError(
                f"Slot keys out of range [0, {self.num_partitions})"
            )
        return keys

    def __call__(self, key: int) -> int:
        return self.get_partition(key)
