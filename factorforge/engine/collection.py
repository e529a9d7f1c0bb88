"""
FactorForge Partitioned Collections
=====================================
A small, in-process stand-in for a cluster dataset: a collection split
into numbered partitions, each computed lazily from its lineage (the
parent collections plus the transformation that produced it).

What It Provides:
    - Narrow transformations (map, filter, flat_map, map_partitions)
    - Re-partitioning by an arbitrary slot function (partition_by)
    - Co-partitioned zips of two collections (zip_partitions)
    - Explicit persistence (persist / unpersist) with eager count()
    - Recomputation of any lost partition from lineage (see evict())

Stages:
    A partition_by boundary splits the work into stages. Before a stage
    runs, count() and collect() first materialize the map side of every
    shuffle it depends on, in parallel on the context's thread pool, so
    that worker threads never wait on each other.

Storage Levels:
    NONE             — nothing kept; every access recomputes
    MEMORY_ONLY      — partitions kept in memory
    MEMORY_AND_DISK  — kept in memory with a spilled copy on disk; a
                       partition evicted from memory is read back from disk
    DISK_ONLY        — partitions kept on disk only
"""

from __future__ import annotations

import itertools
import logging
import threading
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, Optional

import torch

if TYPE_CHECKING:
    from factorforge.engine.context import ClusterContext

logger = logging.getLogger(__name__)

_collection_ids = itertools.count()


class StorageLevel(Enum):
    NONE = (False, False)
    MEMORY_ONLY = (True, False)
    MEMORY_AND_DISK = (True, True)
    DISK_ONLY = (False, True)

    @property
    def use_memory(self) -> bool:
        return self.value[0]

    @property
    def use_disk(self) -> bool:
        return self.value[1]


class PartitionedCollection:
    """
    Lazily computed, partitioned collection.

    Subclasses implement ``_compute(index)``; everything else (caching,
    spilling, recomputation, parallel materialization) lives here.

    Parameters
    ----------
    context : ClusterContext
        Owner of the worker pool and spill directory.
    num_partitions : int
        Number of partitions.
    parents : tuple of PartitionedCollection
        Direct lineage dependencies.
    name : str
        Human-readable label for logs.
    """

    def __init__(
        self,
        context: ClusterContext,
        num_partitions: int,
        parents: tuple[PartitionedCollection, ...] = (),
        name: str = "collection",
    ):
        if num_partitions < 1:
            raise ValueError(f"num_partitions must be >= 1, got {num_partitions}")
        self.context = context
        self.num_partitions = num_partitions
        self.parents = parents
        self.name = name
        self.id = next(_collection_ids)
        self.storage_level = StorageLevel.NONE

        self._memory: dict[int, list] = {}
        self._disk: set[int] = set()
        self._locks = [threading.Lock() for _ in range(num_partitions)]

    # ─── Lineage ─────────────────────────────────────────────────────────

    def _compute(self, index: int) -> Iterable:
        raise NotImplementedError

    def _prepare(self) -> None:
        """Materialize shuffle map outputs this collection depends on."""
        if self.is_fully_cached:
            return
        for parent in self.parents:
            parent._prepare()

    # ─── Partition access ────────────────────────────────────────────────

    def partition(self, index: int) -> list:
        """Return the items of one partition, computing it if needed."""
        if not 0 <= index < self.num_partitions:
            raise IndexError(
                f"Partition {index} out of range for {self.name} "
                f"({self.num_partitions} partitions)"
            )

        level = self.storage_level
        if level is StorageLevel.NONE:
            return list(self._compute(index))

        with self._locks[index]:
            cached = self._memory.get(index)
            if cached is not None:
                return cached
            if index in self._disk:
                items = self._read_spill(index)
            else:
                items = list(self._compute(index))
                if level.use_disk:
                    self._write_spill(index, items)
            if level.use_memory:
                self._memory[index] = items
            return items

    def iterator(self, index: int) -> Iterator:
        return iter(self.partition(index))

    @property
    def is_fully_cached(self) -> bool:
        if self.storage_level is StorageLevel.NONE:
            return False
        return all(
            i in self._memory or i in self._disk
            for i in range(self.num_partitions)
        )

    # ─── Persistence ─────────────────────────────────────────────────────

    def persist(self, level: StorageLevel = StorageLevel.MEMORY_ONLY) -> PartitionedCollection:
        """
        Keep computed partitions at ``level`` from now on. Partitions that
        are already cached move to the new level.
        """
        if level is self.storage_level:
            return self
        if level is StorageLevel.NONE:
            return self.unpersist()

        for index in range(self.num_partitions):
            with self._locks[index]:
                items = self._memory.get(index)
                if items is None and index in self._disk:
                    items = self._read_spill(index)
                if items is None:
                    continue
                if level.use_disk and index not in self._disk:
                    self._write_spill(index, items)
                elif not level.use_disk and index in self._disk:
                    self._spill_path(index).unlink(missing_ok=True)
                    self._disk.discard(index)
                if level.use_memory:
                    self._memory[index] = items
                else:
                    self._memory.pop(index, None)

        self.storage_level = level
        return self

    def cache(self) -> PartitionedCollection:
        return self.persist(StorageLevel.MEMORY_ONLY)

    def unpersist(self) -> PartitionedCollection:
        """Drop every cached copy of this collection."""
        for index in list(self._disk):
            self._spill_path(index).unlink(missing_ok=True)
        self._disk.clear()
        self._memory.clear()
        self.storage_level = StorageLevel.NONE
        return self

    def evict(self, index: int, include_disk: bool = False) -> None:
        """
        Forget the cached copy of one partition, as if the worker holding
        it had died. The next access recomputes it from lineage (or reads
        the disk spill, unless ``include_disk``).
        """
        with self._locks[index]:
            self._memory.pop(index, None)
            if include_disk and index in self._disk:
                self._spill_path(index).unlink(missing_ok=True)
                self._disk.discard(index)

    def _spill_path(self, index: int) -> Path:
        return self.context.spill_dir / f"c{self.id:06d}" / f"part-{index:05d}.pt"

    def _write_spill(self, index: int, items: list) -> None:
        path = self._spill_path(index)
        path.parent.mkdir(parents=True, exist_ok=True)
        torch.save(items, path)
        self._disk.add(index)

    def _read_spill(self, index: int) -> list:
        return torch.load(self._spill_path(index), weights_only=False)

    # ─── Actions ─────────────────────────────────────────────────────────

    def count(self) -> int:
        """Materialize every partition (in parallel) and count the items."""
        self._prepare()
        sizes = self.context.run(
            lambda i: len(self.partition(i)), range(self.num_partitions)
        )
        return sum(sizes)

    def collect(self) -> list:
        self._prepare()
        parts = self.context.run(self.partition, range(self.num_partitions))
        return [item for part in parts for item in part]

    def glom(self) -> list[list]:
        """All partitions as a list of lists."""
        self._prepare()
        return self.context.run(self.partition, range(self.num_partitions))

    # ─── Transformations ─────────────────────────────────────────────────

    def map_partitions(
        self,
        fn: Callable[[int, Iterator], Iterable],
        name: Optional[str] = None,
    ) -> PartitionedCollection:
        """``fn(partition_index, items)`` → new items, partition by partition."""
        return MappedCollection(self, fn, name=name or f"{self.name}.map_partitions")

    def map(self, fn: Callable[[Any], Any]) -> PartitionedCollection:
        return self.map_partitions(
            lambda _, it: (fn(x) for x in it), name=f"{self.name}.map"
        )

    def flat_map(self, fn: Callable[[Any], Iterable]) -> PartitionedCollection:
        return self.map_partitions(
            lambda _, it: (y for x in it for y in fn(x)), name=f"{self.name}.flat_map"
        )

    def filter(self, fn: Callable[[Any], bool]) -> PartitionedCollection:
        return self.map_partitions(
            lambda _, it: (x for x in it if fn(x)), name=f"{self.name}.filter"
        )

    def partition_by(
        self,
        slot_fn: Callable[[Any], int],
        num_partitions: Optional[int] = None,
        name: Optional[str] = None,
    ) -> PartitionedCollection:
        """Move every item to partition ``slot_fn(item)``."""
        return ShuffledCollection(
            self,
            slot_fn,
            num_partitions or self.num_partitions,
            name=name or f"{self.name}.partition_by",
        )

    def zip_partitions(
        self,
        other: PartitionedCollection,
        fn: Callable[[int, Iterator, Iterator], Iterable],
        name: Optional[str] = None,
    ) -> PartitionedCollection:
        """``fn(index, self_items, other_items)`` for every pair of equal-index partitions."""
        return ZippedCollection(self, other, fn, name=name or f"{self.name}.zip")

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(name={self.name}, id={self.id}, "
            f"partitions={self.num_partitions}, "
            f"storage={self.storage_level.name})"
        )


class SourceCollection(PartitionedCollection):
    """Collection backed by in-memory input partitions (the lineage root)."""

    def __init__(self, context: ClusterContext, partitions: list[list], name: str = "source"):
        super().__init__(context, len(partitions), name=name)
        self._source = [list(p) for p in partitions]

    def _compute(self, index: int) -> Iterable:
        return self._source[index]


class MappedCollection(PartitionedCollection):
    def __init__(
        self,
        parent: PartitionedCollection,
        fn: Callable[[int, Iterator], Iterable],
        name: str,
    ):
        super().__init__(parent.context, parent.num_partitions, (parent,), name)
        self._fn = fn

    def _compute(self, index: int) -> Iterable:
        return self._fn(index, self.parents[0].iterator(index))


class ShuffledCollection(PartitionedCollection):
    """
    Result of ``partition_by``. The map side buckets every parent
    partition once and the buckets are kept, so an output partition
    requested again (for instance after an evict()) is served from them
    without touching the parent. ``unpersist()`` releases the buckets;
    after that a request rebuilds them from the parent lineage.
    """

    def __init__(
        self,
        parent: PartitionedCollection,
        slot_fn: Callable[[Any], int],
        num_partitions: int,
        name: str,
    ):
        super().__init__(parent.context, num_partitions, (parent,), name)
        self._slot_fn = slot_fn
        self._map_outputs: Optional[list[list[list]]] = None
        self._shuffle_lock = threading.Lock()

    @property
    def has_map_outputs(self) -> bool:
        return self._map_outputs is not None

    def _bucket(self, items: Iterable) -> list[list]:
        buckets: list[list] = [[] for _ in range(self.num_partitions)]
        for item in items:
            slot = self._slot_fn(item)
            if not 0 <= slot < self.num_partitions:
                raise ValueError(
                    f"{self.name}: slot {slot} out of range "
                    f"[0, {self.num_partitions})"
                )
            buckets[slot].append(item)
        return buckets

    def _prepare(self) -> None:
        if self.has_map_outputs or self.is_fully_cached:
            return
        super()._prepare()
        parent = self.parents[0]
        outputs = self.context.run(
            lambda i: self._bucket(parent.iterator(i)),
            range(parent.num_partitions),
        )
        with self._shuffle_lock:
            if self._map_outputs is None:
                self._map_outputs = outputs

    def _compute(self, index: int) -> Iterable:
        parent = self.parents[0]
        with self._shuffle_lock:
            if self._map_outputs is None:
                logger.debug(f"{self.name}: rebuilding map outputs from lineage")
                self._map_outputs = [
                    self._bucket(parent.iterator(i))
                    for i in range(parent.num_partitions)
                ]
            outputs = self._map_outputs
        return [item for buckets in outputs for item in buckets[index]]

    def unpersist(self) -> PartitionedCollection:
        with self._shuffle_lock:
            self._map_outputs = None
        return super().unpersist()


class ZippedCollection(PartitionedCollection):
    def __init__(
        self,
        left: PartitionedCollection,
        right: PartitionedCollection,
        fn: Callable[[int, Iterator, Iterator], Iterable],
        name: str,
    ):
        if left.num_partitions != right.num_partitions:
            raise ValueError(
                f"Can only zip collections with equal partition counts, got "
                f"{left.num_partitions} and {right.num_partitions}"
            )
        super().__init__(left.context, left.num_partitions, (left, right), name)
        self._fn = fn

    def _compute(self, index: int) -> Iterable:
        left, right = self.parents
        return self._fn(index, left.iterator(index), right.iterator(index))
