"""
FactorForge Cluster Context
=============================
Owns the resources every partitioned collection shares:

    - a thread pool that computes partitions in parallel
    - a spill directory for disk-backed storage levels
    - the registry of broadcast values

Usage:
    >>> with ClusterContext(num_workers=4) as ctx:
    ...     data = ctx.parallelize(sequences, num_partitions=8)
    ...     table = ctx.broadcast(create_partition_table(8, rng))
    ...     ...
    ...     table.destroy()
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Generic, Iterable, Optional, Sequence, TypeVar

from factorforge.engine.collection import PartitionedCollection, SourceCollection

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class BroadcastDestroyedError(RuntimeError):
    """Raised when a destroyed broadcast value is read."""


class Broadcast(Generic[T]):
    """
    Read-only value shared by every task of a run.

    The value is held once by the context; tasks read it through the
    handle. ``destroy()`` releases the handle's reference, after which
    reads through it fail loudly. Objects that captured ``.value`` (a
    partitioner in some lineage, say) keep their own reference until they
    are collected.
    """

    def __init__(self, context: ClusterContext, broadcast_id: int, value: T):
        self._context = context
        self.id = broadcast_id
        self._value: Optional[T] = value
        self._destroyed = False

    @property
    def value(self) -> T:
        if self._destroyed:
            raise BroadcastDestroyedError(f"Broadcast {self.id} was destroyed")
        return self._value

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    def destroy(self) -> None:
        if not self._destroyed:
            self._destroyed = True
            self._value = None
            self._context._forget_broadcast(self.id)

    def __enter__(self) -> Broadcast[T]:
        return self

    def __exit__(self, *args) -> None:
        self.destroy()

    def __repr__(self) -> str:
        state = "destroyed" if self._destroyed else "live"
        return f"Broadcast(id={self.id}, {state})"


class ClusterContext:
    """
    In-process execution context for partitioned collections.

    Parameters
    ----------
    num_workers : int
        Threads used to compute partitions concurrently.
    spill_dir : str or None
        Where disk-backed partitions go. None = a temporary directory
        removed by ``stop()``.
    """

    def __init__(self, num_workers: int = 4, spill_dir: Optional[str] = None):
        if num_workers < 1:
            raise ValueError(f"num_workers must be >= 1, got {num_workers}")
        self.num_workers = num_workers
        self._executor = ThreadPoolExecutor(
            max_workers=num_workers, thread_name_prefix="factorforge-worker"
        )
        self._owns_spill_dir = spill_dir is None
        if spill_dir is None:
            self.spill_dir = Path(tempfile.mkdtemp(prefix="factorforge_spill_"))
        else:
            self.spill_dir = Path(spill_dir)
            self.spill_dir.mkdir(parents=True, exist_ok=True)

        self._broadcasts: dict[int, Broadcast] = {}
        self._next_broadcast_id = 0
        self._lock = threading.Lock()
        self._stopped = False

        logger.info(
            f"ClusterContext started: {num_workers} workers, "
            f"spill_dir={self.spill_dir}"
        )

    # ─── Collections ─────────────────────────────────────────────────────

    def parallelize(
        self,
        items: Iterable,
        num_partitions: int,
        name: str = "parallelize",
    ) -> PartitionedCollection:
        """Split ``items`` round-robin into ``num_partitions`` partitions."""
        if num_partitions < 1:
            raise ValueError(f"num_partitions must be >= 1, got {num_partitions}")
        partitions: list[list] = [[] for _ in range(num_partitions)]
        for i, item in enumerate(items):
            partitions[i % num_partitions].append(item)
        return SourceCollection(self, partitions, name=name)

    def from_partitions(
        self,
        partitions: Sequence[Iterable],
        name: str = "source",
    ) -> PartitionedCollection:
        """Wrap pre-split partitions without moving items around."""
        return SourceCollection(self, [list(p) for p in partitions], name=name)

    # ─── Broadcasts ──────────────────────────────────────────────────────

    def broadcast(self, value: T) -> Broadcast[T]:
        with self._lock:
            bid = self._next_broadcast_id
            self._next_broadcast_id += 1
            handle = Broadcast(self, bid, value)
            self._broadcasts[bid] = handle
        return handle

    def _forget_broadcast(self, broadcast_id: int) -> None:
        with self._lock:
            self._broadcasts.pop(broadcast_id, None)

    @property
    def live_broadcasts(self) -> int:
        with self._lock:
            return len(self._broadcasts)

    # ─── Execution ───────────────────────────────────────────────────────

    def run(self, fn: Callable[[int], R], indices: Iterable[int]) -> list[R]:
        """
        Run ``fn(index)`` for every index on the worker pool and return
        the results in index order. The first task failure cancels the
        tasks that have not started and is re-raised.
        """
        if self._stopped:
            raise RuntimeError("ClusterContext has been stopped")

        futures = [self._executor.submit(fn, i) for i in indices]
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        for future in futures:
            if future in done and future.exception() is not None:
                for p in pending:
                    p.cancel()
                raise future.exception()
        return [f.result() for f in futures]

    # ─── Lifecycle ───────────────────────────────────────────────────────

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        with self._lock:
            handles = list(self._broadcasts.values())
        for handle in handles:
            handle.destroy()
        self._executor.shutdown(wait=True)
        if self._owns_spill_dir:
            shutil.rmtree(self.spill_dir, ignore_errors=True)
        logger.info("ClusterContext stopped")

    def __enter__(self) -> ClusterContext:
        return self

    def __exit__(self, *args) -> None:
        self.stop()

    def __repr__(self) -> str:
        return (
            f"ClusterContext(workers={self.num_workers}, "
            f"spill_dir={self.spill_dir})"
        )
