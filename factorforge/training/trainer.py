"""
FactorForge Core Trainer
==========================
The epoch/partition scheduling loop shared by every factorization model.
Subclasses decide WHAT the data is (how embeddings are initialized and
how training pairs are generated); this class handles HOW it is trained.

What This Handles:
    - Resume from the latest complete checkpoint, or initialize
    - The rotation table, broadcast once per run
    - Per step: learning-rate decay, the two step partitioners,
      re-keying embeddings into slots, pair generation, the per-slot
      local optimizer, and the synchronous barrier before the next step
    - Periodic checkpoints and release of superseded generations
    - Run metrics (time, peak memory, loss)

One Step, (epoch, pI):
    partitioner1 = STABLE_HASH(epoch)          → slot of every LEFT item
    partitioner2 = ROTATION(epoch, pI, table)  → slot of every RIGHT item
    embeddings  ──partition_by──┐
                                ├─ zip ─→ LocalOptimizer per slot ─→ new generation
    pairs(data) ──partition_by──┘

    Over pI = 0..P-1 the rotation sends every RIGHT bucket through every
    slot once, so each LEFT partition meets each RIGHT partition once per
    epoch.

Failures:
    An exception in any slot aborts the step and the run
    (TrainingStepError). Lost cached partitions are recomputed by the
    collection engine; the trainer never rebuilds data itself. Relaunching
    the process resumes from the newest complete checkpoint.

Usage:
    Not used directly. See Item2Vec in item2vec.py.
"""

from __future__ import annotations

import logging
from typing import Generic, Iterator, Optional, TypeVar

import numpy as np

from factorforge.config import FactorForgeConfig
from factorforge.data.records import ItemRecord, TrainingPair
from factorforge.engine.collection import PartitionedCollection
from factorforge.engine.context import ClusterContext
from factorforge.evaluation.metrics import MemoryTracker
from factorforge.partitioning.partitioner import Partitioner
from factorforge.partitioning.table import create_partition_table
from factorforge.training.checkpoint import CheckpointKey, CheckpointManager
from factorforge.training.optimizer import LocalOptimizer, OptimizerOptions
from factorforge.training.schedule import (
    iter_steps,
    learning_rate_at,
    progress,
    step_seed,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TrainingStepError(RuntimeError):
    """A scheduler step failed; the run is aborted."""

    def __init__(self, epoch: int, partition_index: int, cause: BaseException):
        super().__init__(
            f"Step (epoch={epoch}, partition={partition_index}) failed: {cause}"
        )
        self.epoch = epoch
        self.partition_index = partition_index


class FactorizationTrainer(Generic[T]):
    """
    Base trainer. Subclasses implement ``initialize`` and ``pairs``.

    Parameters
    ----------
    config : FactorForgeConfig
        Full configuration. Validated on construction.
    context : ClusterContext
        Execution context for all collections of the run.
    """

    def __init__(self, config: FactorForgeConfig, context: ClusterContext):
        config.validate()
        self.config = config
        self.context = context
        self.last_results: dict = {}

        storage = config.storage
        self.checkpoints: Optional[CheckpointManager] = None
        if storage.checkpoint_path:
            self.checkpoints = CheckpointManager(
                storage.checkpoint_path,
                context,
                storage_level=storage.intermediate_level,
            )

    # ─── Subclass hooks ──────────────────────────────────────────────────

    def initialize(self, data: PartitionedCollection) -> PartitionedCollection:
        """Initial ItemRecords (both sides) derived from the raw data."""
        raise NotImplementedError

    def pairs(
        self,
        data: PartitionedCollection,
        partitioner1: Partitioner,
        partitioner2: Partitioner,
        seed: int,
    ) -> PartitionedCollection:
        """Slot-addressed TrainingPairs of one step."""
        raise NotImplementedError

    def gamma(self) -> float:
        return self.config.factorization.gamma

    # ─── Helpers ─────────────────────────────────────────────────────────

    def _cache_and_count(self, collection: PartitionedCollection) -> PartitionedCollection:
        collection.persist(self.config.storage.intermediate_level)
        collection.count()
        return collection

    def _optimizer_options(self, learning_rate: float) -> OptimizerOptions:
        f = self.config.factorization
        t = self.config.training
        return OptimizerOptions(
            vector_size=f.dot_vector_size,
            use_bias=f.use_bias,
            negative=f.negative,
            pow=f.pow,
            learning_rate=learning_rate,
            lambda_=f.lambda_,
            gamma=self.gamma(),
            implicit_prefs=f.implicit_prefs,
            verbose=t.verbose,
            batch_size=t.batch_size,
        )

    # ─── Training ────────────────────────────────────────────────────────

    def train(self, data: PartitionedCollection) -> PartitionedCollection:
        """
        Run every remaining step and return the final embeddings.

        Parameters
        ----------
        data : PartitionedCollection
            Raw training data, in whatever form the subclass expects.

        Returns
        -------
        PartitionedCollection
            ItemRecords, persisted at the final storage level.
            ``last_results`` holds the run metrics. The table broadcast is
            destroyed on return, but the lineage of the result still
            references the rotation table so lost partitions can be
            recomputed. Drop the result, or reload it from a snapshot, to
            release the table.
        """
        t = self.config.training
        storage = self.config.storage
        n_parts = t.num_partitions

        latest = self.checkpoints.resolve_latest() if self.checkpoints else None
        cached: list[PartitionedCollection] = []

        if latest is not None:
            logger.info(
                f"Continue training from epoch = {latest.epoch}, "
                f"iteration = {latest.iteration}"
            )
            emb = self.checkpoints.load(latest)
            start_epoch, start_iter = latest.epoch, latest.iteration
        else:
            emb = self._cache_and_count(self.initialize(data))
            start_epoch, start_iter = 0, 0
        cached.append(emb)

        table = self.context.broadcast(
            create_partition_table(
                n_parts,
                np.random.default_rng(t.seed),
                table_size=t.partition_table_size,
            )
        )

        results = {
            "resumed_from": None if latest is None else latest.name,
            "steps": 0,
            "checkpoints": [],
            "final_learning_rate": None,
            "final_loss": None,
            "peak_memory_mb": 0.0,
            "total_time_seconds": 0.0,
        }

        checkpoint_iter = 0
        tracker = MemoryTracker("Training")

        with tracker, table:
            for step in iter_steps(t.num_iterations, n_parts, start_epoch, start_iter):
                epoch, p_idx = step.epoch, step.partition_index
                lr = learning_rate_at(
                    progress(epoch, p_idx, t.num_iterations, n_parts),
                    t.learning_rate,
                    t.min_learning_rate,
                )
                logger.info(
                    f"Step epoch={epoch + 1}/{t.num_iterations}, "
                    f"partition={p_idx + 1}/{n_parts}, lr={lr:.6g}"
                )

                try:
                    emb, losses = self._run_step(emb, data, table.value, epoch, p_idx, lr)
                except Exception as e:
                    raise TrainingStepError(epoch, p_idx, e) from e
                cached.append(emb)

                results["steps"] += 1
                results["final_learning_rate"] = lr
                results["final_loss"] = mean_loss(losses)

                if (
                    storage.checkpoint_interval > 0
                    and (checkpoint_iter + 1) % storage.checkpoint_interval == 0
                ):
                    key = CheckpointKey(epoch, p_idx + 1)
                    self.checkpoints.save(
                        emb, key, extra_metadata={"learning_rate": lr}
                    )
                    emb = self.checkpoints.load(key)
                    for generation in cached:
                        generation.unpersist()
                    cached.clear()
                    cached.append(emb)
                    results["checkpoints"].append(key.name)
                checkpoint_iter += 1

            emb.persist(storage.final_level)
            emb.count()
            for generation in cached:
                if generation is not emb:
                    generation.unpersist()
            cached.clear()

        results["peak_memory_mb"] = tracker.peak_mb
        results["total_time_seconds"] = tracker.duration_seconds
        self.last_results = results

        logger.info(
            f"Training complete in {results['total_time_seconds']:.1f}s — "
            f"{results['steps']} steps, peak_mem={results['peak_memory_mb']:.1f}MB"
        )
        return emb

    def _run_step(
        self,
        emb: PartitionedCollection,
        data: PartitionedCollection,
        table,
        epoch: int,
        p_idx: int,
        lr: float,
    ) -> tuple[PartitionedCollection, dict[int, tuple[float, int]]]:
        t = self.config.training
        n_parts = t.num_partitions

        partitioner1 = Partitioner.stable_hash(n_parts, epoch)
        partitioner2 = Partitioner.rotation(table, epoch, p_idx)
        partitioner_key = Partitioner.identity(n_parts)

        emb_lr = emb.partition_by(
            lambda r: partitioner1.get_partition(r.id)
            if r.is_left
            else partitioner2.get_partition(r.id),
            n_parts,
            name=f"embeddings_{epoch}_{p_idx}",
        )

        seed = step_seed(epoch, p_idx, n_parts)
        cur = self.pairs(data, partitioner1, partitioner2, seed).partition_by(
            lambda pair: partitioner_key.get_partition(pair.partition),
            n_parts,
            name=f"pairs_{epoch}_{p_idx}",
        )

        options = self._optimizer_options(lr)
        num_thread = t.num_thread
        losses: dict[int, tuple[float, int]] = {}

        def optimize_slot(
            slot: int,
            pairs_it: Iterator[TrainingPair],
            records_it: Iterator[ItemRecord],
        ) -> list[ItemRecord]:
            sg = LocalOptimizer(options, records_it, seed=seed)
            sg.optimize(pairs_it, num_thread)
            if options.verbose:
                logger.debug(f"LOSS: {sg.loss_summary()}")
            losses[slot] = (sg.loss, sg.loss_n)
            return list(sg.flush())

        new_emb = cur.zip_partitions(
            emb_lr, optimize_slot, name=f"generation_{epoch}_{p_idx}"
        )
        self._cache_and_count(new_emb)
        emb_lr.unpersist()
        cur.unpersist()
        return new_emb, losses


def mean_loss(losses: dict[int, tuple[float, int]]) -> Optional[float]:
    """Loss per pair over the slots of one step, or None if no pair was seen."""
    total = sum(loss for loss, _ in losses.values())
    n = sum(count for _, count in losses.values())
    return total / n if n else None
