"""
FactorForge Evaluation Metrics
================================
Measurements of a training run and of the vectors it produced.

Metrics Explained:

1. NEIGHBOUR HIT RATE
   For a sample of (anchor, context) co-occurrences drawn from held-out
   sequences: how often is the context among the anchor's k nearest
   neighbours (cosine on LEFT vectors)?

   Interpretation:
   - 0.0: the vectors carry no co-occurrence signal
   - k / num_items: what random vectors would score
   - Anything well above that: the model has learned structure

2. VECTOR STATISTICS
   Norm statistics per side. Useful to spot a run that diverged
   (exploding norms) or never trained (RIGHT vectors still zero).

3. MEMORY TRACKING / TIMING
   Peak traced memory and wall-clock time of a block, via tracemalloc.

Usage:
    >>> from factorforge.evaluation.metrics import neighbour_hit_rate
    >>> rate = neighbour_hit_rate(model, sequences, k=10)
    >>> print(f"Hit@10: {rate:.3f}")
"""

from __future__ import annotations

import logging
import random
import time
import tracemalloc
from typing import TYPE_CHECKING, Iterable, Optional, Sequence

import numpy as np
import torch
import torch.nn.functional as F

if TYPE_CHECKING:
    from factorforge.training.item2vec import Item2VecModel

logger = logging.getLogger(__name__)


@torch.no_grad()
def neighbour_hit_rate(
    model: Item2VecModel,
    sequences: Iterable[Sequence[int]],
    k: int = 10,
    max_pairs: int = 10_000,
    seed: int = 0,
) -> float:
    """
    Fraction of sampled co-occurring pairs whose context is in the
    anchor's top-k neighbours.

    Parameters
    ----------
    model : Item2VecModel
        Fitted model.
    sequences : iterable of sequences of int
        Evaluation sequences. Items unknown to the model are skipped.
    k : int
        Neighbourhood size.
    max_pairs : int
        Cap on the number of (anchor, context) pairs scored.
    seed : int
        Seed for picking pairs.

    Returns
    -------
    float
        Hit rate in [0, 1], or 0.0 if no pair could be scored.
    """
    rng = random.Random(seed)
    anchors: list[int] = []
    contexts: list[int] = []
    for seq in sequences:
        known = [i for i in seq if i in model]
        if len(known) < 2:
            continue
        a, c = rng.sample(range(len(known)), 2)
        if known[a] == known[c]:
            continue
        anchors.append(known[a])
        contexts.append(known[c])
        if len(anchors) >= max_pairs:
            break

    if not anchors:
        logger.warning("No scorable pairs found. Returning 0.0 hit rate.")
        return 0.0

    index = {item_id: i for i, item_id in enumerate(model.ids)}
    vectors = model.left[:, :-1] if model.use_bias else model.left
    normed = F.normalize(vectors, dim=1)

    a_idx = torch.tensor([index[i] for i in anchors], dtype=torch.long)
    c_idx = torch.tensor([index[i] for i in contexts], dtype=torch.long)

    sims = normed[a_idx] @ normed.T
    sims[torch.arange(len(a_idx)), a_idx] = float("-inf")
    k = max(1, min(k, len(model.ids) - 1))
    top = torch.topk(sims, k, dim=1).indices

    hits = (top == c_idx.unsqueeze(1)).any(dim=1).float().mean().item()
    logger.info(f"Hit@{k}: {hits:.4f} ({len(anchors):,} pairs)")
    return hits


def vector_stats(model: Item2VecModel) -> dict:
    """Mean/max L2 norm per side and the share of all-zero RIGHT vectors."""
    stats = {"num_items": len(model.ids)}
    for name, matrix in (("left", model.left), ("right", model.right)):
        vectors = matrix[:, :-1] if model.use_bias else matrix
        norms = vectors.norm(dim=1)
        stats[f"{name}_mean_norm"] = float(norms.mean())
        stats[f"{name}_max_norm"] = float(norms.max())
    zero_right = (model.right.abs().sum(dim=1) == 0).float().mean()
    stats["right_zero_fraction"] = float(zero_right)
    stats["finite"] = bool(
        np.isfinite(model.left.numpy()).all() and np.isfinite(model.right.numpy()).all()
    )
    return stats


class MemoryTracker:
    """
    Context manager for tracking peak memory usage during a block of code.

    Uses Python's tracemalloc, which also sees allocations made by worker
    threads. Tensor storage allocated by torch's C++ allocator is not
    traced.

    Usage:
        >>> with MemoryTracker("Training") as tracker:
        ...     trainer.train(data)
        >>> print(f"Peak: {tracker.peak_mb:.1f} MB")
    """

    def __init__(self, label: str = "operation"):
        self.label = label
        self.peak_mb: float = 0.0
        self.current_mb: float = 0.0
        self.duration_seconds: float = 0.0
        self._start_time: float = 0.0
        self._owns_tracing = False

    def __enter__(self):
        # Nested trackers share the outer trace
        self._owns_tracing = not tracemalloc.is_tracing()
        if self._owns_tracing:
            tracemalloc.start()
        self._start_time = time.time()
        return self

    def __exit__(self, *args):
        current, peak = tracemalloc.get_traced_memory()
        if self._owns_tracing:
            tracemalloc.stop()

        self.current_mb = current / (1024 * 1024)
        self.peak_mb = peak / (1024 * 1024)
        self.duration_seconds = time.time() - self._start_time

        logger.info(
            f"[{self.label}] Memory: peak={self.peak_mb:.1f}MB, "
            f"current={self.current_mb:.1f}MB, "
            f"time={self.duration_seconds:.2f}s"
        )

    def __repr__(self) -> str:
        return (
            f"MemoryTracker({self.label}: "
            f"peak={self.peak_mb:.1f}MB, "
            f"time={self.duration_seconds:.2f}s)"
        )


class Timer:
    """
    Wall-clock timer for a block.

    ``level`` is the logging level the elapsed time is reported at when
    the block exits; None keeps it quiet and leaves reporting to the caller.

    Usage:
        >>> with Timer("checkpoint 1_4", level=None) as t:
        ...     write_snapshot(embeddings, path, metadata)
        >>> logger.info(f"Saved in {t.elapsed:.2f}s")
    """

    def __init__(self, label: str = "operation", level: Optional[int] = logging.INFO):
        self.label = label
        self.level = level
        self.elapsed: float = 0.0
        self._start: float = 0.0

    def __enter__(self) -> Timer:
        self._start = time.perf_counter()
        return self

    def __exit__(self, *args) -> None:
        self.elapsed = time.perf_counter() - self._start
        if self.level is not None:
            logger.log(self.level, f"[{self.label}] {self.elapsed:.2f}s")
