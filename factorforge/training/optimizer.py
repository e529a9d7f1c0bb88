"""
FactorForge Local Optimizer
=============================
The single-slot SGD kernel. One instance owns the records that are
resident in one slot for one scheduler step, consumes the TrainingPairs
addressed to that slot, and hands back freshly built records.

The Loss:
    Logistic factorization. For a pair (anchor a, context c) with
    LEFT vector u_a and RIGHT vector v_c:

        implicit:  -log σ(u_a·v_c) - γ Σ_neg log σ(-u_a·v_n)
        explicit:  -[y log σ(u_a·v_c) + (1-y) log σ(-u_a·v_c)]

    plus λ/2 (|u|² + |v|²) on every touched vector. Negatives are RIGHT
    records resident in the same slot, drawn with probability
    ∝ count^pow. Because the rotation partitioner moves RIGHT items
    through every slot during an epoch, local negatives are an unbiased
    stand-in for a global sampler.

Bias:
    With ``use_bias`` every vector has one extra trailing slot. The LEFT
    slot stays at 1.0 and the RIGHT slot is learned, so u·v includes a
    per-context bias.

Threads:
    ``optimize(pairs, num_threads)`` splits the pairs into one shard per
    thread. Threads update the shared tensors without locks (Hogwild).

Usage:
    >>> opt = LocalOptimizer(options, records, seed=7)
    >>> opt.optimize(pairs, num_threads=2)
    >>> new_records = opt.flush()
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Iterator, Sequence

import numpy as np
import torch
import torch.nn.functional as F

from factorforge.data.records import ItemRecord, TrainingPair

logger = logging.getLogger(__name__)


class MissingRecordError(KeyError):
    """A pair references an item that is not resident in the slot."""


@dataclass(frozen=True)
class OptimizerOptions:
    """
    Per-step settings of the local kernel.

    ``vector_size`` excludes the bias slot; ``lambda_`` is the L2
    strength; ``gamma`` weights the negative term.
    """
    vector_size: int
    use_bias: bool = False
    negative: int = 10
    pow: float = 0.0
    learning_rate: float = 0.025
    lambda_: float = 0.0
    gamma: float = 1.0
    implicit_prefs: bool = True
    verbose: bool = False
    batch_size: int = 256

    @property
    def full_vector_size(self) -> int:
        return self.vector_size + (1 if self.use_bias else 0)


class LocalOptimizer:
    """
    Logistic-factorization SGD over the records of one slot.

    Parameters
    ----------
    options : OptimizerOptions
        Kernel settings for this step.
    records : iterable of ItemRecord
        Everything resident in the slot, both sides.
    seed : int
        Seed for negative sampling.
    """

    def __init__(
        self,
        options: OptimizerOptions,
        records: Iterable[ItemRecord],
        seed: int = 0,
    ):
        self.options = options
        self.seed = seed

        left: list[ItemRecord] = []
        right: list[ItemRecord] = []
        for record in records:
            if record.factors.shape[0] != options.full_vector_size:
                raise ValueError(
                    f"Record {record.id} ({record.side.name}) has "
                    f"{record.factors.shape[0]} factors, expected "
                    f"{options.full_vector_size}"
                )
            (left if record.is_left else right).append(record)

        self._left_records = left
        self._right_records = right
        self._left_index = {r.id: i for i, r in enumerate(left)}
        self._right_index = {r.id: i for i, r in enumerate(right)}

        self.left = self._stack(left)
        self.right = self._stack(right)

        counts = torch.tensor([float(r.count) for r in right], dtype=torch.float64)
        if right and options.pow > 0:
            self._neg_weights = counts.clamp(min=1.0).pow(options.pow).float()
        else:
            self._neg_weights = torch.ones(len(right), dtype=torch.float32)

        # Running loss accumulators (logged when verbose)
        self.loss = 0.0
        self.loss_n = 0
        self.loss_reg = 0.0
        self.loss_reg_n = 0
        self._stats_lock = threading.Lock()

    def _stack(self, records: Sequence[ItemRecord]) -> torch.Tensor:
        if not records:
            return torch.zeros(0, self.options.full_vector_size)
        return torch.from_numpy(np.stack([r.factors for r in records])).clone()

    @property
    def num_right(self) -> int:
        return len(self._right_records)

    # ─── Training ────────────────────────────────────────────────────────

    def optimize(self, pairs: Iterable[TrainingPair], num_threads: int = 1) -> int:
        """
        Run SGD over ``pairs``. Returns the number of pairs consumed.

        Raises
        ------
        MissingRecordError
            If a pair's anchor (LEFT) or context (RIGHT) is not resident.
        """
        anchors, contexts, labels = self._index_pairs(pairs)
        n = anchors.shape[0]
        if n == 0:
            return 0

        if num_threads <= 1 or n < 2 * self.options.batch_size:
            self._run_shard(anchors, contexts, labels, self.seed)
            return n

        shards = torch.arange(n).tensor_split(num_threads)
        with ThreadPoolExecutor(
            max_workers=num_threads, thread_name_prefix="factorforge-sgd"
        ) as pool:
            futures = [
                pool.submit(
                    self._run_shard,
                    anchors[idx],
                    contexts[idx],
                    labels[idx],
                    self.seed + k,
                )
                for k, idx in enumerate(shards)
                if len(idx)
            ]
            for future in futures:
                future.result()
        return n

    def _index_pairs(
        self, pairs: Iterable[TrainingPair]
    ) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        anchors: list[int] = []
        contexts: list[int] = []
        labels: list[float] = []
        for pair in pairs:
            try:
                a = self._left_index[pair.anchor_id]
            except KeyError:
                raise MissingRecordError(
                    f"Anchor {pair.anchor_id} is not resident in slot "
                    f"{pair.partition}"
                ) from None
            try:
                c = self._right_index[pair.context_id]
            except KeyError:
                raise MissingRecordError(
                    f"Context {pair.context_id} is not resident in slot "
                    f"{pair.partition}"
                ) from None
            anchors.append(a)
            contexts.append(c)
            labels.append(pair.label)

        # Shuffle so that consecutive pairs of one sequence do not share a batch
        order = torch.from_numpy(
            np.random.default_rng(self.seed).permutation(len(anchors))
        )
        return (
            torch.tensor(anchors, dtype=torch.long)[order],
            torch.tensor(contexts, dtype=torch.long)[order],
            torch.tensor(labels, dtype=torch.float32)[order],
        )

    def _run_shard(
        self,
        anchors: torch.Tensor,
        contexts: torch.Tensor,
        labels: torch.Tensor,
        seed: int,
    ) -> None:
        generator = torch.Generator().manual_seed(seed)
        bs = self.options.batch_size
        for start in range(0, anchors.shape[0], bs):
            self._step(
                anchors[start:start + bs],
                contexts[start:start + bs],
                labels[start:start + bs],
                generator,
            )

    @torch.no_grad()
    def _step(
        self,
        a: torch.Tensor,
        c: torch.Tensor,
        y: torch.Tensor,
        generator: torch.Generator,
    ) -> None:
        opts = self.options
        lr = opts.learning_rate
        u = self.left[a]
        v = self.right[c]

        score = (u * v).sum(dim=1)

        if opts.implicit_prefs:
            g_pos = torch.sigmoid(score) - 1.0
            loss = -F.logsigmoid(score).sum().item()
        else:
            g_pos = torch.sigmoid(score) - y
            loss = F.binary_cross_entropy_with_logits(
                score, y, reduction="sum"
            ).item()

        grad_u = g_pos.unsqueeze(1) * v
        grad_v = g_pos.unsqueeze(1) * u

        grad_neg = None
        neg = None
        if opts.implicit_prefs and opts.negative > 0 and self.num_right > 1:
            neg = torch.multinomial(
                self._neg_weights,
                a.shape[0] * opts.negative,
                replacement=True,
                generator=generator,
            ).view(a.shape[0], opts.negative)
            mask = (neg != c.unsqueeze(1)).float()
            vn = self.right[neg]
            neg_score = torch.einsum("bd,bkd->bk", u, vn)
            g_neg = opts.gamma * torch.sigmoid(neg_score) * mask
            loss += -(opts.gamma * F.logsigmoid(-neg_score) * mask).sum().item()

            grad_u = grad_u + torch.einsum("bk,bkd->bd", g_neg, vn)
            grad_neg = g_neg.unsqueeze(2) * u.unsqueeze(1)

        reg = 0.0
        if opts.lambda_ > 0:
            grad_u = grad_u + opts.lambda_ * u
            grad_v = grad_v + opts.lambda_ * v
            reg = 0.5 * opts.lambda_ * ((u * u).sum() + (v * v).sum()).item()
            if grad_neg is not None:
                grad_neg = grad_neg + opts.lambda_ * vn

        if opts.use_bias:
            # LEFT bias slot is the constant 1.0
            grad_u[:, -1] = 0.0

        self.left.index_add_(0, a, grad_u, alpha=-lr)
        self.right.index_add_(0, c, grad_v, alpha=-lr)
        if grad_neg is not None:
            self.right.index_add_(
                0, neg.reshape(-1), grad_neg.reshape(-1, grad_neg.shape[-1]), alpha=-lr
            )

        with self._stats_lock:
            self.loss += loss
            self.loss_n += a.shape[0]
            if opts.lambda_ > 0:
                self.loss_reg += reg
                self.loss_reg_n += a.shape[0]

    # ─── Output ──────────────────────────────────────────────────────────

    def loss_summary(self) -> str:
        data = self.loss / max(self.loss_n, 1)
        reg = self.loss_reg / max(self.loss_reg_n, 1)
        return (
            f"loss={data:.6f} ({self.loss:.4f} / {self.loss_n}), "
            f"reg={reg:.6f} ({self.loss_reg:.4f} / {self.loss_reg_n})"
        )

    def flush(self) -> Iterator[ItemRecord]:
        """New records for everything resident in the slot."""
        left = self.left.numpy()
        right = self.right.numpy()
        for i, record in enumerate(self._left_records):
            yield record.with_factors(left[i].copy())
        for i, record in enumerate(self._right_records):
            yield record.with_factors(right[i].copy())
