"""
FactorForge Pair Generators
=============================
Turn item sequences into slot-addressed TrainingPairs.

The Collision Trick:
    Every anchor is placed by partitioner1 (LEFT placement) and every
    context candidate by partitioner2 (RIGHT placement). A candidate only
    becomes a training pair when both land in the same slot. The pair is
    then already co-located with the two records it updates, so no
    shuffle join between pairs and embeddings is needed. Over one epoch
    the rotation partitioner walks every RIGHT bucket past every LEFT
    slot, so every (anchor, context) combination gets its chance once.

Item2Vec Sampling:
    Context candidates are not a positional sliding window. For each
    anchor position, ``min(2 * window, len - 1)`` positions are drawn
    uniformly from the whole sequence (rejecting the anchor's own
    position). Draws are not deduplicated, and all of them are spent
    whether or not they collide.

Usage:
    >>> gen = Item2VecGenerator(sequences, window=5,
    ...                         partitioner1=p1, partitioner2=p2, seed=7)
    >>> for pair in gen:
    ...     ...
"""

from __future__ import annotations

import logging
import random
from typing import Iterable, Iterator, Sequence

import numpy as np

from factorforge.data.records import TrainingPair
from factorforge.partitioning.partitioner import Partitioner

logger = logging.getLogger(__name__)


class PairGenerator:
    """
    Base class: walks the sequences and chains the pairs that
    ``generate`` yields for each of them.

    The result is a lazy, finite, single-pass iterator.

    Parameters
    ----------
    sequences : iterable of sequences of int
        Item-id sequences (sessions, sentences, ...).
    partitioner1 : Partitioner
        Placement of anchors (LEFT side).
    partitioner2 : Partitioner
        Placement of contexts (RIGHT side).
    """

    def __init__(
        self,
        sequences: Iterable[Sequence[int]],
        partitioner1: Partitioner,
        partitioner2: Partitioner,
    ):
        self._sequences = iter(sequences)
        self._current: Iterator[TrainingPair] = iter(())
        self.partitioner1 = partitioner1
        self.partitioner2 = partitioner2

    def generate(self, sequence: Sequence[int]) -> Iterator[TrainingPair]:
        raise NotImplementedError

    def __iter__(self) -> Iterator[TrainingPair]:
        return self

    def __next__(self) -> TrainingPair:
        while True:
            pair = next(self._current, None)
            if pair is not None:
                return pair
            # StopIteration from the exhausted sequence iterator ends us
            self._current = self.generate(next(self._sequences))


class Item2VecGenerator(PairGenerator):
    """
    Item2Vec pairs with partition-collision filtering.

    Parameters
    ----------
    sequences : iterable of sequences of int
        Item-id sequences.
    window : int
        Up to ``2 * window`` candidates are drawn per anchor position.
    partitioner1, partitioner2 : Partitioner
        LEFT and RIGHT placement for this step.
    seed : int
        Seed of the candidate-drawing generator.
    """

    def __init__(
        self,
        sequences: Iterable[Sequence[int]],
        window: int,
        partitioner1: Partitioner,
        partitioner2: Partitioner,
        seed: int,
    ):
        if window < 1:
            raise ValueError(f"window must be >= 1, got {window}")
        super().__init__(sequences, partitioner1, partitioner2)
        self.window = window
        self.random = random.Random(seed)

    def generate(self, sequence: Sequence[int]) -> Iterator[TrainingPair]:
        n = len(sequence)
        if n <= 1:
            return

        ids = np.asarray(sequence, dtype=np.int64)
        p1 = self.partitioner1.get_partitions(ids).tolist()
        p2 = self.partitioner2.get_partitions(ids).tolist()
        seq = ids.tolist()
        tries = min(2 * self.window, n - 1)
        randrange = self.random.randrange

        for i in range(n):
            for _ in range(tries):
                c = i
                while c == i:
                    c = randrange(n)
                if p1[i] == p2[c] and seq[i] != seq[c]:
                    yield TrainingPair(p1[i], seq[i], seq[c])
