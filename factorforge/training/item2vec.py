"""
FactorForge Item2Vec
=====================
Item embeddings from co-occurrence within sequences (sessions, baskets,
playlists, sentences of item ids).

Every distinct item gets two vectors:
    LEFT  — the item as an anchor (the vector you usually want)
    RIGHT — the item as a context; also the pool negatives come from

Initialization (word2vec style):
    LEFT factors uniform in [-0.5/d, 0.5/d), drawn from a generator
    seeded by (seed, id) so the result does not depend on how the data
    is partitioned. RIGHT factors start at zero. With a bias slot, LEFT
    gets 1.0 and RIGHT gets 0.0 there.

Usage:
    >>> config = FactorForgeConfig.for_smoke_test()
    >>> with ClusterContext(num_workers=2) as ctx:
    ...     model = Item2Vec(config, ctx).fit(sequences)
    >>> model.most_similar(42, k=5)
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Iterable, Optional, Sequence

import numpy as np
import torch
import torch.nn.functional as F

from factorforge.config import FactorForgeConfig
from factorforge.data.records import ItemRecord, Side
from factorforge.engine.collection import PartitionedCollection
from factorforge.engine.context import ClusterContext
from factorforge.pairs.generator import Item2VecGenerator
from factorforge.partitioning.hashing import MASK64
from factorforge.partitioning.partitioner import Partitioner
from factorforge.training.trainer import FactorizationTrainer

logger = logging.getLogger(__name__)


def initial_factors(
    side: Side,
    item_id: int,
    dot_vector_size: int,
    use_bias: bool,
    seed: int,
) -> np.ndarray:
    """Deterministic starting vector of one item."""
    if side is Side.LEFT:
        rng = np.random.default_rng([seed & MASK64, item_id & MASK64])
        vec = (rng.random(dot_vector_size, dtype=np.float32) - 0.5) / dot_vector_size
        if use_bias:
            vec = np.append(vec, np.float32(1.0))
    else:
        vec = np.zeros(dot_vector_size + (1 if use_bias else 0), dtype=np.float32)
    return vec.astype(np.float32)


class Item2Vec(FactorizationTrainer[Sequence[int]]):
    """
    Item2Vec trainer over a collection of item-id sequences.

    Parameters
    ----------
    config : FactorForgeConfig
        Full configuration; ``training.window`` controls pair sampling.
    context : ClusterContext
        Execution context.
    """

    def initialize(self, data: PartitionedCollection) -> PartitionedCollection:
        f = self.config.factorization
        seed = self.config.training.seed

        def count_partition(_, sequences):
            counts = Counter()
            for seq in sequences:
                counts.update(int(i) for i in seq)
            return counts.items()

        counts = Counter()
        for item_id, n in data.map_partitions(count_partition).collect():
            counts[item_id] += n

        logger.info(f"Initializing {len(counts):,} distinct items on both sides")

        records = [
            ItemRecord(side, item_id, n, initial_factors(
                side, item_id, f.dot_vector_size, f.use_bias, seed
            ))
            for item_id, n in sorted(counts.items())
            for side in (Side.LEFT, Side.RIGHT)
        ]
        return self.context.parallelize(
            records, data.num_partitions, name="initial_embeddings"
        )

    def pairs(
        self,
        data: PartitionedCollection,
        partitioner1: Partitioner,
        partitioner2: Partitioner,
        seed: int,
    ) -> PartitionedCollection:
        window = self.config.training.window
        return data.map_partitions(
            lambda index, sequences: Item2VecGenerator(
                sequences, window, partitioner1, partitioner2, seed + index
            ),
            name="item2vec_pairs",
        )

    def fit(self, sequences: Iterable[Sequence[int]]) -> Item2VecModel:
        """Train on in-memory sequences and return the fitted model."""
        data = self.context.parallelize(
            [list(s) for s in sequences],
            self.config.cluster.num_data_partitions,
            name="sequences",
        ).cache()
        embeddings = self.train(data)
        model = Item2VecModel.from_records(
            embeddings.collect(), use_bias=self.config.factorization.use_bias
        )
        data.unpersist()
        return model


class Item2VecModel:
    """
    Fitted item vectors.

    Parameters
    ----------
    ids : list of int
        Item ids, sorted.
    left, right : torch.Tensor
        ``(len(ids), d)`` LEFT and RIGHT factor matrices, rows in id order.
    counts : list of int
        Observed frequency per id.
    use_bias : bool
        Whether the trailing column is a bias slot.
    """

    def __init__(
        self,
        ids: list[int],
        left: torch.Tensor,
        right: torch.Tensor,
        counts: list[int],
        use_bias: bool = False,
    ):
        self.ids = ids
        self.left = left
        self.right = right
        self.counts = counts
        self.use_bias = use_bias
        self._index = {item_id: i for i, item_id in enumerate(ids)}

    @classmethod
    def from_records(
        cls, records: Iterable[ItemRecord], use_bias: bool = False
    ) -> Item2VecModel:
        left: dict[int, ItemRecord] = {}
        right: dict[int, ItemRecord] = {}
        for r in records:
            (left if r.is_left else right)[r.id] = r

        if set(left) != set(right):
            raise ValueError(
                f"LEFT and RIGHT records cover different ids "
                f"({len(left)} vs {len(right)})"
            )
        if not left:
            raise ValueError("Cannot build a model from zero records")

        ids = sorted(left)
        return cls(
            ids=ids,
            left=torch.from_numpy(np.stack([left[i].factors for i in ids])),
            right=torch.from_numpy(np.stack([right[i].factors for i in ids])),
            counts=[left[i].count for i in ids],
            use_bias=use_bias,
        )

    def to_records(self) -> list[ItemRecord]:
        left = self.left.numpy()
        right = self.right.numpy()
        out = []
        for k, item_id in enumerate(self.ids):
            out.append(ItemRecord(Side.LEFT, item_id, self.counts[k], left[k]))
            out.append(ItemRecord(Side.RIGHT, item_id, self.counts[k], right[k]))
        return out

    def __contains__(self, item_id: int) -> bool:
        return item_id in self._index

    def __len__(self) -> int:
        return len(self.ids)

    def vector(self, item_id: int, side: Side = Side.LEFT) -> np.ndarray:
        """Factors of one item, bias slot excluded."""
        if item_id not in self._index:
            raise KeyError(f"Unknown item id: {item_id}")
        matrix = self.left if side is Side.LEFT else self.right
        row = matrix[self._index[item_id]]
        if self.use_bias:
            row = row[:-1]
        return row.numpy().copy()

    def most_similar(self, item_id: int, k: int = 10) -> list[tuple[int, float]]:
        """The ``k`` nearest items by cosine similarity of LEFT vectors."""
        if item_id not in self._index:
            raise KeyError(f"Unknown item id: {item_id}")
        vectors = self.left[:, :-1] if self.use_bias else self.left
        normed = F.normalize(vectors, dim=1)
        sims = normed @ normed[self._index[item_id]]
        sims[self._index[item_id]] = float("-inf")

        k = min(k, len(self.ids) - 1)
        if k <= 0:
            return []
        scores, idx = torch.topk(sims, k)
        return [(self.ids[i], float(s)) for s, i in zip(scores.tolist(), idx.tolist())]


def train_item2vec(
    sequences: Iterable[Sequence[int]],
    config: FactorForgeConfig,
    context: Optional[ClusterContext] = None,
) -> Item2VecModel:
    """Fit Item2Vec, creating (and stopping) a context if none is given."""
    if context is not None:
        return Item2Vec(config, context).fit(sequences)
    with ClusterContext(
        num_workers=config.cluster.num_workers,
        spill_dir=config.cluster.spill_dir,
    ) as ctx:
        return Item2Vec(config, ctx).fit(sequences)
