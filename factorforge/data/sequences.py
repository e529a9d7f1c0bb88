"""
Item sequence I/O.

A sequence file holds one session/sentence per line as whitespace-separated
integer item ids. Blank lines are skipped.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Iterator

import numpy as np

logger = logging.getLogger(__name__)


def iter_sequences(path: str | Path) -> Iterator[list[int]]:
    """Yield one list of item ids per non-empty line of ``path``."""
    with open(path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            tokens = line.split()
            if not tokens:
                continue
            try:
                yield [int(tok) for tok in tokens]
            except ValueError as e:
                raise ValueError(
                    f"{path}:{line_no}: item ids must be integers ({e})"
                ) from e


def read_sequences(path: str | Path) -> list[list[int]]:
    """Load a whole sequence file into memory."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Sequence file not found: {path}")
    sequences = list(iter_sequences(path))
    logger.info(f"Loaded {len(sequences):,} sequences from {path}")
    return sequences


def write_sequences(sequences: Iterable[Iterable[int]], path: str | Path) -> int:
    """Write sequences one per line. Returns the number of lines written."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    n = 0
    with open(path, "w", encoding="utf-8") as f:
        for seq in sequences:
            f.write(" ".join(str(int(i)) for i in seq))
            f.write("\n")
            n += 1
    return n


def synthetic_sequences(
    num_sequences: int,
    num_clusters: int = 5,
    cluster_size: int = 10,
    length: int = 8,
    seed: int = 0,
) -> list[list[int]]:
    """
    Sessions drawn from disjoint item clusters.

    Every sequence samples ``length`` ids (with replacement) from one
    randomly chosen cluster; cluster ``c`` owns ids
    ``[c * cluster_size, (c + 1) * cluster_size)``. A model that learns
    co-occurrence places same-cluster items close together.
    """
    rng = np.random.default_rng(seed)
    clusters = rng.integers(0, num_clusters, size=num_sequences)
    offsets = rng.integers(0, cluster_size, size=(num_sequences, length))
    return (clusters[:, None] * cluster_size + offsets).tolist()
