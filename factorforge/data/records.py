"""
FactorForge Records
====================
The two value types that flow through training:

    - ItemRecord   — one embedding entity (an item in its LEFT or RIGHT role)
    - TrainingPair — one directed (anchor, context) training instance,
                     already addressed to the slot that will consume it

Both are frozen. A training step never edits a record; the local optimizer
returns brand-new records and the previous generation is dropped.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np


class Side(Enum):
    """Role an item plays in the factorization (source vs. target)."""
    LEFT = True
    RIGHT = False

    @classmethod
    def from_flag(cls, flag: bool) -> Side:
        return cls.LEFT if bool(flag) else cls.RIGHT

    @property
    def flag(self) -> bool:
        """Boolean discriminator used on disk (True = LEFT)."""
        return self.value


@dataclass(frozen=True)
class ItemRecord:
    """
    One embedding entity.

    Parameters
    ----------
    side : Side
        LEFT (anchor role) or RIGHT (context role).
    id : int
        64-bit item identifier.
    count : int
        Observed frequency, used to weight negative sampling.
    factors : np.ndarray
        float32 embedding vector. Carries one extra trailing slot when
        the run uses a bias term.
    """
    side: Side
    id: int
    count: int
    factors: np.ndarray

    def __post_init__(self):
        factors = np.asarray(self.factors, dtype=np.float32)
        if factors.ndim != 1:
            raise ValueError(
                f"factors must be a 1-D vector, got shape {factors.shape}"
            )
        factors.setflags(write=False)
        object.__setattr__(self, "factors", factors)

    @property
    def is_left(self) -> bool:
        return self.side is Side.LEFT

    @property
    def key(self) -> tuple[Side, int]:
        return self.side, self.id

    def with_factors(self, factors: np.ndarray) -> ItemRecord:
        """Return a copy of this record holding new factors."""
        return ItemRecord(self.side, self.id, self.count, factors)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ItemRecord):
            return NotImplemented
        return (
            self.side is other.side
            and self.id == other.id
            and self.count == other.count
            and np.array_equal(self.factors, other.factors)
        )

    def __hash__(self) -> int:
        return hash((self.side, self.id))

    def __repr__(self) -> str:
        return (
            f"ItemRecord({self.side.name}, id={self.id}, count={self.count}, "
            f"dim={self.factors.shape[0]})"
        )


@dataclass(frozen=True)
class TrainingPair:
    """
    One directed training instance addressed to a slot.

    ``label`` is only read in explicit-feedback mode (implicit_prefs=False);
    implicit pairs are positives by construction.
    """
    partition: int
    anchor_id: int
    context_id: int
    label: float = 1.0
