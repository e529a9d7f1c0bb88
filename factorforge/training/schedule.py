"""
Epoch/partition schedule.

A run is a strictly ordered sequence of steps ``(epoch, partition_index)``
for ``epoch`` in ``[0, num_iterations)`` and ``partition_index`` in
``[0, num_partitions)``. A resumed run starts at the checkpoint's step;
only the first epoch of the resumed run is truncated.

The learning rate depends on nothing but progress through that sequence:

    progress = (epoch * P + partition_index) / (num_iterations * P)
    lr       = exp(ln(lr0) - (ln(lr0) - ln(lr_min)) * progress)

i.e. geometric interpolation from ``lr0`` to ``lr_min``. Without a
minimum the rate is constant.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterator, Optional


@dataclass(frozen=True, order=True)
class Step:
    epoch: int
    partition_index: int


def progress(epoch: int, partition_index: int, num_iterations: int, num_partitions: int) -> float:
    return (epoch * num_partitions + partition_index) / (num_iterations * num_partitions)


def learning_rate_at(
    progress: float,
    learning_rate: float,
    min_learning_rate: Optional[float] = None,
) -> float:
    """Decayed learning rate at ``progress`` in [0, 1]."""
    if min_learning_rate is None:
        return learning_rate
    log_lr0 = math.log(learning_rate)
    return math.exp(log_lr0 - (log_lr0 - math.log(min_learning_rate)) * progress)


def step_seed(epoch: int, partition_index: int, num_partitions: int) -> int:
    """Seed of the pair generators at one step."""
    return (epoch * num_partitions + partition_index) * num_partitions


def iter_steps(
    num_iterations: int,
    num_partitions: int,
    start_epoch: int = 0,
    start_iteration: int = 0,
) -> Iterator[Step]:
    """
    Steps from ``(start_epoch, start_iteration)`` to the end of the run.

    ``start_iteration`` may equal ``num_partitions`` (a checkpoint taken
    after the last step of an epoch); that epoch then contributes no steps.
    """
    for epoch in range(start_epoch, num_iterations):
        first = start_iteration if epoch == start_epoch else 0
        for partition_index in range(first, num_partitions):
            yield Step(epoch, partition_index)
