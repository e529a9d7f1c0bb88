"""
factorforge.training — Training Engine
=======================================
The distributed training loop and everything it drives.

Components:
    - schedule.py    — step order, learning-rate decay, step seeds
    - optimizer.py   — single-slot logistic SGD kernel (torch)
    - checkpoint.py  — durable snapshots and resume-point discovery
    - trainer.py     — epoch/partition scheduler (FactorizationTrainer)
    - item2vec.py    — Item2Vec trainer and the fitted Item2VecModel

Information Flow:
    sequences → Item2Vec.initialize → generation 0
    for each (epoch, pI):
        generation k → slots ← pairs(sequences)
                     → LocalOptimizer per slot → generation k+1
        every N steps → CheckpointManager.save
"""

from factorforge.training.checkpoint import (
    CheckpointKey,
    CheckpointManager,
    read_snapshot,
    write_snapshot,
)
from factorforge.training.item2vec import Item2Vec, Item2VecModel, train_item2vec
from factorforge.training.optimizer import LocalOptimizer, MissingRecordError, OptimizerOptions
from factorforge.training.schedule import iter_steps, learning_rate_at, progress
from factorforge.training.trainer import FactorizationTrainer, TrainingStepError
