"""
FactorForge
============
Partition-rotated distributed training of item embeddings.

This package provides:
    1. Deterministic hashing and a rotation table that decide, per step,
       which LEFT and RIGHT embedding partitions share a slot
    2. Item2Vec pair generation that only emits pairs whose anchor and
       context already share a slot (no shuffle join)
    3. An epoch/partition scheduler with geometric learning-rate decay
    4. Atomic checkpoints and automatic resume

Quick Start:
    >>> from factorforge.config import FactorForgeConfig
    >>> from factorforge.training import train_item2vec
    >>> model = train_item2vec(sequences, FactorForgeConfig.for_smoke_test())
    >>> model.most_similar(42)

Subpackages:
    - factorforge.data         — ItemRecord, TrainingPair, sequence files
    - factorforge.partitioning — hashing, rotation table, partitioners
    - factorforge.pairs        — training-pair generators
    - factorforge.engine       — partitioned collections and their context
    - factorforge.training     — scheduler, optimizer, checkpoints, Item2Vec
    - factorforge.evaluation   — run metrics
"""

__version__ = "0.1.0"
__author__ = "Aditya"
