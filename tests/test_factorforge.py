#!/usr/bin/env python3
"""
Tests for FactorForge configuration, hashing and partitioning, pair
generation, the collection engine, the local optimizer, checkpoints and
end-to-end Item2Vec training.

Run all tests:
    python -m pytest tests/ -v --tb=short

Run one group:
    python -m pytest tests/test_factorforge.py -v -k TestCheckpoint
"""

import sys
from pathlib import Path

import numpy as np
import pytest
import torch

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def _tiny_config(**training):
    """Small, fast configuration for end-to-end runs."""
    from factorforge.config import (
        ClusterConfig,
        FactorForgeConfig,
        FactorizationConfig,
        StorageConfig,
        TrainingConfig,
    )
    params = dict(
        num_iterations=1,
        num_partitions=1,
        learning_rate=0.05,
        window=2,
        batch_size=32,
        partition_table_size=100,
        seed=3,
    )
    params.update(training)
    return FactorForgeConfig(
        factorization=FactorizationConfig(dot_vector_size=8, negative=3),
        training=TrainingConfig(**params),
        storage=StorageConfig(
            intermediate_storage_level="MEMORY_ONLY",
            final_storage_level="MEMORY_ONLY",
        ),
        cluster=ClusterConfig(num_workers=2, num_data_partitions=2),
    )


def _records(ids, dim=4, seed=0):
    from factorforge.data.records import ItemRecord, Side
    rng = np.random.default_rng(seed)
    out = []
    for i in ids:
        out.append(ItemRecord(Side.LEFT, i, 1, rng.uniform(-0.5, 0.5, dim)))
        out.append(ItemRecord(Side.RIGHT, i, 1, np.zeros(dim)))
    return out


# =============================================================================
# Config Tests
# =============================================================================

class TestConfig:
    """Tests for the configuration system."""

    def test_default_config_loads(self):
        """Default config should validate without errors."""
        from factorforge.config import FactorForgeConfig
        config = FactorForgeConfig()
        config.validate()
        assert config.factorization.gamma == 1.0
        assert config.training.partition_table_size == 10_000_000

    def test_smoke_test_config(self):
        """Smoke test config should create a valid minimal configuration."""
        from factorforge.config import FactorForgeConfig
        config = FactorForgeConfig.for_smoke_test()
        config.validate()
        assert config.factorization.dot_vector_size == 8
        assert config.training.num_partitions == 2

    def test_checkpoint_interval_requires_path(self):
        """A checkpoint interval without a checkpoint path is rejected."""
        from factorforge.config import StorageConfig
        config = StorageConfig(checkpoint_interval=3)
        with pytest.raises(ValueError, match="checkpoint_path"):
            config.validate()

    def test_invalid_partitions(self):
        """num_partitions must be at least 1."""
        from factorforge.config import TrainingConfig
        with pytest.raises(ValueError, match="num_partitions"):
            TrainingConfig(num_partitions=0).validate()

    def test_min_learning_rate_above_initial(self):
        """The decay target cannot exceed the initial rate."""
        from factorforge.config import TrainingConfig
        with pytest.raises(ValueError, match="min_learning_rate"):
            TrainingConfig(learning_rate=0.01, min_learning_rate=0.1).validate()

    def test_unknown_storage_level(self):
        """Storage levels are checked by name."""
        from factorforge.config import StorageConfig
        with pytest.raises(ValueError, match="MEMORY_ONLY"):
            StorageConfig(final_storage_level="SOMEWHERE").validate()

    def test_generation_levels_cannot_be_none(self):
        """Generations must be kept somewhere, so NONE is refused."""
        from factorforge.config import StorageConfig
        with pytest.raises(ValueError, match="intermediate_storage_level"):
            StorageConfig(intermediate_storage_level="NONE").validate()
        with pytest.raises(ValueError, match="final_storage_level"):
            StorageConfig(final_storage_level="NONE").validate()

    def test_storage_level_properties(self):
        """String levels resolve to StorageLevel members."""
        from factorforge.config import StorageConfig
        from factorforge.engine.collection import StorageLevel
        config = StorageConfig(intermediate_storage_level="DISK_ONLY")
        assert config.intermediate_level is StorageLevel.DISK_ONLY
        assert config.final_level is StorageLevel.MEMORY_AND_DISK

    def test_yaml_round_trip(self, tmp_path):
        """Config should save to YAML and load back identically."""
        from factorforge.config import FactorForgeConfig
        config = FactorForgeConfig.for_smoke_test()

        yaml_path = tmp_path / "test_config.yaml"
        config.to_yaml(yaml_path)

        loaded = FactorForgeConfig.from_yaml(yaml_path)
        assert loaded.to_dict() == config.to_dict()

    def test_yaml_lambda_key(self, tmp_path):
        """The YAML key 'lambda' maps to the lambda_ field."""
        from factorforge.config import FactorForgeConfig
        yaml_path = tmp_path / "lambda.yaml"
        yaml_path.write_text("factorization:\n  lambda: 0.25\n", encoding="utf-8")

        config = FactorForgeConfig.from_yaml(yaml_path)
        assert config.factorization.lambda_ == 0.25

    def test_missing_yaml(self, tmp_path):
        """A missing config file raises FileNotFoundError."""
        from factorforge.config import FactorForgeConfig
        with pytest.raises(FileNotFoundError):
            FactorForgeConfig.from_yaml(tmp_path / "nope.yaml")

    def test_shipped_default_yaml(self):
        """configs/default.yaml should load and validate."""
        from factorforge.config import FactorForgeConfig
        path = Path(__file__).resolve().parent.parent / "configs" / "default.yaml"
        config = FactorForgeConfig.from_yaml(path)
        assert config.factorization.pow == 0.75


# =============================================================================
# Hashing Tests
# =============================================================================

class TestHashing:
    """Tests for the deterministic item hash."""

    def test_deterministic(self):
        """Same inputs always give the same bucket."""
        from factorforge.partitioning.hashing import hash64
        assert hash64(123456789, 3, 17) == hash64(123456789, 3, 17)

    def test_range(self):
        """Buckets always lie in [0, n), negative ids included."""
        from factorforge.partitioning.hashing import hash64
        for item_id in list(range(-500, 500)) + [2**63 - 1, -(2**63)]:
            assert 0 <= hash64(item_id, 7, 13) < 13

    def test_salt_changes_assignment(self):
        """Different salts reshuffle at least some ids."""
        from factorforge.partitioning.hashing import hash64
        a = [hash64(i, 0, 10) for i in range(100)]
        b = [hash64(i, 1, 10) for i in range(100)]
        assert a != b

    def test_array_matches_scalar(self):
        """The numpy version agrees with the scalar version."""
        from factorforge.partitioning.hashing import hash64, hash64_array
        ids = np.array(
            [0, 1, -1, 42, 2**40 + 7, 2**62, -(2**63), 2**63 - 1], dtype=np.int64
        )
        for salt in (0, 1, 99):
            expected = [hash64(int(i), salt, 1000) for i in ids]
            assert hash64_array(ids, salt, 1000).tolist() == expected

    def test_non_positive_n(self):
        """n must be positive."""
        from factorforge.partitioning.hashing import hash64, hash64_array
        with pytest.raises(ValueError):
            hash64(1, 0, 0)
        with pytest.raises(ValueError):
            hash64_array(np.array([1]), 0, -1)


# =============================================================================
# Partition Table / Partitioner Tests
# =============================================================================

class TestPartitionTable:
    """Tests for the rotation table."""

    def test_rows_are_permutations(self):
        """Every row is a permutation of [0, P)."""
        from factorforge.partitioning.table import create_partition_table
        table = create_partition_table(4, np.random.default_rng(0), table_size=100)
        assert table.num_buckets == 25
        assert table.num_partitions == 4
        for row in table.rows:
            assert sorted(row.tolist()) == [0, 1, 2, 3]

    def test_same_seed_same_table(self):
        """The table depends only on the seed."""
        from factorforge.partitioning.table import create_partition_table
        a = create_partition_table(5, np.random.default_rng(11), table_size=50)
        b = create_partition_table(5, np.random.default_rng(11), table_size=50)
        assert np.array_equal(a.rows, b.rows)

    def test_read_only(self):
        """The table cannot be modified after creation."""
        from factorforge.partitioning.table import create_partition_table
        table = create_partition_table(2, np.random.default_rng(0), table_size=10)
        with pytest.raises(ValueError):
            table.rows[0, 0] = 5

    def test_too_many_partitions(self):
        """More partitions than table cells is rejected."""
        from factorforge.partitioning.table import create_partition_table
        with pytest.raises(ValueError):
            create_partition_table(11, np.random.default_rng(0), table_size=10)


class TestPartitioner:
    """Tests for the partitioner strategies."""

    def test_rotation_visits_every_slot(self):
        """Over one epoch every RIGHT item passes through every slot once."""
        from factorforge.partitioning.partitioner import Partitioner
        from factorforge.partitioning.table import create_partition_table
        n_parts = 5
        table = create_partition_table(n_parts, np.random.default_rng(1), table_size=200)
        for item_id in range(50):
            slots = [
                Partitioner.rotation(table, 2, p).get_partition(item_id)
                for p in range(n_parts)
            ]
            assert sorted(slots) == list(range(n_parts))

    def test_vectorised_matches_scalar(self):
        """get_partitions agrees with get_partition for both hash strategies."""
        from factorforge.partitioning.partitioner import Partitioner
        from factorforge.partitioning.table import create_partition_table
        table = create_partition_table(3, np.random.default_rng(2), table_size=30)
        ids = np.arange(-20, 80)
        for part in (Partitioner.stable_hash(3, 1), Partitioner.rotation(table, 1, 2)):
            assert part.get_partitions(ids).tolist() == [part(int(i)) for i in ids]

    def test_identity_range(self):
        """Identity keys outside [0, P) are rejected."""
        from factorforge.partitioning.partitioner import Partitioner
        part = Partitioner.identity(3)
        assert part.get_partition(2) == 2
        with pytest.raises(ValueError):
            part.get_partition(3)
        with pytest.raises(ValueError):
            part.get_partitions(np.array([0, -1]))

    def test_rotation_requires_matching_table(self):
        """A rotation partitioner must match its table's width."""
        from factorforge.partitioning.partitioner import PartitionStrategy, Partitioner
        from factorforge.partitioning.table import create_partition_table
        table = create_partition_table(3, np.random.default_rng(0), table_size=30)
        with pytest.raises(ValueError):
            Partitioner(PartitionStrategy.ROTATION, 4, table=table)
        with pytest.raises(ValueError):
            Partitioner.rotation(table, 0, 3)


# =============================================================================
# Pair Generator Tests
# =============================================================================

class TestPairGenerator:
    """Tests for Item2Vec pair generation."""

    def _single_partition(self):
        from factorforge.partitioning.partitioner import Partitioner
        from factorforge.partitioning.table import create_partition_table
        table = create_partition_table(1, np.random.default_rng(0), table_size=10)
        return Partitioner.stable_hash(1, 0), Partitioner.rotation(table, 0, 0)

    def test_empty_input(self):
        """No sequences → no pairs."""
        from factorforge.pairs.generator import Item2VecGenerator
        p1, p2 = self._single_partition()
        assert list(Item2VecGenerator([], 3, p1, p2, seed=0)) == []

    def test_short_and_uniform_sequences(self):
        """Length-1 sequences and single-item repeats produce nothing."""
        from factorforge.pairs.generator import Item2VecGenerator
        p1, p2 = self._single_partition()
        seqs = [[5], [], [7, 7, 7, 7]]
        assert list(Item2VecGenerator(seqs, 3, p1, p2, seed=0)) == []

    def test_tries_per_position(self):
        """With a single slot every draw collides: n * min(2w, n-1) pairs."""
        from factorforge.pairs.generator import Item2VecGenerator
        p1, p2 = self._single_partition()
        pairs = list(Item2VecGenerator([[1, 2, 3, 4]], 5, p1, p2, seed=9))
        assert len(pairs) == 4 * 3
        assert all(p.partition == 0 for p in pairs)
        assert all(p.anchor_id != p.context_id for p in pairs)

    def test_repeated_ids_skipped_per_draw(self):
        """Draws landing on the anchor's own id are spent but emit nothing."""
        import random
        from factorforge.pairs.generator import Item2VecGenerator
        p1, p2 = self._single_partition()
        seq = [1, 1, 2]

        for seed in range(5):
            # Replay the draws: 2 per anchor, never the anchor's own position.
            rng = random.Random(seed)
            expected = []
            for i in range(3):
                for _ in range(2):
                    c = i
                    while c == i:
                        c = rng.randrange(3)
                    if seq[i] != seq[c]:
                        expected.append((seq[i], seq[c]))

            pairs = list(Item2VecGenerator([seq], 5, p1, p2, seed=seed))
            assert [(p.anchor_id, p.context_id) for p in pairs] == expected
            assert all(p.anchor_id != p.context_id for p in pairs)
            # Both draws of the anchor 2 hit a 1
            assert [(p.anchor_id, p.context_id) for p in pairs].count((2, 1)) == 2

    def test_window_caps_tries(self):
        """A small window limits the draws per anchor to 2 * window."""
        from factorforge.pairs.generator import Item2VecGenerator
        p1, p2 = self._single_partition()
        pairs = list(Item2VecGenerator([list(range(10))], 1, p1, p2, seed=9))
        assert len(pairs) == 10 * 2

    def test_pairs_are_colocated(self):
        """Every pair sits in the slot of both its anchor and its context."""
        from factorforge.pairs.generator import Item2VecGenerator
        from factorforge.partitioning.partitioner import Partitioner
        from factorforge.partitioning.table import create_partition_table
        table = create_partition_table(3, np.random.default_rng(0), table_size=60)
        p1 = Partitioner.stable_hash(3, 1)
        p2 = Partitioner.rotation(table, 1, 2)
        seqs = [list(range(k, k + 12)) for k in range(0, 60, 6)]

        pairs = list(Item2VecGenerator(seqs, 4, p1, p2, seed=1))
        assert pairs
        for pair in pairs:
            assert p1(pair.anchor_id) == pair.partition
            assert p2(pair.context_id) == pair.partition

    def test_seeded(self):
        """The same seed reproduces the same pairs."""
        from factorforge.pairs.generator import Item2VecGenerator
        p1, p2 = self._single_partition()
        seqs = [[1, 2, 3, 4, 5, 6], [7, 8, 9]]
        a = list(Item2VecGenerator(seqs, 2, p1, p2, seed=4))
        b = list(Item2VecGenerator(seqs, 2, p1, p2, seed=4))
        assert a == b

    def test_invalid_window(self):
        """window must be at least 1."""
        from factorforge.pairs.generator import Item2VecGenerator
        p1, p2 = self._single_partition()
        with pytest.raises(ValueError):
            Item2VecGenerator([[1, 2]], 0, p1, p2, seed=0)


# =============================================================================
# Schedule Tests
# =============================================================================

class TestSchedule:
    """Tests for step order and learning-rate decay."""

    def test_learning_rate_endpoints(self):
        """Decay starts at lr0, ends at lr_min and is geometric in between."""
        from factorforge.training.schedule import learning_rate_at
        assert learning_rate_at(0.0, 0.1, 0.001) == pytest.approx(0.1)
        assert learning_rate_at(1.0, 0.1, 0.001) == pytest.approx(0.001)
        assert learning_rate_at(0.5, 0.1, 0.001) == pytest.approx(0.01)

    def test_constant_without_minimum(self):
        """Without min_learning_rate the rate does not change."""
        from factorforge.training.schedule import learning_rate_at
        assert learning_rate_at(0.7, 0.025) == 0.025

    def test_progress(self):
        """Progress counts steps over the whole run."""
        from factorforge.training.schedule import progress
        assert progress(0, 0, 2, 4) == 0.0
        assert progress(1, 2, 2, 4) == pytest.approx(6 / 8)

    def test_step_order(self):
        """Steps run epoch by epoch, partition index innermost."""
        from factorforge.training.schedule import Step, iter_steps
        steps = list(iter_steps(2, 3))
        assert steps == [Step(e, p) for e in range(2) for p in range(3)]

    def test_resume_truncates_first_epoch_only(self):
        """A resumed run skips finished steps of its first epoch only."""
        from factorforge.training.schedule import Step, iter_steps
        assert list(iter_steps(2, 3, 0, 2)) == [Step(0, 2)] + [Step(1, p) for p in range(3)]
        assert list(iter_steps(2, 3, 0, 3)) == [Step(1, p) for p in range(3)]
        assert list(iter_steps(2, 3, 1, 3)) == []

    def test_step_seed(self):
        """Generator seed is (epoch * P + pI) * P."""
        from factorforge.training.schedule import step_seed
        assert step_seed(1, 2, 3) == 15
        assert step_seed(0, 0, 4) == 0


# =============================================================================
# Records / Sequences Tests
# =============================================================================

class TestRecords:
    """Tests for ItemRecord and sequence I/O."""

    def test_record_factors_read_only(self):
        """Record factors are float32 and immutable."""
        from factorforge.data.records import ItemRecord, Side
        record = ItemRecord(Side.LEFT, 1, 2, [0.1, 0.2])
        assert record.factors.dtype == np.float32
        with pytest.raises(ValueError):
            record.factors[0] = 1.0

    def test_record_equality(self):
        """Records compare by value, factors included."""
        from factorforge.data.records import ItemRecord, Side
        a = ItemRecord(Side.RIGHT, 1, 2, [0.5, 0.5])
        assert a == ItemRecord(Side.RIGHT, 1, 2, np.array([0.5, 0.5]))
        assert a != a.with_factors([0.5, 0.25])
        assert a.with_factors([0.5, 0.25]).key == a.key
        assert a != ItemRecord(Side.LEFT, 1, 2, [0.5, 0.5])

    def test_side_flag(self):
        """LEFT is stored as True."""
        from factorforge.data.records import Side
        assert Side.LEFT.flag is True
        assert Side.from_flag(False) is Side.RIGHT

    def test_sequence_round_trip(self, tmp_path):
        """Sequences written to disk read back identically."""
        from factorforge.data.sequences import read_sequences, write_sequences
        seqs = [[1, 2, 3], [4], [5, -6]]
        path = tmp_path / "seqs.txt"
        assert write_sequences(seqs, path) == 3
        assert read_sequences(path) == seqs

    def test_blank_lines_skipped(self, tmp_path):
        """Blank lines are not sequences."""
        from factorforge.data.sequences import read_sequences
        path = tmp_path / "seqs.txt"
        path.write_text("1 2\n\n   \n3 4 5\n", encoding="utf-8")
        assert read_sequences(path) == [[1, 2], [3, 4, 5]]

    def test_bad_token(self, tmp_path):
        """Non-integer ids report the offending line."""
        from factorforge.data.sequences import read_sequences
        path = tmp_path / "seqs.txt"
        path.write_text("1 2\n3 x\n", encoding="utf-8")
        with pytest.raises(ValueError, match=":2:"):
            read_sequences(path)

    def test_missing_file(self, tmp_path):
        """A missing sequence file raises FileNotFoundError."""
        from factorforge.data.sequences import read_sequences
        with pytest.raises(FileNotFoundError):
            read_sequences(tmp_path / "missing.txt")

    def test_synthetic_clusters(self):
        """Synthetic sessions stay within one cluster."""
        from factorforge.data.sequences import synthetic_sequences
        seqs = synthetic_sequences(30, num_clusters=3, cluster_size=4, length=5, seed=0)
        assert len(seqs) == 30
        for seq in seqs:
            assert len(seq) == 5
            assert len({i // 4 for i in seq}) == 1


# =============================================================================
# Collection Engine Tests
# =============================================================================

class TestEngine:
    """Tests for partitioned collections and the cluster context."""

    def test_parallelize_round_robin(self):
        """parallelize spreads items round-robin over partitions."""
        from factorforge.engine.context import ClusterContext
        with ClusterContext(num_workers=2) as ctx:
            coll = ctx.parallelize(range(7), 3)
            assert coll.glom() == [[0, 3, 6], [1, 4], [2, 5]]
            assert coll.count() == 7

    def test_narrow_transformations(self):
        """map, filter and flat_map compose lazily."""
        from factorforge.engine.context import ClusterContext
        with ClusterContext(num_workers=2) as ctx:
            coll = ctx.parallelize(range(6), 2)
            out = coll.map(lambda x: x * 10).filter(lambda x: x > 10).flat_map(
                lambda x: [x, x + 1]
            )
            assert sorted(out.collect()) == [20, 21, 30, 31, 40, 41, 50, 51]

    def test_partition_by(self):
        """Every item lands in the slot its function names."""
        from factorforge.engine.context import ClusterContext
        with ClusterContext(num_workers=3) as ctx:
            parts = ctx.parallelize(range(20), 3).partition_by(lambda x: x % 4, 4).glom()
            assert len(parts) == 4
            for slot, items in enumerate(parts):
                assert sorted(items) == [x for x in range(20) if x % 4 == slot]

    def test_partition_by_out_of_range(self):
        """A slot outside [0, P) is an error."""
        from factorforge.engine.context import ClusterContext
        with ClusterContext(num_workers=2) as ctx:
            coll = ctx.parallelize(range(5), 2).partition_by(lambda x: 9, 2)
            with pytest.raises(ValueError, match="out of range"):
                coll.collect()

    def test_zip_partitions(self):
        """zip_partitions pairs partitions with equal indices."""
        from factorforge.engine.context import ClusterContext
        with ClusterContext(num_workers=2) as ctx:
            a = ctx.parallelize(range(6), 2)
            b = ctx.parallelize(range(10, 16), 2)
            zipped = a.zip_partitions(b, lambda i, x, y: [(i, sum(x) + sum(y))])
            assert zipped.collect() == [
                (0, 0 + 2 + 4 + 10 + 12 + 14),
                (1, 1 + 3 + 5 + 11 + 13 + 15),
            ]

    def test_zip_requires_equal_partitions(self):
        """Collections with different partition counts cannot be zipped."""
        from factorforge.engine.context import ClusterContext
        with ClusterContext(num_workers=2) as ctx:
            with pytest.raises(ValueError, match="equal partition counts"):
                ctx.parallelize(range(4), 2).zip_partitions(
                    ctx.parallelize(range(4), 3), lambda i, x, y: []
                )

    def test_evicted_partition_recomputed(self):
        """A lost cached partition is rebuilt from lineage, alone."""
        from factorforge.engine.context import ClusterContext
        calls = []
        with ClusterContext(num_workers=2) as ctx:
            coll = ctx.parallelize(range(6), 3).map(
                lambda x: calls.append(x) or x * 2
            ).cache()
            assert coll.count() == 6
            assert len(calls) == 6

            before = coll.glom()
            coll.evict(1)
            assert coll.glom() == before
            assert sorted(calls) == sorted(list(range(6)) + [1, 4])

    def test_evicted_shuffle_partition_recomputed(self):
        """An evicted shuffle partition is served from the kept map outputs."""
        from factorforge.engine.context import ClusterContext
        calls = []
        with ClusterContext(num_workers=2) as ctx:
            coll = ctx.parallelize(range(10), 3).map(
                lambda x: calls.append(x) or x
            ).partition_by(lambda x: x % 2, 2).cache()
            coll.count()
            assert len(calls) == 10

            before = sorted(coll.partition(0))
            coll.evict(0)
            assert sorted(coll.partition(0)) == before == [0, 2, 4, 6, 8]
            assert len(calls) == 10

    def test_unpersisted_shuffle_rebuilds_once(self):
        """unpersist() drops the map outputs; they are rebuilt on next use."""
        from factorforge.engine.context import ClusterContext
        calls = []
        with ClusterContext(num_workers=2) as ctx:
            coll = ctx.parallelize(range(10), 3).map(
                lambda x: calls.append(x) or x
            ).partition_by(lambda x: x % 2, 2)
            coll.count()
            assert coll.has_map_outputs

            coll.unpersist()
            assert not coll.has_map_outputs
            assert sorted(coll.partition(1)) == [1, 3, 5, 7, 9]
            assert sorted(coll.partition(0)) == [0, 2, 4, 6, 8]
            assert len(calls) == 20

    def test_disk_only_spill(self):
        """DISK_ONLY keeps partitions in spill files, not memory."""
        from factorforge.engine.collection import StorageLevel
        from factorforge.engine.context import ClusterContext
        with ClusterContext(num_workers=2) as ctx:
            coll = ctx.parallelize(range(8), 2).map(lambda x: x + 1)
            coll.persist(StorageLevel.DISK_ONLY)
            coll.count()
            assert list(ctx.spill_dir.rglob("*.pt"))
            assert coll._memory == {}
            assert sorted(coll.collect()) == list(range(1, 9))

            coll.unpersist()
            assert list(ctx.spill_dir.rglob("*.pt")) == []

    def test_memory_and_disk_reads_spill(self):
        """After a memory eviction the disk copy is used, not lineage."""
        from factorforge.engine.collection import StorageLevel
        from factorforge.engine.context import ClusterContext
        calls = []
        with ClusterContext(num_workers=2) as ctx:
            coll = ctx.parallelize(range(4), 2).map(
                lambda x: calls.append(x) or x
            ).persist(StorageLevel.MEMORY_AND_DISK)
            coll.count()
            coll.evict(0)
            assert sorted(coll.collect()) == [0, 1, 2, 3]
            assert len(calls) == 4

    def test_persist_migrates_level(self):
        """Changing the level moves cached partitions instead of dropping them."""
        from factorforge.engine.collection import StorageLevel
        from factorforge.engine.context import ClusterContext
        calls = []
        with ClusterContext(num_workers=2) as ctx:
            coll = ctx.parallelize(range(4), 2).map(
                lambda x: calls.append(x) or x
            ).cache()
            coll.count()
            coll.persist(StorageLevel.DISK_ONLY)
            assert coll._memory == {}
            assert coll.is_fully_cached
            assert sorted(coll.collect()) == [0, 1, 2, 3]
            assert len(calls) == 4

    def test_broadcast_lifecycle(self):
        """A destroyed broadcast cannot be read."""
        from factorforge.engine.context import BroadcastDestroyedError, ClusterContext
        with ClusterContext(num_workers=1) as ctx:
            handle = ctx.broadcast({"a": 1})
            assert handle.value == {"a": 1}
            assert ctx.live_broadcasts == 1
            handle.destroy()
            assert handle.is_destroyed
            assert ctx.live_broadcasts == 0
            with pytest.raises(BroadcastDestroyedError):
                _ = handle.value

    def test_task_failure_propagates(self):
        """The first failing task's exception reaches the caller."""
        from factorforge.engine.context import ClusterContext
        with ClusterContext(num_workers=2) as ctx:
            with pytest.raises(ZeroDivisionError):
                ctx.run(lambda i: 1 / (i - 1), range(3))

    def test_stop_cleans_up(self):
        """stop() removes the owned spill dir and refuses new work."""
        from factorforge.engine.context import ClusterContext
        ctx = ClusterContext(num_workers=1)
        spill_dir = ctx.spill_dir
        handle = ctx.broadcast(1)
        ctx.stop()
        assert not spill_dir.exists()
        assert handle.is_destroyed
        with pytest.raises(RuntimeError):
            ctx.run(lambda i: i, range(1))


# =============================================================================
# Local Optimizer Tests
# =============================================================================

class TestLocalOptimizer:
    """Tests for the single-slot SGD kernel."""

    def _pairs(self, anchors, contexts, label=1.0):
        from factorforge.data.records import TrainingPair
        return [TrainingPair(0, a, c, label) for a, c in zip(anchors, contexts)]

    def test_updates_right_vectors(self):
        """Zero-initialised RIGHT vectors move once they are trained."""
        from factorforge.training.optimizer import LocalOptimizer, OptimizerOptions
        opt = LocalOptimizer(
            OptimizerOptions(vector_size=4, negative=2), _records([1, 2, 3]), seed=1
        )
        assert opt.optimize(self._pairs([1, 2, 3], [2, 3, 1])) == 3
        out = list(opt.flush())

        assert sorted((r.side.name, r.id) for r in out) == sorted(
            (s, i) for i in (1, 2, 3) for s in ("LEFT", "RIGHT")
        )
        for record in out:
            if not record.is_left:
                assert np.abs(record.factors).sum() > 0

    def test_explicit_positive_raises_score(self):
        """In explicit mode a positive label pulls the pair together."""
        from factorforge.data.records import ItemRecord, Side
        from factorforge.training.optimizer import LocalOptimizer, OptimizerOptions
        u = np.array([0.5, 0.0, 0.0, 0.0])
        v = np.array([0.5, 0.5, 0.0, 0.0])
        records = [ItemRecord(Side.LEFT, 1, 1, u), ItemRecord(Side.RIGHT, 2, 1, v)]
        opt = LocalOptimizer(
            OptimizerOptions(vector_size=4, implicit_prefs=False, learning_rate=0.1),
            records,
        )
        opt.optimize(self._pairs([1] * 10, [2] * 10, label=1.0))
        out = {r.side: r.factors for r in opt.flush()}
        assert float(out[Side.LEFT] @ out[Side.RIGHT]) > float(u @ v)

    def test_bias_slot(self):
        """LEFT bias stays 1.0 while RIGHT bias is learned."""
        from factorforge.data.records import ItemRecord, Side
        from factorforge.training.optimizer import LocalOptimizer, OptimizerOptions
        records = [
            ItemRecord(Side.LEFT, 1, 1, [0.1, -0.2, 0.3, 1.0]),
            ItemRecord(Side.RIGHT, 2, 1, [0.0, 0.0, 0.0, 0.0]),
            ItemRecord(Side.RIGHT, 3, 1, [0.0, 0.0, 0.0, 0.0]),
        ]
        opt = LocalOptimizer(
            OptimizerOptions(vector_size=3, use_bias=True, negative=1), records
        )
        opt.optimize(self._pairs([1] * 5, [2] * 5))
        out = {(r.side, r.id): r.factors for r in opt.flush()}
        assert out[(Side.LEFT, 1)][-1] == 1.0
        assert out[(Side.RIGHT, 2)][-1] != 0.0

    def test_missing_record(self):
        """A pair whose items are not resident raises MissingRecordError."""
        from factorforge.training.optimizer import (
            LocalOptimizer,
            MissingRecordError,
            OptimizerOptions,
        )
        opt = LocalOptimizer(OptimizerOptions(vector_size=4), _records([1, 2]))
        with pytest.raises(MissingRecordError):
            opt.optimize(self._pairs([99], [1]))
        with pytest.raises(KeyError):
            opt.optimize(self._pairs([1], [99]))

    def test_vector_size_mismatch(self):
        """Records must match the configured vector length."""
        from factorforge.training.optimizer import LocalOptimizer, OptimizerOptions
        with pytest.raises(ValueError, match="factors"):
            LocalOptimizer(OptimizerOptions(vector_size=5), _records([1], dim=4))

    def test_multithreaded_consumes_all_pairs(self):
        """Hogwild threads together consume every pair exactly once."""
        from factorforge.training.optimizer import LocalOptimizer, OptimizerOptions
        ids = list(range(20))
        opt = LocalOptimizer(
            OptimizerOptions(vector_size=4, negative=2, batch_size=16, lambda_=0.01),
            _records(ids),
            seed=5,
        )
        anchors = [i % 20 for i in range(600)]
        contexts = [(i * 7 + 1) % 20 for i in range(600)]
        assert opt.optimize(self._pairs(anchors, contexts), num_threads=3) == 600
        assert opt.loss_n == 600
        assert opt.loss_reg_n == 600
        assert np.isfinite(opt.loss)
        assert "loss=" in opt.loss_summary()

    def test_no_pairs(self):
        """An empty slot leaves every record unchanged."""
        from factorforge.training.optimizer import LocalOptimizer, OptimizerOptions
        records = _records([1, 2])
        opt = LocalOptimizer(OptimizerOptions(vector_size=4), records)
        assert opt.optimize([]) == 0
        assert sorted(opt.flush(), key=lambda r: r.key[1:] + (r.side.flag,)) == sorted(
            records, key=lambda r: r.key[1:] + (r.side.flag,)
        )


# =============================================================================
# Checkpoint Tests
# =============================================================================

class TestCheckpoint:
    """Tests for checkpoint discovery, save and load."""

    def test_key_parse(self):
        """Only '{epoch}_{iteration}' names parse."""
        from factorforge.training.checkpoint import CheckpointKey
        assert CheckpointKey.parse("3_2") == CheckpointKey(3, 2)
        assert CheckpointKey.parse("3_2_1") is None
        assert CheckpointKey.parse("latest") is None
        assert CheckpointKey(1, 4).name == "1_4"

    def test_missing_root(self, tmp_path):
        """A checkpoint root that does not exist holds no checkpoints."""
        from factorforge.training.checkpoint import CheckpointManager
        manager = CheckpointManager(tmp_path / "none", context=None)
        assert manager.list_checkpoints() == []
        assert manager.resolve_latest() is None

    def test_resolve_latest_filters(self, tmp_path):
        """Incomplete and malformed entries are ignored."""
        from factorforge.training.checkpoint import CheckpointKey, CheckpointManager
        for name, complete in [("0_2", True), ("1_1", True), ("1_3", False),
                               ("garbage", True), ("2_x", True), (".1_9_tmp_ab", True)]:
            (tmp_path / name).mkdir()
            if complete:
                (tmp_path / name / "_SUCCESS").touch()
        (tmp_path / "5_5").write_text("a file, not a directory")

        manager = CheckpointManager(tmp_path, context=None)
        assert manager.list_checkpoints() == [CheckpointKey(0, 2), CheckpointKey(1, 1)]
        assert manager.resolve_latest() == CheckpointKey(1, 1)

    def test_ordering_is_numeric(self, tmp_path):
        """Epoch 10 sorts after epoch 9."""
        from factorforge.training.checkpoint import CheckpointKey, CheckpointManager
        for name in ("9_4", "10_1"):
            (tmp_path / name).mkdir()
            (tmp_path / name / "_SUCCESS").touch()
        manager = CheckpointManager(tmp_path, context=None)
        assert manager.resolve_latest() == CheckpointKey(10, 1)

    def test_save_and_load(self, tmp_path):
        """A saved collection loads back record for record."""
        from factorforge.engine.context import ClusterContext
        from factorforge.training.checkpoint import CheckpointKey, CheckpointManager
        records = _records([1, 2, 3, 4, 5])
        key = CheckpointKey(0, 1)

        with ClusterContext(num_workers=2) as ctx:
            manager = CheckpointManager(tmp_path, ctx)
            coll = ctx.parallelize(records, 3).cache()
            path = manager.save(coll, key, extra_metadata={"learning_rate": 0.1})

            assert (path / "_SUCCESS").exists()
            assert [p.name for p in tmp_path.iterdir()] == ["0_1"]
            metadata = manager.read_metadata(key)
            assert metadata["epoch"] == 0
            assert metadata["num_records"] == len(records)
            assert metadata["learning_rate"] == 0.1

            loaded = manager.load(key).collect()

        def order(r):
            return r.id, r.side.flag
        assert sorted(loaded, key=order) == sorted(records, key=order)

    def test_save_failure_cleans_up(self, tmp_path):
        """A failed save leaves neither a checkpoint nor a temp directory."""
        from factorforge.engine.context import ClusterContext
        from factorforge.training.checkpoint import CheckpointKey, CheckpointManager

        def broken(index, items):
            raise RuntimeError("disk on fire")

        with ClusterContext(num_workers=2) as ctx:
            manager = CheckpointManager(tmp_path, ctx)
            coll = ctx.parallelize(_records([1]), 2).map_partitions(broken)
            with pytest.raises(RuntimeError, match="disk on fire"):
                manager.save(coll, CheckpointKey(0, 1))
        assert list(tmp_path.iterdir()) == []

    def test_load_incomplete(self, tmp_path):
        """Loading a directory without the marker fails."""
        from factorforge.training.checkpoint import CheckpointKey, CheckpointManager
        (tmp_path / "0_1").mkdir()
        manager = CheckpointManager(tmp_path, context=None)
        with pytest.raises(FileNotFoundError):
            manager.load(CheckpointKey(0, 1))


# =============================================================================
# Item2Vec Tests
# =============================================================================

class TestItem2Vec:
    """End-to-end tests of the Item2Vec trainer."""

    def _sequences(self):
        from factorforge.data.sequences import synthetic_sequences
        return synthetic_sequences(60, num_clusters=3, cluster_size=5, length=6, seed=1)

    def test_initial_factors(self):
        """LEFT starts small and seeded per id, RIGHT starts at zero."""
        from factorforge.data.records import Side
        from factorforge.training.item2vec import initial_factors
        left = initial_factors(Side.LEFT, 7, 10, use_bias=True, seed=0)
        assert left.shape == (11,)
        assert left[-1] == 1.0
        assert np.all(np.abs(left[:-1]) <= 0.05)
        assert np.array_equal(left, initial_factors(Side.LEFT, 7, 10, True, 0))
        assert not np.array_equal(left, initial_factors(Side.LEFT, 8, 10, True, 0))

        right = initial_factors(Side.RIGHT, 7, 10, use_bias=True, seed=0)
        assert right.shape == (11,)
        assert not right.any()

    def test_single_step_run(self):
        """One epoch, one partition: one record per id per side, RIGHT trained."""
        from factorforge.engine.context import ClusterContext
        from factorforge.training.item2vec import Item2Vec
        sequences = self._sequences()
        all_ids = {i for seq in sequences for i in seq}

        with ClusterContext(num_workers=2) as ctx:
            trainer = Item2Vec(_tiny_config(), ctx)
            data = ctx.parallelize(sequences, 2).cache()
            records = trainer.train(data).collect()
            assert ctx.live_broadcasts == 0

        keys = [r.key for r in records]
        assert len(keys) == len(set(keys)) == 2 * len(all_ids)
        assert {r.id for r in records} == all_ids
        for record in records:
            if not record.is_left:
                assert np.abs(record.factors).sum() > 0
        assert trainer.last_results["steps"] == 1
        assert trainer.last_results["resumed_from"] is None

    def test_multi_partition_fit(self):
        """Several epochs and partitions keep the id set stable."""
        from factorforge.training.item2vec import train_item2vec
        sequences = self._sequences()
        config = _tiny_config(num_iterations=2, num_partitions=3, min_learning_rate=0.01)

        model_a = train_item2vec(sequences, config)
        model_b = train_item2vec(sequences, config)
        assert model_a.ids == model_b.ids == sorted({i for s in sequences for i in s})
        assert all(np.isfinite(model_a.vector(i)).all() for i in model_a.ids)

    @pytest.mark.parametrize("level", ["MEMORY_ONLY", "MEMORY_AND_DISK", "DISK_ONLY"])
    def test_each_slot_optimized_once_per_step(self, level, monkeypatch):
        """Every step runs the local optimizer exactly once per slot."""
        from factorforge.training.item2vec import train_item2vec
        from factorforge.training.optimizer import LocalOptimizer
        runs = []
        optimize = LocalOptimizer.optimize

        def counting_optimize(self, pairs, num_threads=1):
            runs.append(1)
            return optimize(self, pairs, num_threads)

        monkeypatch.setattr(LocalOptimizer, "optimize", counting_optimize)
        config = _tiny_config(num_iterations=2, num_partitions=2)
        config.storage.intermediate_storage_level = level
        config.storage.final_storage_level = level

        train_item2vec(self._sequences(), config)
        assert len(runs) == 2 * 2 * 2

    def test_recomputed_slot_replaces_its_loss(self):
        """A slot recomputed from lineage overwrites its loss entry."""
        from factorforge.engine.context import ClusterContext
        from factorforge.partitioning.table import create_partition_table
        from factorforge.training.item2vec import Item2Vec
        from factorforge.training.trainer import mean_loss

        with ClusterContext(num_workers=2) as ctx:
            trainer = Item2Vec(_tiny_config(num_partitions=2), ctx)
            data = ctx.parallelize(self._sequences(), 2).cache()
            emb = trainer.initialize(data).cache()
            emb.count()
            table = create_partition_table(2, np.random.default_rng(0), table_size=100)

            new_emb, losses = trainer._run_step(emb, data, table, 0, 0, 0.05)
            assert sorted(losses) == [0, 1]
            before = dict(losses)

            new_emb.evict(1)
            new_emb.partition(1)
            assert sorted(losses) == [0, 1]
            assert losses[1][1] == before[1][1]
            assert mean_loss(losses) == pytest.approx(mean_loss(before))

    def test_result_recomputable_after_run(self):
        """The returned generation survives partition loss after the table broadcast is gone."""
        from factorforge.engine.context import ClusterContext
        from factorforge.training.item2vec import Item2Vec

        with ClusterContext(num_workers=2) as ctx:
            trainer = Item2Vec(_tiny_config(num_iterations=2, num_partitions=2), ctx)
            emb = trainer.train(ctx.parallelize(self._sequences(), 2).cache())
            assert ctx.live_broadcasts == 0

            before = {r.key: r.factors for r in emb.partition(0)}
            emb.evict(0)
            after = {r.key: r.factors for r in emb.partition(0)}

        assert after.keys() == before.keys()
        for key, factors in before.items():
            np.testing.assert_allclose(after[key], factors, rtol=1e-5, atol=1e-6)

    def test_mean_loss(self):
        """Loss is averaged per pair over the slots that saw pairs."""
        from factorforge.training.trainer import mean_loss
        assert mean_loss({}) is None
        assert mean_loss({0: (0.0, 0)}) is None
        assert mean_loss({0: (3.0, 2), 1: (1.0, 2)}) == pytest.approx(1.0)

    def test_checkpoint_and_resume(self, tmp_path):
        """Checkpoints are written on schedule and a rerun resumes from them."""
        from factorforge.engine.context import ClusterContext
        from factorforge.training.item2vec import Item2Vec
        sequences = self._sequences()
        ckpt = tmp_path / "ckpt"

        config = _tiny_config(num_iterations=1, num_partitions=2)
        config.storage.checkpoint_path = str(ckpt)
        config.storage.checkpoint_interval = 2

        with ClusterContext(num_workers=2) as ctx:
            trainer = Item2Vec(config, ctx)
            first = trainer.train(ctx.parallelize(sequences, 2).cache()).collect()
        assert trainer.last_results["checkpoints"] == ["0_2"]
        assert (ckpt / "0_2" / "_SUCCESS").exists()

        config.training.num_iterations = 2
        with ClusterContext(num_workers=2) as ctx:
            trainer = Item2Vec(config, ctx)
            second = trainer.train(ctx.parallelize(sequences, 2).cache()).collect()
        assert trainer.last_results["resumed_from"] == "0_2"
        assert trainer.last_results["steps"] == 2
        assert trainer.last_results["checkpoints"] == ["1_2"]
        assert {r.key for r in second} == {r.key for r in first}

        with ClusterContext(num_workers=2) as ctx:
            trainer = Item2Vec(config, ctx)
            third = trainer.train(ctx.parallelize(sequences, 2).cache()).collect()
        assert trainer.last_results["resumed_from"] == "1_2"
        assert trainer.last_results["steps"] == 0
        assert len(third) == len(second)

    def test_step_failure_aborts(self):
        """An error inside a slot aborts the run with TrainingStepError."""
        from factorforge.data.records import TrainingPair
        from factorforge.engine.context import ClusterContext
        from factorforge.training.item2vec import Item2Vec
        from factorforge.training.optimizer import MissingRecordError
        from factorforge.training.trainer import TrainingStepError

        class BrokenPairs(Item2Vec):
            def pairs(self, data, partitioner1, partitioner2, seed):
                return data.map_partitions(
                    lambda i, _: [TrainingPair(0, -12345, -54321)]
                )

        with ClusterContext(num_workers=2) as ctx:
            trainer = BrokenPairs(_tiny_config(), ctx)
            with pytest.raises(TrainingStepError) as info:
                trainer.train(ctx.parallelize(self._sequences(), 2).cache())
            assert isinstance(info.value.__cause__, MissingRecordError)
            assert (info.value.epoch, info.value.partition_index) == (0, 0)
            assert ctx.live_broadcasts == 0

    def test_model_queries(self):
        """most_similar excludes the query and sorts by similarity."""
        from factorforge.training.item2vec import train_item2vec
        model = train_item2vec(self._sequences(), _tiny_config(num_iterations=2))
        item = model.ids[0]

        similar = model.most_similar(item, k=4)
        assert len(similar) == 4
        assert item not in [i for i, _ in similar]
        scores = [s for _, s in similar]
        assert scores == sorted(scores, reverse=True)
        assert model.vector(item).shape == (8,)
        with pytest.raises(KeyError):
            model.most_similar(-1)

    def test_model_records_round_trip(self):
        """A model rebuilt from its records is identical."""
        from factorforge.training.item2vec import Item2VecModel, train_item2vec
        model = train_item2vec(self._sequences(), _tiny_config())
        rebuilt = Item2VecModel.from_records(model.to_records())
        assert rebuilt.ids == model.ids
        assert torch.equal(rebuilt.left, model.left)
        assert torch.equal(rebuilt.right, model.right)

    def test_model_requires_both_sides(self):
        """LEFT and RIGHT records must cover the same ids."""
        from factorforge.training.item2vec import Item2VecModel
        records = [r for r in _records([1, 2]) if not (r.id == 2 and not r.is_left)]
        with pytest.raises(ValueError, match="different ids"):
            Item2VecModel.from_records(records)


# =============================================================================
# Metrics Tests
# =============================================================================

class TestMetrics:
    """Tests for evaluation metrics."""

    def test_hit_rate_and_stats(self):
        """Hit rate is a fraction and trained vectors are finite."""
        from factorforge.data.sequences import synthetic_sequences
        from factorforge.evaluation.metrics import neighbour_hit_rate, vector_stats
        from factorforge.training.item2vec import train_item2vec
        sequences = synthetic_sequences(60, num_clusters=3, cluster_size=5, length=6, seed=1)
        model = train_item2vec(sequences, _tiny_config(num_iterations=2))

        rate = neighbour_hit_rate(model, sequences, k=4)
        assert 0.0 <= rate <= 1.0

        stats = vector_stats(model)
        assert stats["num_items"] == len({i for s in sequences for i in s})
        assert stats["finite"]

    def test_hit_rate_without_pairs(self):
        """Sequences with no known pairs score 0.0."""
        from factorforge.evaluation.metrics import neighbour_hit_rate
        from factorforge.training.item2vec import Item2VecModel
        model = Item2VecModel.from_records(_records([1, 2, 3]))
        assert neighbour_hit_rate(model, [[1], [99, 98]]) == 0.0

    def test_memory_tracker(self):
        """Nested trackers leave the outer trace running."""
        import tracemalloc
        from factorforge.evaluation.metrics import MemoryTracker
        with MemoryTracker("outer") as outer:
            with MemoryTracker("inner") as inner:
                _ = [0] * 10_000
            assert tracemalloc.is_tracing()
        assert not tracemalloc.is_tracing()
        assert inner.peak_mb > 0
        assert outer.duration_seconds >= inner.duration_seconds

    def test_timer(self, caplog):
        """Timer records elapsed time and logs it only when asked to."""
        import logging
        from factorforge.evaluation.metrics import Timer
        with caplog.at_level(logging.INFO, logger="factorforge.evaluation.metrics"):
            with Timer("quiet", level=None) as quiet:
                _ = sum(range(1000))
            with Timer("loud") as loud:
                _ = sum(range(1000))
        assert quiet.elapsed >= 0.0 and loud.elapsed >= 0.0
        assert "[loud]" in caplog.text
        assert "[quiet]" not in caplog.text
