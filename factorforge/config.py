"""
FactorForge Configuration System
==================================
Centralized configuration for all FactorForge components using Python
dataclasses. Every hyperparameter, path, and setting lives here.

The configuration is split by concern:

    - FactorizationConfig — shape of the embeddings and the loss
    - TrainingConfig      — epochs, partitions, learning-rate schedule
    - StorageConfig       — persistence levels and checkpointing
    - ClusterConfig       — the in-process partition engine

Usage:
    # Load from YAML file:
    >>> config = FactorForgeConfig.from_yaml("configs/default.yaml")

    # Create programmatically:
    >>> config = FactorForgeConfig(
    ...     factorization=FactorizationConfig(dot_vector_size=32),
    ...     training=TrainingConfig(num_partitions=4),
    ... )

    # Save to YAML:
    >>> config.to_yaml("configs/my_experiment.yaml")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

import yaml

from factorforge.engine.collection import StorageLevel
from factorforge.partitioning.table import PART_TABLE_TOTAL_SIZE

logger = logging.getLogger(__name__)

# Levels accepted for embedding generations. NONE is excluded.
_STORAGE_LEVELS = tuple(
    level.name for level in StorageLevel if level is not StorageLevel.NONE
)


# =============================================================================
# Factorization Configuration
# =============================================================================

@dataclass
class FactorizationConfig:
    """
    Shape of the learned embeddings and of the logistic loss.

    Parameters
    ----------
    dot_vector_size : int
        Length of every embedding vector (excluding the bias slot).

    use_bias : bool
        Append one bias slot to every vector. LEFT vectors keep it fixed
        at 1.0, RIGHT vectors learn it, so the dot product carries a
        per-context bias term.

    negative : int
        Number of negative samples drawn per positive pair.

    pow : float
        Popularity exponent for negative sampling: items are drawn with
        probability proportional to ``count ** pow``. 0 = uniform.

    lambda_ : float
        L2 regularization strength. The YAML key ``lambda`` is accepted.

    gamma : float
        Weight of the negative-sample term in the loss.

    implicit_prefs : bool
        True: pairs are positive observations and negatives are sampled.
        False: every pair carries its own label and no negatives are drawn.
    """
    dot_vector_size: int = 10
    use_bias: bool = False
    negative: int = 10
    pow: float = 0.0
    lambda_: float = 0.0
    gamma: float = 1.0
    implicit_prefs: bool = True

    def validate(self) -> None:
        """Validate factorization parameters."""
        if self.dot_vector_size < 1:
            raise ValueError(
                f"dot_vector_size must be >= 1, got {self.dot_vector_size}"
            )
        if self.negative < 0:
            raise ValueError(f"negative must be >= 0, got {self.negative}")
        if self.pow < 0:
            raise ValueError(f"pow must be >= 0, got {self.pow}")
        if self.lambda_ < 0:
            raise ValueError(f"lambda must be >= 0, got {self.lambda_}")
        if self.gamma <= 0:
            raise ValueError(f"gamma must be positive, got {self.gamma}")

    @property
    def full_vector_size(self) -> int:
        """Stored vector length, bias slot included."""
        return self.dot_vector_size + (1 if self.use_bias else 0)


# =============================================================================
# Training Configuration
# =============================================================================

@dataclass
class TrainingConfig:
    """
    Hyperparameters for the epoch/partition training loop.

    One epoch is ``num_partitions`` scheduler steps. At step
    ``(epoch, partition_index)`` every LEFT partition meets the RIGHT
    partition that the rotation table assigns to it, so a full epoch
    covers all LEFT x RIGHT partition pairs exactly once.

    Parameters
    ----------
    num_iterations : int
        Number of epochs.

    num_partitions : int
        Number of co-location slots per step.

    learning_rate : float
        Initial learning rate.

    min_learning_rate : float or None
        Final learning rate. When set, the rate decays geometrically from
        ``learning_rate`` towards it as training progresses. None = constant.

    num_thread : int
        Threads used by the local optimizer inside one slot.

    window : int
        Item2Vec window: up to ``2 * window`` context candidates are tried
        per anchor position.

    batch_size : int
        Pairs per mini-batch inside the local optimizer.

    partition_table_size : int
        Total cells of the rotation table; rows = this // num_partitions.

    seed : int
        Random seed for the table, the pair generator and initialization.

    verbose : bool
        Log per-slot running loss at DEBUG level.
    """
    num_iterations: int = 1
    num_partitions: int = 1
    learning_rate: float = 0.025
    min_learning_rate: Optional[float] = None
    num_thread: int = 1
    window: int = 5
    batch_size: int = 256
    partition_table_size: int = PART_TABLE_TOTAL_SIZE
    seed: int = 0
    verbose: bool = False

    def validate(self) -> None:
        """Validate training parameters."""
        if self.num_iterations < 1:
            raise ValueError(
                f"num_iterations must be >= 1, got {self.num_iterations}"
            )
        if self.num_partitions < 1:
            raise ValueError(
                f"num_partitions must be >= 1, got {self.num_partitions}"
            )
        if self.num_partitions > self.partition_table_size:
            raise ValueError(
                f"num_partitions ({self.num_partitions}) cannot exceed "
                f"partition_table_size ({self.partition_table_size})"
            )
        if self.learning_rate <= 0:
            raise ValueError(
                f"learning_rate must be positive, got {self.learning_rate}"
            )
        if self.min_learning_rate is not None:
            if self.min_learning_rate <= 0:
                raise ValueError(
                    f"min_learning_rate must be positive, "
                    f"got {self.min_learning_rate}"
                )
            if self.min_learning_rate > self.learning_rate:
                raise ValueError(
                    f"min_learning_rate ({self.min_learning_rate}) must not "
                    f"exceed learning_rate ({self.learning_rate})"
                )
        if self.num_thread < 1:
            raise ValueError(f"num_thread must be >= 1, got {self.num_thread}")
        if self.window < 1:
            raise ValueError(f"window must be >= 1, got {self.window}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")


# =============================================================================
# Storage Configuration
# =============================================================================

@dataclass
class StorageConfig:
    """
    Persistence of embedding generations and checkpointing.

    Parameters
    ----------
    intermediate_storage_level : str
        Storage level for the generation produced by every step.
        One of MEMORY_ONLY, MEMORY_AND_DISK, DISK_ONLY.

    final_storage_level : str
        Storage level for the generation returned by training.

    checkpoint_path : str or None
        Root directory for checkpoints. Required when checkpoint_interval > 0.
        Existing complete checkpoints under it are resumed from.

    checkpoint_interval : int
        Save a checkpoint every N scheduler steps. 0 = never.
    """
    intermediate_storage_level: str = "MEMORY_AND_DISK"
    final_storage_level: str = "MEMORY_AND_DISK"
    checkpoint_path: Optional[str] = None
    checkpoint_interval: int = 0

    def validate(self) -> None:
        """Validate storage parameters."""
        for name in ("intermediate_storage_level", "final_storage_level"):
            value = getattr(self, name)
            if value not in _STORAGE_LEVELS:
                raise ValueError(
                    f"Unknown {name}: '{value}'. "
                    f"Choose from: {', '.join(_STORAGE_LEVELS)}"
                )
        if self.checkpoint_interval < 0:
            raise ValueError(
                f"checkpoint_interval must be >= 0, "
                f"got {self.checkpoint_interval}"
            )
        if self.checkpoint_interval > 0 and not self.checkpoint_path:
            raise ValueError(
                f"checkpoint_interval={self.checkpoint_interval} requires "
                f"checkpoint_path to be set"
            )

    @property
    def intermediate_level(self) -> StorageLevel:
        return StorageLevel[self.intermediate_storage_level]

    @property
    def final_level(self) -> StorageLevel:
        return StorageLevel[self.final_storage_level]


# =============================================================================
# Cluster Configuration
# =============================================================================

@dataclass
class ClusterConfig:
    """
    Settings of the in-process partition engine.

    Parameters
    ----------
    num_workers : int
        Thread-pool size used to compute partitions in parallel.

    num_data_partitions : int
        Partitions the input sequences are split into.

    spill_dir : str or None
        Directory for DISK_ONLY / MEMORY_AND_DISK spills. None = a
        temporary directory owned by the context.
    """
    num_workers: int = 4
    num_data_partitions: int = 4
    spill_dir: Optional[str] = None

    def validate(self) -> None:
        """Validate cluster parameters."""
        if self.num_workers < 1:
            raise ValueError(f"num_workers must be >= 1, got {self.num_workers}")
        if self.num_data_partitions < 1:
            raise ValueError(
                f"num_data_partitions must be >= 1, "
                f"got {self.num_data_partitions}"
            )


# =============================================================================
# Master Configuration
# =============================================================================

@dataclass
class FactorForgeConfig:
    """
    Master configuration combining all sub-configurations.

    Usage:
        >>> config = FactorForgeConfig.from_yaml("configs/default.yaml")
        >>> config = FactorForgeConfig()
        >>> config.validate()
    """
    factorization: FactorizationConfig = field(default_factory=FactorizationConfig)
    training: TrainingConfig = field(default_factory=TrainingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    cluster: ClusterConfig = field(default_factory=ClusterConfig)

    def validate(self) -> None:
        """
        Validate all sub-configurations.

        Raises
        ------
        ValueError
            If any parameter is invalid.
        """
        self.factorization.validate()
        self.training.validate()
        self.storage.validate()
        self.cluster.validate()

        logger.info(
            f"Config validated: dim={self.factorization.dot_vector_size}, "
            f"partitions={self.training.num_partitions}, "
            f"epochs={self.training.num_iterations}"
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> FactorForgeConfig:
        """
        Load configuration from a YAML file.

        Parameters
        ----------
        path : str or Path
            Path to the YAML configuration file.

        Returns
        -------
        FactorForgeConfig
            Loaded and validated configuration.

        Raises
        ------
        FileNotFoundError
            If the YAML file does not exist.
        ValueError
            If the file is empty or a value is invalid.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(
                f"Config file not found: {path}. "
                f"Create one from configs/default.yaml as a template."
            )

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        if raw is None:
            raise ValueError(f"Config file is empty: {path}")

        factorization = dict(raw.get("factorization", {}))
        # "lambda" is a Python keyword, the field is lambda_
        if "lambda" in factorization:
            factorization["lambda_"] = factorization.pop("lambda")

        config = cls(
            factorization=FactorizationConfig(**factorization),
            training=TrainingConfig(**raw.get("training", {})),
            storage=StorageConfig(**raw.get("storage", {})),
            cluster=ClusterConfig(**raw.get("cluster", {})),
        )

        config.validate()
        return config

    def to_yaml(self, path: str | Path) -> None:
        """
        Save configuration to a YAML file.

        Creates parent directories if they don't exist.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(
                self.to_dict(),
                f,
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True,
            )

        logger.info(f"Config saved to {path}")

    def to_dict(self) -> dict:
        """Convert to nested dictionary."""
        return asdict(self)

    @classmethod
    def for_smoke_test(cls) -> FactorForgeConfig:
        """
        Create a minimal configuration for quick smoke testing.

        Uses a tiny rotation table and few dimensions so a full run
        finishes in seconds on any hardware.
        """
        return cls(
            factorization=FactorizationConfig(
                dot_vector_size=8,
                negative=3,
            ),
            training=TrainingConfig(
                num_iterations=2,
                num_partitions=2,
                learning_rate=0.05,
                min_learning_rate=0.005,
                window=2,
                batch_size=32,
                partition_table_size=1000,
                seed=42,
            ),
            storage=StorageConfig(
                intermediate_storage_level="MEMORY_ONLY",
                final_storage_level="MEMORY_ONLY",
            ),
            cluster=ClusterConfig(
                num_workers=2,
                num_data_partitions=2,
            ),
        )

    def __repr__(self) -> str:
        """Pretty-print the configuration."""
        lr = f"{self.training.learning_rate}"
        if self.training.min_learning_rate is not None:
            lr += f"->{self.training.min_learning_rate}"
        lines = [
            "FactorForgeConfig(",
            f"  Vectors:  dim={self.factorization.dot_vector_size}, "
            f"bias={self.factorization.use_bias}, "
            f"negative={self.factorization.negative}, "
            f"pow={self.factorization.pow}",
            f"  Training: epochs={self.training.num_iterations}, "
            f"partitions={self.training.num_partitions}, lr={lr}, "
            f"window={self.training.window}",
            f"  Storage:  checkpoint={self.storage.checkpoint_path} "
            f"every {self.storage.checkpoint_interval} steps",
            f"  Cluster:  workers={self.cluster.num_workers}, "
            f"data_partitions={self.cluster.num_data_partitions}",
            ")",
        ]
        return "\n".join(lines)
