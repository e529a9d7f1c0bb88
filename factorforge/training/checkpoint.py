"""
FactorForge Checkpoint Manager
================================
Durable snapshots of the full embedding collection, named by the step
they resume at.

Layout:
    {root}/{epoch}_{iteration}/
        part-00000.safetensors   — one record table per non-empty slot
        part-00001.safetensors
        metadata.json            — epoch, iteration, record counts, ...
        _SUCCESS                 — completion marker, written last

Each record table holds four columns: ``side`` (bool, True = LEFT),
``id`` (int64), ``count`` (int64), ``factors`` (float32, N x d).

Atomicity:
    A checkpoint is written into a hidden temporary sibling directory and
    renamed into place only after ``_SUCCESS`` exists. A directory without
    the marker (a crash mid-write, a foreign directory) is never resumed.

Discovery:
    ``list_checkpoints`` keeps only children whose name parses as
    ``{epoch}_{iteration}`` and that hold the marker. Everything else is
    filtered out and logged; nothing in a malformed directory can make
    discovery fail.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import numpy as np
import torch
from safetensors.torch import load_file, save_file

from factorforge.data.records import ItemRecord, Side
from factorforge.engine.collection import PartitionedCollection, StorageLevel
from factorforge.engine.context import ClusterContext
from factorforge.evaluation.metrics import Timer

logger = logging.getLogger(__name__)

SUCCESS_MARKER = "_SUCCESS"
METADATA_FILE = "metadata.json"
_NAME_PATTERN = re.compile(r"^(\d+)_(\d+)$")


@dataclass(frozen=True, order=True)
class CheckpointKey:
    """Resume point: the step ``(epoch, iteration)`` to continue from."""
    epoch: int
    iteration: int

    @property
    def name(self) -> str:
        return f"{self.epoch}_{self.iteration}"

    @classmethod
    def parse(cls, name: str) -> Optional[CheckpointKey]:
        """Key of a directory name, or None if it is not a checkpoint name."""
        match = _NAME_PATTERN.match(name)
        if match is None:
            return None
        return cls(int(match.group(1)), int(match.group(2)))


def records_to_tensors(records: list[ItemRecord]) -> dict[str, torch.Tensor]:
    """Column tensors of one record table."""
    return {
        "side": torch.tensor([r.side.flag for r in records], dtype=torch.bool),
        "id": torch.tensor([r.id for r in records], dtype=torch.int64),
        "count": torch.tensor([r.count for r in records], dtype=torch.int64),
        "factors": torch.from_numpy(np.stack([r.factors for r in records])),
    }


def tensors_to_records(tensors: dict[str, torch.Tensor]) -> list[ItemRecord]:
    sides = tensors["side"].tolist()
    ids = tensors["id"].tolist()
    counts = tensors["count"].tolist()
    factors = tensors["factors"].numpy()
    return [
        ItemRecord(Side.from_flag(s), i, c, factors[k])
        for k, (s, i, c) in enumerate(zip(sides, ids, counts))
    ]


def write_snapshot(
    embeddings: PartitionedCollection,
    directory: str | Path,
    metadata: Optional[dict] = None,
) -> int:
    """
    Atomically write ``embeddings`` as a record-table snapshot.

    The files go to a hidden temporary sibling of ``directory`` first;
    ``_SUCCESS`` is written last and the sibling is then renamed into
    place, replacing any previous snapshot there. Returns the number of
    records written.

    Raises
    ------
    OSError
        If the store cannot be written. The temporary directory is
        removed and the error propagates.
    """
    directory = Path(directory)
    directory.parent.mkdir(parents=True, exist_ok=True)
    tmp_dir = Path(
        tempfile.mkdtemp(dir=directory.parent, prefix=f".{directory.name}_tmp_")
    )

    try:
        n_records = 0
        n_files = 0
        for index, records in enumerate(embeddings.glom()):
            if not records:
                continue
            save_file(
                records_to_tensors(records),
                str(tmp_dir / f"part-{index:05d}.safetensors"),
            )
            n_records += len(records)
            n_files += 1

        info = {
            "num_records": n_records,
            "num_files": n_files,
            "num_partitions": embeddings.num_partitions,
            "created": time.strftime("%Y-%m-%dT%H:%M:%S"),
        }
        info.update(metadata or {})
        (tmp_dir / METADATA_FILE).write_text(
            json.dumps(info, indent=2, default=str), encoding="utf-8"
        )
        (tmp_dir / SUCCESS_MARKER).touch()

        if directory.exists():
            shutil.rmtree(directory)
        tmp_dir.rename(directory)
    except Exception:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise

    return n_records


def snapshot_files(directory: str | Path) -> list[Path]:
    """Record-table files of a complete snapshot, in slot order."""
    directory = Path(directory)
    if not (directory / SUCCESS_MARKER).exists():
        raise FileNotFoundError(f"No complete snapshot at {directory}")
    return sorted(directory.glob("part-*.safetensors"))


def read_snapshot(directory: str | Path) -> list[ItemRecord]:
    """Every record of a snapshot, read on the calling thread."""
    records: list[ItemRecord] = []
    for path in snapshot_files(directory):
        records.extend(tensors_to_records(load_file(str(path))))
    return records


class CheckpointManager:
    """
    Saves, discovers and loads embedding checkpoints under one root.

    Parameters
    ----------
    root : str or Path
        Checkpoint root directory. Created on first save.
    context : ClusterContext
        Context that loaded checkpoints are materialized in.
    storage_level : StorageLevel
        Level a loaded checkpoint is persisted at.
    """

    def __init__(
        self,
        root: str | Path,
        context: ClusterContext,
        storage_level: StorageLevel = StorageLevel.MEMORY_AND_DISK,
    ):
        self.root = Path(root)
        self.context = context
        self.storage_level = storage_level

    # ─── Discovery ───────────────────────────────────────────────────────

    def list_checkpoints(self) -> list[CheckpointKey]:
        """All complete checkpoints, oldest first."""
        if not self.root.is_dir():
            return []

        keys = []
        for child in self.root.iterdir():
            if not child.is_dir():
                continue
            key = CheckpointKey.parse(child.name)
            if key is None:
                logger.debug(f"Ignoring non-checkpoint entry: {child}")
                continue
            if not (child / SUCCESS_MARKER).exists():
                logger.debug(f"Ignoring incomplete checkpoint: {child}")
                continue
            keys.append(key)
        return sorted(keys)

    def resolve_latest(self) -> Optional[CheckpointKey]:
        """The newest complete checkpoint, or None."""
        keys = self.list_checkpoints()
        return keys[-1] if keys else None

    def path_for(self, key: CheckpointKey) -> Path:
        return self.root / key.name

    # ─── Save / load ─────────────────────────────────────────────────────

    def save(
        self,
        embeddings: PartitionedCollection,
        key: CheckpointKey,
        extra_metadata: Optional[dict] = None,
    ) -> Path:
        """
        Write ``embeddings`` as checkpoint ``key`` and release the
        in-memory generation afterwards.
        """
        final_dir = self.path_for(key)
        metadata = {"epoch": key.epoch, "iteration": key.iteration}
        metadata.update(extra_metadata or {})

        with Timer(f"checkpoint {key.name}", level=None) as timer:
            n_records = write_snapshot(embeddings, final_dir, metadata)

        embeddings.unpersist()
        logger.info(
            f"Checkpoint saved: {final_dir} ({n_records:,} records, "
            f"{timer.elapsed:.2f}s)"
        )
        return final_dir

    def load(self, key: CheckpointKey) -> PartitionedCollection:
        """Read checkpoint ``key`` into a persisted, materialized collection."""
        path = self.path_for(key)
        files = snapshot_files(path)

        if files:
            collection = self.context.from_partitions(
                [[] for _ in files], name=f"checkpoint_{key.name}"
            ).map_partitions(
                lambda i, _: tensors_to_records(load_file(str(files[i]))),
                name=f"checkpoint_{key.name}",
            )
        else:
            collection = self.context.from_partitions(
                [[]], name=f"checkpoint_{key.name}"
            )

        collection.persist(self.storage_level)
        with Timer(f"load {key.name}", level=None) as timer:
            n = collection.count()
        logger.info(f"Loaded checkpoint {path} ({n:,} records, {timer.elapsed:.2f}s)")
        return collection

    def read_metadata(self, key: CheckpointKey) -> dict:
        with open(self.path_for(key) / METADATA_FILE, "r", encoding="utf-8") as f:
            return json.load(f)
