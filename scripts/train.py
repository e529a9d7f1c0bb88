#!/usr/bin/env python3
"""
FactorForge — Training Script
===============================
Trains Item2Vec embeddings on a sequence file with partition-rotated
distributed SGD, resuming from the newest checkpoint if one exists.

Usage:
    python scripts/train.py --config configs/default.yaml --data sessions.txt
    python scripts/train.py --smoke-test
"""

import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from factorforge.config import FactorForgeConfig
from factorforge.data.sequences import read_sequences, synthetic_sequences
from factorforge.engine.context import ClusterContext
from factorforge.training.checkpoint import write_snapshot
from factorforge.training.item2vec import Item2Vec

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(
        description="FactorForge Training",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Full training:
    python scripts/train.py --config configs/default.yaml --data sessions.txt

    # Quick smoke test on synthetic sessions:
    python scripts/train.py --smoke-test

    # Resume: rerun the same command; the newest complete
    # checkpoint under storage.checkpoint_path is picked up.
        """,
    )
    parser.add_argument(
        "--config", type=str, default="configs/default.yaml",
    )
    parser.add_argument(
        "--smoke-test", action="store_true",
    )
    parser.add_argument(
        "--data", type=str, default=None,
        help="Sequence file: one session per line, whitespace-separated ids",
    )
    parser.add_argument(
        "--output-dir", type=str, default="outputs",
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="Log per-slot loss at DEBUG level",
    )
    args = parser.parse_args()

    if args.smoke_test:
        config = FactorForgeConfig.for_smoke_test()
    else:
        config = FactorForgeConfig.from_yaml(args.config)
    if args.verbose:
        config.training.verbose = True
        logging.getLogger("factorforge").setLevel(logging.DEBUG)

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    # ─── Data ───────────────────────────────────────────────────────
    if args.data:
        sequences = read_sequences(args.data)
    elif args.smoke_test:
        sequences = synthetic_sequences(500, seed=config.training.seed)
        logger.info(f"Generated {len(sequences):,} synthetic sequences")
    else:
        parser.error("--data is required unless --smoke-test is given")

    logger.info(f"\n{config}")
    config.to_yaml(output_dir / "config.yaml")

    # ─── Train ──────────────────────────────────────────────────────
    with ClusterContext(
        num_workers=config.cluster.num_workers,
        spill_dir=config.cluster.spill_dir,
    ) as ctx:
        trainer = Item2Vec(config, ctx)
        data = ctx.parallelize(
            sequences, config.cluster.num_data_partitions, name="sequences"
        ).cache()

        embeddings = trainer.train(data)
        n_records = write_snapshot(
            embeddings,
            output_dir / "final",
            {"use_bias": config.factorization.use_bias},
        )

    results = trainer.last_results
    with open(output_dir / "train_results.json", "w") as f:
        json.dump(results, f, indent=2)

    logger.info(
        f"\nTraining complete!"
        f"\n  Steps run: {results['steps']}"
        f"\n  Resumed from: {results['resumed_from']}"
        f"\n  Final loss: {results['final_loss']}"
        f"\n  Peak memory: {results['peak_memory_mb']:.1f}MB"
        f"\n  Total time: {results['total_time_seconds']:.1f}s"
        f"\n  Vectors: {n_records:,} records in {output_dir / 'final'}/"
    )


if __name__ == "__main__":
    main()
