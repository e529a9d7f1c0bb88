#!/usr/bin/env python3
"""
FactorForge — Evaluation Script
=================================
Loads the final vectors written by scripts/train.py, reports vector
statistics and the neighbour hit rate, and prints nearest neighbours.

Usage:
    python scripts/evaluate.py --output-dir outputs --data sessions.txt
    python scripts/evaluate.py --output-dir outputs --items 3 17 42
"""

import argparse
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from factorforge.data.sequences import read_sequences
from factorforge.evaluation.metrics import neighbour_hit_rate, vector_stats
from factorforge.training.checkpoint import METADATA_FILE, read_snapshot
from factorforge.training.item2vec import Item2VecModel

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="FactorForge Evaluation")
    parser.add_argument("--output-dir", type=str, default="outputs")
    parser.add_argument("--data", type=str, default=None,
                        help="Sequence file for the neighbour hit rate")
    parser.add_argument("--items", type=int, nargs="*", default=None,
                        help="Item ids to show neighbours for")
    parser.add_argument("--k", type=int, default=10)
    args = parser.parse_args()

    output_dir = Path(args.output_dir)
    final_dir = output_dir / "final"

    with open(final_dir / METADATA_FILE, "r", encoding="utf-8") as f:
        metadata = json.load(f)

    model = Item2VecModel.from_records(
        read_snapshot(final_dir), use_bias=metadata.get("use_bias", False)
    )
    logger.info(f"Loaded {len(model):,} items from {final_dir}")

    report = {"vector_stats": vector_stats(model)}
    logger.info(f"Vector stats: {report['vector_stats']}")

    if args.data:
        report[f"hit@{args.k}"] = neighbour_hit_rate(
            model, read_sequences(args.data), k=args.k
        )

    items = args.items if args.items else model.ids[:5]
    neighbours = {}
    for item_id in items:
        if item_id not in model:
            logger.warning(f"Item {item_id} not in model, skipping")
            continue
        similar = model.most_similar(item_id, k=args.k)
        neighbours[str(item_id)] = similar
        print(f"\n{item_id}:")
        for other, score in similar:
            print(f"    {other:>10}  {score:.4f}")
    report["neighbours"] = neighbours

    with open(output_dir / "eval_results.json", "w") as f:
        json.dump(report, f, indent=2)
    logger.info(f"Report saved to {output_dir / 'eval_results.json'}")


if __name__ == "__main__":
    main()
