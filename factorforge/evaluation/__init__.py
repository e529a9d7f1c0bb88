"""
factorforge.evaluation — Run and Vector Metrics
================================================
Neighbour hit rate and vector statistics for fitted models, plus the
memory/time trackers the trainer reports with (see `metrics.py`).
"""

from factorforge.evaluation.metrics import MemoryTracker, Timer, neighbour_hit_rate, vector_stats
