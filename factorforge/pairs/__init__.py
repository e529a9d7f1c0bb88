"""
factorforge.pairs — Training Pair Generation
=============================================
Generators that turn item sequences into TrainingPairs already addressed
to the slot that will consume them (see `generator.py`).
"""

from factorforge.pairs.generator import Item2VecGenerator, PairGenerator
