"""
factorforge.data — Records and Sequences
=========================================
Value types shared by every other subpackage, plus sequence-file I/O.

    1. **Records** (`records.py`):
       ItemRecord (one embedding entity) and TrainingPair (one
       slot-addressed training instance).

    2. **Sequences** (`sequences.py`):
       Reads and writes whitespace-separated item-id sequence files.
"""

from factorforge.data.records import ItemRecord, Side, TrainingPair
from factorforge.data.sequences import (
    iter_sequences,
    read_sequences,
    synthetic_sequences,
    write_sequences,
)
