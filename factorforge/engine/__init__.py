"""
factorforge.engine — Partitioned Execution
===========================================
The data-parallel substrate training runs on:

    1. **Collections** (`collection.py`):
       Lazily computed partitioned collections with lineage-based
       recomputation, explicit persistence and co-partitioned zips.

    2. **Context** (`context.py`):
       Worker thread pool, spill directory and read-only broadcasts.
"""

from factorforge.engine.collection import PartitionedCollection, StorageLevel
from factorforge.engine.context import Broadcast, BroadcastDestroyedError, ClusterContext
