"""
Engine side of the boundary: replicas and the pool that schedules them.

Provides:
- Replica: Abstract model replica
- NativeStepResult, NativeGenerationResult, NativeScoringResult: Engine-side results
- ReplicaPool: Worker threads, bounded queue and rebatching

The transformers-backed replica lives in genpool.engine.transformers_replica
and is imported on demand.
"""

from genpool.engine.replica import (
    NativeGenerationResult,
    NativeScoringResult,
    NativeStepResult,
    Replica,
    StepCallback,
)
from genpool.engine.replica_pool import ReplicaPool, rebatch

__all__ = [
    "Replica",
    "StepCallback",
    "NativeStepResult",
    "NativeGenerationResult",
    "NativeScoringResult",
    "ReplicaPool",
    "rebatch",
]
