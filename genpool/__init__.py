"""
genpool: Multi-replica batch text generation behind a host-facing API.

This package provides:
- Conversion between host token lists and engine-side batches
- Device and compute type resolution for model loading
- A replica pool with bounded queueing and rebatching
- Batch generation with per-step callbacks and asynchronous results
- Batch scoring of token sequences
"""

__version__ = "0.1.0"
__author__ = "genpool contributors"

from genpool.core import Generator, ReplicaPoolHandle
from genpool.errors import (
    ConfigurationError,
    ContextOwnershipError,
    GenPoolError,
    InvalidBatchTypeError,
    InvalidComputeTypeError,
    InvalidDeviceError,
    InvalidOptionsError,
    ModelLoadError,
    PoolClosedError,
    QueueFullError,
    SequenceIndexError,
)
from genpool.generation import (
    AsyncGenerationResult,
    AsyncScoringResult,
    CallbackBridge,
    GenerationOptions,
    GenerationResult,
    GenerationStepResult,
    ScoringResult,
)

__all__ = [
    "Generator",
    "ReplicaPoolHandle",
    "GenerationOptions",
    "GenerationResult",
    "GenerationStepResult",
    "ScoringResult",
    "AsyncGenerationResult",
    "AsyncScoringResult",
    "CallbackBridge",
    "GenPoolError",
    "ConfigurationError",
    "InvalidDeviceError",
    "InvalidComputeTypeError",
    "InvalidBatchTypeError",
    "InvalidOptionsError",
    "ModelLoadError",
    "QueueFullError",
    "PoolClosedError",
    "ContextOwnershipError",
    "SequenceIndexError",
]
