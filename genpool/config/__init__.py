"""
Pool configuration.

Provides:
- Device, ComputeType, BatchType: Enums with string parsers
- resolve_device_index / resolve_compute_type: Canonicalize caller arguments
- ModelLoader, ReplicaPoolConfig: Immutable pool construction settings
"""

from genpool.config.pool_config import ModelLoader, ReplicaFactory, ReplicaPoolConfig
from genpool.config.resolver import resolve_compute_type, resolve_device_index
from genpool.config.types import (
    BatchType,
    ComputeType,
    Device,
    str_to_batch_type,
    str_to_compute_type,
    str_to_device,
)

__all__ = [
    "Device",
    "ComputeType",
    "BatchType",
    "str_to_device",
    "str_to_compute_type",
    "str_to_batch_type",
    "resolve_device_index",
    "resolve_compute_type",
    "ModelLoader",
    "ReplicaPoolConfig",
    "ReplicaFactory",
]
