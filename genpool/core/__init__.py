"""
Core module for genpool.

This module contains the host-facing handles:
- ReplicaPoolHandle: Owns a pool of model replicas
- Generator: Batch generation, token streaming and scoring
"""

from genpool.core.generator import Generator
from genpool.core.pool_handle import ReplicaPoolHandle

__all__ = ["ReplicaPoolHandle", "Generator"]
