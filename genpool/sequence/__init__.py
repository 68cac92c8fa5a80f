"""
Sequence conversion across the host/engine boundary.

Provides:
- NativeBatch: Ragged token or id storage used by replicas
- to_native: Copy host nested lists into a NativeBatch
- to_host: Move a NativeBatch back into host nested lists
"""

from genpool.sequence.adapter import IDS, TOKENS, NativeBatch, to_host, to_native

__all__ = ["NativeBatch", "to_native", "to_host", "TOKENS", "IDS"]
