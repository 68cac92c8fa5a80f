"""
Host handle owning a replica pool.
"""

import logging
from typing import List, Optional

from genpool.config.pool_config import ModelLoader, ReplicaFactory, ReplicaPoolConfig
from genpool.config.resolver import (
    ComputeTypeArg,
    DeviceIndexArg,
    resolve_compute_type,
    resolve_device_index,
)
from genpool.config.types import str_to_device
from genpool.engine.replica_pool import ReplicaPool
from genpool.errors import PoolClosedError

logger = logging.getLogger(__name__)


def _default_replica_factory() -> ReplicaFactory:
    from genpool.engine.transformers_replica import TransformersReplica

    return TransformersReplica.load


class ReplicaPoolHandle:
    """Owns a pool of model replicas and exposes its state.

    Construction loads every replica before returning and cannot be
    cancelled. Callers must resolve the results they submitted before
    calling ``close()``.
    """

    def __init__(
        self,
        model_path: str,
        device: str = "cpu",
        *,
        device_index: DeviceIndexArg = 0,
        compute_type: ComputeTypeArg = "default",
        inter_threads: int = 1,
        intra_threads: int = 0,
        max_queued_batches: int = 0,
        submit_timeout: Optional[float] = None,
        replica_factory: Optional[ReplicaFactory] = None,
    ) -> None:
        """Resolve the configuration and build the pool.

        Args:
            model_path: Path of the model directory.
            device: Device name ("cpu", "cuda" or "auto").
            device_index: One device index or a list of them.
            compute_type: A compute type, or a mapping from device name to
                compute type.
            inter_threads: Replicas per device.
            intra_threads: Compute threads per replica (0 keeps the default).
            max_queued_batches: Queue bound (0 for automatic, -1 for unbounded).
            submit_timeout: Seconds to wait for queue space before rejecting
                a batch (None waits indefinitely).
            replica_factory: Builds one replica per device index; defaults to
                the transformers replica.

        Raises:
            InvalidDeviceError: If the device name or an index is invalid.
            InvalidComputeTypeError: If the compute type is not recognized.
            ModelLoadError: If a replica cannot be loaded.
        """
        resolved_device = str_to_device(device)
        self._model_loader = ModelLoader(
            model_path=model_path,
            device=resolved_device,
            device_indices=tuple(resolve_device_index(device_index)),
            compute_type=resolve_compute_type(compute_type, resolved_device),
            num_replicas_per_device=inter_threads,
            replica_factory=replica_factory or _default_replica_factory(),
        )
        self._pool_config = ReplicaPoolConfig(
            num_threads_per_replica=intra_threads,
            max_queued_batches=max_queued_batches,
            submit_timeout=submit_timeout,
        )
        self._pool = ReplicaPool(self._model_loader, self._pool_config)

    @property
    def model_loader(self) -> ModelLoader:
        return self._model_loader

    @property
    def pool_config(self) -> ReplicaPoolConfig:
        return self._pool_config

    @property
    def device(self) -> str:
        return self._model_loader.device.value

    @property
    def device_index(self) -> List[int]:
        return list(self._model_loader.device_indices)

    @property
    def compute_type(self) -> str:
        return self._model_loader.compute_type.value

    @property
    def num_replicas(self) -> int:
        return self._pool.num_replicas

    @property
    def num_queued_batches(self) -> int:
        return self._pool.num_queued_batches

    @property
    def num_active_batches(self) -> int:
        return self._pool.num_active_batches

    @property
    def closed(self) -> bool:
        return self._pool.closed

    def _check_open(self) -> None:
        if self._pool.closed:
            raise PoolClosedError(f"{type(self).__name__} has been closed")

    def close(self) -> None:
        """Finish queued work and stop the pool. Safe to call twice."""
        self._pool.close()

    def __del__(self) -> None:
        # Dropped without close(): workers still drain the queue, then exit.
        pool = getattr(self, "_pool", None)
        if pool is not None:
            pool.close(wait=False)

    def __enter__(self) -> "ReplicaPoolHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}("
            f"model_path={self._model_loader.model_path!r}, "
            f"device={self.device!r}, "
            f"device_index={self.device_index}, "
            f"compute_type={self.compute_type!r}, "
            f"num_replicas={self.num_replicas}"
            f")"
        )
