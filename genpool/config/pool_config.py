"""
Immutable value objects describing how a replica pool is built.

ModelLoader says what to load and where; ReplicaPoolConfig says how the pool
schedules work. Both are validated on construction and never change after.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from genpool.config.types import ComputeType, Device
from genpool.errors import ConfigurationError, InvalidDeviceError

# (model_path, device, device_index, compute_type, num_threads) -> Replica
ReplicaFactory = Callable[[str, Device, int, ComputeType, int], Any]


@dataclass(frozen=True)
class ModelLoader:
    """What to load and on which devices.

    Attributes:
        model_path: Path of the model directory.
        device: Device kind.
        device_indices: Device ordinals; one replica group per index.
        compute_type: Precision to load the weights in.
        num_replicas_per_device: Worker threads sharing each loaded replica.
        replica_factory: Callable building one replica for one device index.
    """

    model_path: str
    device: Device = Device.CPU
    device_indices: Tuple[int, ...] = (0,)
    compute_type: ComputeType = ComputeType.DEFAULT
    num_replicas_per_device: int = 1
    replica_factory: Optional[ReplicaFactory] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "device_indices", tuple(self.device_indices))
        self._validate()

    def _validate(self) -> None:
        if not self.model_path:
            raise ConfigurationError("model_path cannot be empty")
        if not self.device_indices:
            raise InvalidDeviceError("at least one device index is required")
        for index in self.device_indices:
            if isinstance(index, bool) or not isinstance(index, int) or index < 0:
                raise InvalidDeviceError(f"invalid device index: {index!r}")
        if len(set(self.device_indices)) != len(self.device_indices):
            raise InvalidDeviceError(f"duplicate device indices: {list(self.device_indices)}")
        if self.num_replicas_per_device <= 0:
            raise ConfigurationError(
                f"num_replicas_per_device must be positive, got {self.num_replicas_per_device}"
            )

    @property
    def num_replicas(self) -> int:
        return len(self.device_indices) * self.num_replicas_per_device

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_path": self.model_path,
            "device": self.device.value,
            "device_indices": list(self.device_indices),
            "compute_type": self.compute_type.value,
            "num_replicas_per_device": self.num_replicas_per_device,
        }


@dataclass(frozen=True)
class ReplicaPoolConfig:
    """Scheduling settings of a replica pool.

    Attributes:
        num_threads_per_replica: Compute threads per replica (0 keeps the
            backend default).
        max_queued_batches: Queue bound. 0 means four batches per replica,
            -1 means unbounded.
        submit_timeout: Seconds a submission may wait for queue space before
            it is rejected. None waits indefinitely, 0 rejects immediately.
    """

    num_threads_per_replica: int = 0
    max_queued_batches: int = 0
    submit_timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if self.num_threads_per_replica < 0:
            raise ConfigurationError(
                f"num_threads_per_replica must be non-negative, got {self.num_threads_per_replica}"
            )
        if self.max_queued_batches < -1:
            raise ConfigurationError(
                f"max_queued_batches must be -1, 0 or positive, got {self.max_queued_batches}"
            )
        if self.submit_timeout is not None and self.submit_timeout < 0:
            raise ConfigurationError(
                f"submit_timeout must be non-negative, got {self.submit_timeout}"
            )

    def queue_size(self, num_replicas: int) -> int:
        """Effective queue bound for ``num_replicas`` (0 means unbounded)."""
        if self.max_queued_batches == -1:
            return 0
        if self.max_queued_batches == 0:
            return 4 * num_replicas
        return self.max_queued_batches

    def to_dict(self) -> Dict[str, Any]:
        return {
            "num_threads_per_replica": self.num_threads_per_replica,
            "max_queued_batches": self.max_queued_batches,
            "submit_timeout": self.submit_timeout,
        }
