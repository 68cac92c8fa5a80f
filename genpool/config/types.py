"""
Enumerations for devices, compute types and batching policies.

Each enum parses from the string form used by callers and renders back to it.
"""

from enum import Enum

from genpool.errors import (
    InvalidBatchTypeError,
    InvalidComputeTypeError,
    InvalidDeviceError,
)


class Device(Enum):
    """Device kind replicas are loaded on."""

    CPU = "cpu"
    CUDA = "cuda"
    AUTO = "auto"

    def __str__(self) -> str:
        return self.value


class ComputeType(Enum):
    """Numeric precision used for inference."""

    DEFAULT = "default"
    AUTO = "auto"
    FLOAT32 = "float32"
    INT8 = "int8"
    INT8_FLOAT32 = "int8_float32"
    INT8_FLOAT16 = "int8_float16"
    INT8_BFLOAT16 = "int8_bfloat16"
    INT16 = "int16"
    FLOAT16 = "float16"
    BFLOAT16 = "bfloat16"

    def __str__(self) -> str:
        return self.value

    @property
    def is_int8(self) -> bool:
        return self.value.startswith("int8")


class BatchType(Enum):
    """How the pool measures the size of a batch."""

    EXAMPLES = "examples"
    TOKENS = "tokens"

    def __str__(self) -> str:
        return self.value


_COMPUTE_TYPE_ALIASES = {"float": ComputeType.FLOAT32}


def str_to_device(device: str) -> Device:
    """Parse a device name.

    Raises:
        InvalidDeviceError: If ``device`` is not a known device name.
    """
    try:
        return Device(str(device).strip())
    except ValueError:
        raise InvalidDeviceError(f"invalid device: {device!r}") from None


def str_to_compute_type(compute_type: str) -> ComputeType:
    """Parse a compute type literal.

    Raises:
        InvalidComputeTypeError: If ``compute_type`` is not recognized.
    """
    literal = str(compute_type).strip()
    if literal in _COMPUTE_TYPE_ALIASES:
        return _COMPUTE_TYPE_ALIASES[literal]
    try:
        return ComputeType(literal)
    except ValueError:
        raise InvalidComputeTypeError(f"invalid compute type: {compute_type!r}") from None


def str_to_batch_type(batch_type: str) -> BatchType:
    """Parse a batch type literal.

    Raises:
        InvalidBatchTypeError: If ``batch_type`` is not ``examples`` or ``tokens``.
    """
    try:
        return BatchType(str(batch_type).strip())
    except ValueError:
        raise InvalidBatchTypeError(f"invalid batch type: {batch_type!r}") from None
