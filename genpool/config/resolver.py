"""
Resolution of loosely typed pool arguments into canonical values.

Callers may give one device index or several, and one compute type or one per
device name. Both shapes are collapsed here, once, so nothing downstream sees
the variants.
"""

from typing import List, Mapping, Sequence, Union

from genpool.config.types import ComputeType, Device, str_to_compute_type

DeviceIndexArg = Union[int, Sequence[int]]
ComputeTypeArg = Union[str, Mapping[str, str]]


def resolve_device_index(device_index: DeviceIndexArg) -> List[int]:
    """Expand a single device index into a list, or pass a list through.

    Range checks happen when the pool is built, not here.

    Examples:
        >>> resolve_device_index(3)
        [3]
        >>> resolve_device_index([0, 1])
        [0, 1]
    """
    if isinstance(device_index, bool):
        raise TypeError("device_index must be an int or a sequence of ints")
    if isinstance(device_index, int):
        return [device_index]
    return list(device_index)


def resolve_compute_type(compute_type: ComputeTypeArg, device: Device) -> ComputeType:
    """Resolve the compute type for ``device``.

    Args:
        compute_type: A compute type literal, or a mapping from device name
            to literal.
        device: The already resolved device.

    Returns:
        The parsed compute type. A mapping without an entry for ``device``
        resolves to ``ComputeType.DEFAULT``.

    Raises:
        InvalidComputeTypeError: If the selected literal is not recognized.
    """
    if isinstance(compute_type, Mapping):
        literal = compute_type.get(device.value)
        if literal is None:
            return ComputeType.DEFAULT
        return str_to_compute_type(literal)
    return str_to_compute_type(compute_type)
