"""
Conversion between host nested sequences and the engine's ragged storage.

Host code works with plain nested lists (``List[List[str]]`` for tokens or
``List[List[int]]`` for ids). Replicas work with ``NativeBatch``, which keeps
all atoms in one flat container and the sequence boundaries in a
``torch.long`` offsets tensor. The two sides never share storage: data enters
the engine by copy and leaves it by move.
"""

from typing import Iterable, List, Optional, Sequence, Union

import torch

from genpool.errors import SequenceIndexError

Atom = Union[str, int]
HostSequence = List[Atom]
HostBatch = List[HostSequence]

TOKENS = "tokens"
IDS = "ids"

_MAX_ID = torch.iinfo(torch.long).max


def _infer_kind(batch: Sequence[Sequence[Atom]]) -> str:
    for sequence in batch:
        for atom in sequence:
            return TOKENS if isinstance(atom, str) else IDS
    return TOKENS


def _check_atoms(sequence: Sequence[Atom], kind: str) -> None:
    for atom in sequence:
        if kind == TOKENS:
            if not isinstance(atom, str):
                raise TypeError(f"expected a token string, got {type(atom).__name__}")
        else:
            if isinstance(atom, bool) or not isinstance(atom, int):
                raise TypeError(f"expected an integer id, got {type(atom).__name__}")
            if atom < 0:
                raise ValueError(f"ids must be non-negative, got {atom}")
            if atom > _MAX_ID:
                raise OverflowError(f"id {atom} does not fit in 64 bits")


class NativeBatch:
    """Ragged batch of token or id sequences.

    Attributes:
        kind: Either ``"tokens"`` or ``"ids"``.
    """

    def __init__(self, kind: str = TOKENS) -> None:
        if kind not in (TOKENS, IDS):
            raise ValueError(f"kind must be '{TOKENS}' or '{IDS}', got {kind!r}")
        self.kind = kind
        self._values: Union[List[str], torch.Tensor] = (
            [] if kind == TOKENS else torch.empty(0, dtype=torch.long)
        )
        self._offsets = torch.zeros(1, dtype=torch.long)

    @classmethod
    def from_parts(
        cls,
        kind: str,
        values: Union[List[str], torch.Tensor],
        lengths: Iterable[int],
    ) -> "NativeBatch":
        """Build a batch from flat values and per-sequence lengths.

        The batch takes ownership of ``values``.
        """
        batch = cls(kind)
        lengths = torch.tensor(list(lengths), dtype=torch.long)
        batch._offsets = torch.cat(
            [torch.zeros(1, dtype=torch.long), torch.cumsum(lengths, dim=0)]
        )
        if int(batch._offsets[-1]) != len(values):
            raise ValueError(
                f"lengths sum to {int(batch._offsets[-1])} but {len(values)} values were given"
            )
        batch._values = values
        return batch

    def __len__(self) -> int:
        return self._offsets.shape[0] - 1

    def __repr__(self) -> str:
        return f"NativeBatch(kind={self.kind!r}, size={len(self)}, atoms={self.num_atoms})"

    @property
    def num_atoms(self) -> int:
        return int(self._offsets[-1])

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    def lengths(self) -> List[int]:
        """Length of every sequence, in batch order."""
        return (self._offsets[1:] - self._offsets[:-1]).tolist()

    def _bounds(self, index: int) -> tuple:
        if not isinstance(index, int) or index < 0 or index >= len(self):
            raise SequenceIndexError(
                f"index {index} out of range for batch of size {len(self)}"
            )
        return int(self._offsets[index]), int(self._offsets[index + 1])

    def at(self, index: int) -> HostSequence:
        """Return a fresh host copy of the sequence at ``index``.

        Raises:
            SequenceIndexError: If ``index`` is outside ``[0, len(self))``.
        """
        start, end = self._bounds(index)
        if self.kind == TOKENS:
            return list(self._values[start:end])
        return self._values[start:end].tolist()

    def push_back(self, sequence: Sequence[Atom]) -> None:
        """Append a copy of one host sequence."""
        _check_atoms(sequence, self.kind)
        if self.kind == TOKENS:
            self._values.extend(sequence)
        else:
            self._values = torch.cat(
                [self._values, torch.tensor(list(sequence), dtype=torch.long)]
            )
        end = self._offsets[-1:] + len(sequence)
        self._offsets = torch.cat([self._offsets, end])

    def select(self, indices: Sequence[int]) -> "NativeBatch":
        """Copy the sequences at ``indices`` into a new batch, in that order."""
        bounds = [self._bounds(i) for i in indices]
        lengths = [end - start for start, end in bounds]
        if self.kind == TOKENS:
            values: Union[List[str], torch.Tensor] = [
                atom for start, end in bounds for atom in self._values[start:end]
            ]
        elif bounds:
            values = torch.cat([self._values[start:end] for start, end in bounds])
        else:
            values = torch.empty(0, dtype=torch.long)
        return NativeBatch.from_parts(self.kind, values, lengths)

    def take(self) -> HostBatch:
        """Move every sequence out as host lists, leaving this batch empty."""
        values = self._values if self.kind == TOKENS else self._values.tolist()
        offsets = self._offsets.tolist()
        host = [values[offsets[i] : offsets[i + 1]] for i in range(len(offsets) - 1)]
        self._values = [] if self.kind == TOKENS else torch.empty(0, dtype=torch.long)
        self._offsets = torch.zeros(1, dtype=torch.long)
        return host


def to_native(batch: Sequence[Sequence[Atom]], kind: Optional[str] = None) -> NativeBatch:
    """Copy a host nested sequence into a ``NativeBatch``.

    Args:
        batch: Outer sequence of inner token or id sequences.
        kind: ``"tokens"`` or ``"ids"``; inferred from the first atom when
            omitted, defaulting to tokens when the batch holds no atoms.

    Returns:
        A new native batch preserving outer and inner order.

    Raises:
        TypeError: If atoms are not all of the batch's kind.
        ValueError: If an id is negative.
        OverflowError: If an id does not fit in 64 bits.
    """
    kind = kind or _infer_kind(batch)
    lengths = []
    flat: List[Atom] = []
    for sequence in batch:
        _check_atoms(sequence, kind)
        lengths.append(len(sequence))
        flat.extend(sequence)
    if kind == TOKENS:
        return NativeBatch.from_parts(kind, flat, lengths)
    return NativeBatch.from_parts(kind, torch.tensor(flat, dtype=torch.long), lengths)


def to_host(native: NativeBatch) -> HostBatch:
    """Move a ``NativeBatch`` back into host lists. The native batch is emptied."""
    return native.take()
