"""Abstract base class for model replicas and their native result types."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, List, Optional

from genpool.sequence.adapter import NativeBatch

if TYPE_CHECKING:
    from genpool.generation.options import GenerationOptions


@dataclass
class NativeStepResult:
    """Step data reported by a replica during decoding.

    ``batch_id`` is local to the batch the replica was given; the pool
    renumbers it before the step reaches any callback. ``log_prob`` is only
    meaningful when ``has_log_prob`` is set.
    """

    step: int
    batch_id: int
    token_id: int
    token: str
    log_prob: float
    has_log_prob: bool
    is_last: bool


@dataclass
class NativeGenerationResult:
    """Hypotheses produced for one input, in engine storage."""

    sequences: NativeBatch
    sequences_ids: NativeBatch
    scores: List[float] = field(default_factory=list)


@dataclass
class NativeScoringResult:
    """Token log-probabilities for one scored input, in engine storage."""

    tokens: NativeBatch
    log_probs: List[float]


# Returns True to continue decoding the item, False to stop it.
StepCallback = Callable[[NativeStepResult], bool]


class Replica(ABC):
    """One loaded model instance able to process a batch.

    A replica may be driven by several pool workers at once, so
    implementations must not keep per-call state on the instance.
    """

    @abstractmethod
    def generate(
        self,
        batch: NativeBatch,
        options: "GenerationOptions",
        step_callback: Optional[StepCallback] = None,
    ) -> List[NativeGenerationResult]:
        """Generate continuations for every sequence in ``batch``.

        Args:
            batch: Token sequences to continue.
            options: Decoding options.
            step_callback: Called once per decoding step and batch item; a
                False return stops that item.

        Returns:
            One result per input sequence, in batch order.
        """
        pass

    @abstractmethod
    def score(
        self, batch: NativeBatch, options: "GenerationOptions"
    ) -> List[NativeScoringResult]:
        """Compute the log-probability of every token after the first."""
        pass
