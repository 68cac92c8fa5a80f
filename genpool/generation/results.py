"""
Host-side result values.
"""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass(frozen=True)
class GenerationStepResult:
    """One decoding step of one batch item, as seen by a step callback.

    Attributes:
        step: Index of the generated token (0 for the first one).
        batch_id: Index of the item in the submitted batch.
        token_id: Generated token id.
        token: Generated token string.
        log_prob: Log-probability of the token, or None when unavailable.
        is_last: Whether this is the final step for this item.
    """

    step: int
    batch_id: int
    token_id: int
    token: str
    log_prob: Optional[float]
    is_last: bool


@dataclass
class GenerationResult:
    """Generation output for one input sequence.

    Attributes:
        sequences: One token sequence per hypothesis.
        sequences_ids: The same hypotheses as ids.
        scores: One score per hypothesis when scores were requested.
    """

    sequences: List[List[str]]
    sequences_ids: List[List[int]]
    scores: List[float] = field(default_factory=list)


@dataclass
class ScoringResult:
    """Per-token log-probabilities of one scored sequence."""

    tokens: List[str]
    log_probs: List[float]

    @property
    def score(self) -> float:
        """Mean token log-probability (0.0 for an empty sequence)."""
        if not self.log_probs:
            return 0.0
        return sum(self.log_probs) / len(self.log_probs)
