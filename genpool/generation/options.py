"""
Generation options shared by every item of one batch call.
"""

from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from genpool.errors import InvalidOptionsError

EndToken = Union[str, Sequence[str], Sequence[int]]


def _freeze(sequences: Optional[Sequence[Sequence[str]]]) -> Optional[Tuple[Tuple[str, ...], ...]]:
    if sequences is None:
        return None
    return tuple(tuple(sequence) for sequence in sequences)


def _freeze_end_token(end_token: Optional[EndToken]) -> Optional[Union[str, Tuple]]:
    if end_token is None or isinstance(end_token, str):
        return end_token
    end_token = tuple(end_token)
    if not all(isinstance(t, str) for t in end_token) and not all(
        isinstance(t, int) and not isinstance(t, bool) for t in end_token
    ):
        raise InvalidOptionsError("end_token must hold only strings or only integer ids")
    return end_token


@dataclass(frozen=True)
class GenerationOptions:
    """Decoding options for a batch.

    Lengths count generated tokens only; the prompt is not included.

    Attributes:
        beam_size: Beam width (1 for greedy or sampling).
        patience: Beam search patience factor.
        num_hypotheses: Hypotheses returned per input.
        length_penalty: Exponential length penalty applied to beam scores.
        repetition_penalty: Penalty for tokens already generated (1 disables).
        no_repeat_ngram_size: Forbid repeating n-grams of this size (0 disables).
        disable_unk: Never generate the unknown token.
        suppress_sequences: Token sequences that must never be generated.
        end_token: Token(s) or id(s) that end generation; defaults to the
            model's end-of-sequence token.
        return_end_token: Keep the end token in the result.
        max_length: Maximum number of generated tokens.
        min_length: Minimum number of generated tokens.
        static_prompt: Prefix prepended to every input.
        cache_static_prompt: Reuse the converted static prompt across calls.
        include_prompt_in_result: Prefix each result with its input tokens.
        return_scores: Return cumulative log-probability scores.
        return_alternatives: Return alternatives at the first generated position.
        min_alternative_expansion_prob: Minimum probability to expand an alternative.
        sampling_topk: Sample from the k most likely tokens (1 is greedy).
        sampling_topp: Nucleus sampling threshold.
        sampling_temperature: Sampling temperature.
    """

    beam_size: int = 1
    patience: float = 1.0
    num_hypotheses: int = 1
    length_penalty: float = 1.0
    repetition_penalty: float = 1.0
    no_repeat_ngram_size: int = 0
    disable_unk: bool = False
    suppress_sequences: Optional[Sequence[Sequence[str]]] = None
    end_token: Optional[EndToken] = None
    return_end_token: bool = False
    max_length: int = 512
    min_length: int = 0
    static_prompt: Optional[Sequence[str]] = None
    cache_static_prompt: bool = True
    include_prompt_in_result: bool = True
    return_scores: bool = False
    return_alternatives: bool = False
    min_alternative_expansion_prob: float = 0.0
    sampling_topk: int = 1
    sampling_topp: float = 1.0
    sampling_temperature: float = 1.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "suppress_sequences", _freeze(self.suppress_sequences))
        object.__setattr__(self, "end_token", _freeze_end_token(self.end_token))
        if self.static_prompt is not None:
            object.__setattr__(self, "static_prompt", tuple(self.static_prompt))
        self._validate()

    def _validate(self) -> None:
        if self.beam_size < 1:
            raise InvalidOptionsError(f"beam_size must be at least 1, got {self.beam_size}")
        if self.num_hypotheses < 1:
            raise InvalidOptionsError(
                f"num_hypotheses must be at least 1, got {self.num_hypotheses}"
            )
        if self.num_hypotheses > self.beam_size and not self.is_sampling and not self.return_alternatives:
            raise InvalidOptionsError(
                f"num_hypotheses ({self.num_hypotheses}) cannot exceed beam_size ({self.beam_size})"
            )
        if self.patience <= 0:
            raise InvalidOptionsError(f"patience must be positive, got {self.patience}")
        if self.repetition_penalty <= 0:
            raise InvalidOptionsError(
                f"repetition_penalty must be positive, got {self.repetition_penalty}"
            )
        if self.no_repeat_ngram_size < 0:
            raise InvalidOptionsError(
                f"no_repeat_ngram_size must be non-negative, got {self.no_repeat_ngram_size}"
            )
        if self.max_length < 1:
            raise InvalidOptionsError(f"max_length must be at least 1, got {self.max_length}")
        if not 0 <= self.min_length <= self.max_length:
            raise InvalidOptionsError(
                f"min_length must be in [0, max_length], got {self.min_length}"
            )
        if self.sampling_topk < 0:
            raise InvalidOptionsError(
                f"sampling_topk must be non-negative, got {self.sampling_topk}"
            )
        if not 0.0 < self.sampling_topp <= 1.0:
            raise InvalidOptionsError(
                f"sampling_topp must be in (0, 1], got {self.sampling_topp}"
            )
        if self.sampling_temperature <= 0:
            raise InvalidOptionsError(
                f"sampling_temperature must be positive, got {self.sampling_temperature}"
            )
        if not 0.0 <= self.min_alternative_expansion_prob <= 1.0:
            raise InvalidOptionsError(
                "min_alternative_expansion_prob must be in [0, 1], "
                f"got {self.min_alternative_expansion_prob}"
            )

    @property
    def is_sampling(self) -> bool:
        """Whether decoding samples instead of taking the argmax."""
        return self.sampling_topk != 1

    @property
    def end_tokens(self) -> List[Union[str, int]]:
        """End token(s) as a list; empty means the model default."""
        if self.end_token is None:
            return []
        if isinstance(self.end_token, str):
            return [self.end_token]
        return list(self.end_token)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}
