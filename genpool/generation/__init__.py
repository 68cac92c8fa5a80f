"""
Generation options, results and the host-facing asynchronous machinery.

Provides:
- GenerationOptions: Decoding options for one batch call
- GenerationStepResult, GenerationResult, ScoringResult: Host result values
- AsyncGenerationResult, AsyncScoringResult: Memoizing result handles
- CallbackBridge: Step callback plus context lent to the engine
"""

from genpool.generation.options import GenerationOptions
from genpool.generation.results import GenerationResult, GenerationStepResult, ScoringResult
from genpool.generation.async_result import (
    AsyncGenerationResult,
    AsyncResult,
    AsyncScoringResult,
)
from genpool.generation.callback import CallbackBridge, HostStepCallback

__all__ = [
    "GenerationOptions",
    "GenerationStepResult",
    "GenerationResult",
    "ScoringResult",
    "AsyncResult",
    "AsyncGenerationResult",
    "AsyncScoringResult",
    "CallbackBridge",
    "HostStepCallback",
]
