"""
Handles for results that are still being computed by the pool.
"""

import threading
from concurrent.futures import Future
from typing import Callable, Generic, Optional, TypeVar

from genpool.engine.replica import NativeGenerationResult, NativeScoringResult
from genpool.generation.results import GenerationResult, ScoringResult
from genpool.sequence.adapter import to_host

T = TypeVar("T")


def to_generation_result(native: NativeGenerationResult) -> GenerationResult:
    """Move a native generation result into host types."""
    return GenerationResult(
        sequences=to_host(native.sequences),
        sequences_ids=to_host(native.sequences_ids),
        scores=list(native.scores),
    )


def to_scoring_result(native: NativeScoringResult) -> ScoringResult:
    """Move a native scoring result into host types."""
    tokens = to_host(native.tokens)
    return ScoringResult(tokens=tokens[0] if tokens else [], log_probs=list(native.log_probs))


class AsyncResult(Generic[T]):
    """Result of one submitted item, fetched on demand.

    The first ``result()`` call waits for the pool, converts the engine value
    and remembers the outcome. Later calls return the remembered value, or
    raise the remembered error again, without touching the pool future.
    """

    def __init__(self, future: Future, convert: Callable[[object], T]) -> None:
        self._future = future
        self._convert = convert
        self._lock = threading.Lock()
        self._done = False
        self._value: Optional[T] = None
        self._exception: Optional[BaseException] = None

    def done(self) -> bool:
        """Whether the result is available. Never waits.

        With a step callback, the context may still be lent to the engine
        for a short while after this returns True. Use
        ``CallbackBridge.wait_reclaimed()`` before reading the context.
        """
        return self._done or self._future.done()

    def result(self) -> T:
        """Wait for and return the result.

        Raises:
            Exception: The failure of the underlying computation, every time.
        """
        if not self._done:
            with self._lock:
                if not self._done:
                    self._resolve()
        if self._exception is not None:
            raise self._exception
        return self._value

    def _resolve(self) -> None:
        try:
            self._value = self._convert(self._future.result())
        except Exception as e:
            self._exception = e
        self._done = True

    def __repr__(self) -> str:
        if not self.done():
            state = "pending"
        elif self._done and self._exception is not None:
            state = "failed"
        else:
            state = "ready"
        return f"<{type(self).__name__} {state}>"


class AsyncGenerationResult(AsyncResult[GenerationResult]):
    """Asynchronous handle to one GenerationResult."""

    def __init__(self, future: Future) -> None:
        super().__init__(future, to_generation_result)


class AsyncScoringResult(AsyncResult[ScoringResult]):
    """Asynchronous handle to one ScoringResult."""

    def __init__(self, future: Future) -> None:
        super().__init__(future, to_scoring_result)
