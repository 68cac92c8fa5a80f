"""
Batch generation front-end over a replica pool.
"""

import dataclasses
import logging
import queue
import threading
from concurrent.futures import Future, wait
from typing import Any, Callable, Iterator, List, Optional, Sequence, Union

from genpool.config.types import str_to_batch_type
from genpool.core.pool_handle import ReplicaPoolHandle
from genpool.errors import InvalidOptionsError
from genpool.generation.async_result import (
    AsyncGenerationResult,
    AsyncScoringResult,
    to_generation_result,
    to_scoring_result,
)
from genpool.generation.callback import CallbackBridge, HostStepCallback
from genpool.generation.options import GenerationOptions
from genpool.generation.results import GenerationResult, GenerationStepResult, ScoringResult
from genpool.sequence.adapter import Atom, to_native

logger = logging.getLogger(__name__)

_END = object()


def _make_options(options: Optional[GenerationOptions], overrides: dict) -> GenerationOptions:
    if options is None:
        return GenerationOptions(**overrides)
    if overrides:
        return dataclasses.replace(options, **overrides)
    return options


def _make_bridge(
    callback: Union[None, HostStepCallback, CallbackBridge],
    callback_context: Any,
    options: GenerationOptions,
) -> Optional[CallbackBridge]:
    if callback is None:
        if callback_context is not None:
            raise InvalidOptionsError("callback_context was given without a callback")
        return None
    if options.beam_size != 1 or options.num_hypotheses != 1 or options.return_alternatives:
        raise InvalidOptionsError(
            "step callbacks require beam_size=1, num_hypotheses=1 and no alternatives"
        )
    if isinstance(callback, CallbackBridge):
        if callback_context is not None:
            raise InvalidOptionsError("pass the context to the CallbackBridge, not generate_batch")
        return callback
    return CallbackBridge(callback, callback_context)


def _collect(futures: List[Future], convert: Callable[[Any], Any]) -> list:
    # The first failure in submission order aborts the collection.
    return [convert(future.result()) for future in futures]


class Generator(ReplicaPoolHandle):
    """Generates continuations of token sequences on a replica pool.

    Example:
        >>> with Generator("path/to/model", "cpu", inter_threads=2) as generator:
        ...     results = generator.generate_batch([["Hello", ","]], max_length=16)
    """

    def generate_batch(
        self,
        start_tokens: Sequence[Sequence[Atom]],
        max_batch_size: int = 0,
        batch_type: str = "examples",
        *,
        asynchronous: bool = False,
        options: Optional[GenerationOptions] = None,
        callback: Union[None, HostStepCallback, CallbackBridge] = None,
        callback_context: Any = None,
        **option_overrides: Any,
    ) -> Union[List[GenerationResult], List[AsyncGenerationResult]]:
        """Generate from a batch of prompts.

        Args:
            start_tokens: Prompt tokens (or ids) for each batch item.
            max_batch_size: Maximum size of the batches the pool runs
                (0 runs the whole input as one batch).
            batch_type: Unit of ``max_batch_size``: "examples" or "tokens".
            asynchronous: Return result handles instead of waiting.
            options: Decoding options; keyword overrides are applied on top.
            callback: ``callback(step_result, context) -> bool`` called for
                every decoding step, or a ready CallbackBridge. Returning
                False stops that item.
            callback_context: Object handed back to every callback call.
            **option_overrides: GenerationOptions fields.

        Returns:
            One GenerationResult per input, in input order, or one
            AsyncGenerationResult per input when ``asynchronous`` is set.

        Raises:
            InvalidBatchTypeError: If ``batch_type`` is not recognized.
            InvalidOptionsError: If the options are invalid.
            PoolClosedError: If the generator has been closed.
            Exception: In synchronous mode, the first item failure in input
                order; results of the other items are discarded.
        """
        if not start_tokens:
            return []

        resolved_batch_type = str_to_batch_type(batch_type)
        options = _make_options(options, option_overrides)
        bridge = _make_bridge(callback, callback_context, options)
        self._check_open()
        native = to_native(start_tokens)
        logger.debug(
            "Generating %d prompt(s), asynchronous=%s, callback=%s",
            len(native),
            asynchronous,
            bridge is not None,
        )

        if bridge is None:
            futures = self._pool.generate_batch_async(
                native, options, max_batch_size, resolved_batch_type
            )
            if asynchronous:
                return [AsyncGenerationResult(future) for future in futures]
            return _collect(futures, to_generation_result)

        bridge.acquire()
        try:
            futures = self._pool.generate_batch_async(
                native,
                options,
                max_batch_size,
                resolved_batch_type,
                bridge.step_function(),
            )
        except BaseException:
            bridge.reclaim()
            raise
        bridge.attach(futures)

        if asynchronous:
            return [AsyncGenerationResult(future) for future in futures]

        # Every unit must be finished before returning so the engine can no
        # longer reach the context, even when an earlier unit failed.
        wait(futures)
        bridge.wait_reclaimed()
        return _collect(futures, to_generation_result)

    def generate_tokens(
        self,
        prompt: Sequence[Atom],
        *,
        options: Optional[GenerationOptions] = None,
        **option_overrides: Any,
    ) -> Iterator[GenerationStepResult]:
        """Yield the steps of one generation as they are produced.

        Closing the iterator early stops the generation at its next step.

        Raises:
            Exception: The generation failure, once all steps were yielded.
        """
        steps: "queue.Queue" = queue.Queue()
        stop = threading.Event()

        def on_step(step: GenerationStepResult, _context: Any) -> bool:
            steps.put(step)
            return not stop.is_set()

        bridge = CallbackBridge(on_step, on_reclaim=lambda _context: steps.put(_END))
        (async_result,) = self.generate_batch(
            [prompt],
            asynchronous=True,
            options=options,
            callback=bridge,
            **option_overrides,
        )
        try:
            while True:
                step = steps.get()
                if step is _END:
                    break
                yield step
            async_result.result()
        finally:
            stop.set()
            bridge.wait_reclaimed()

    def score_batch(
        self,
        tokens: Sequence[Sequence[Atom]],
        max_batch_size: int = 0,
        batch_type: str = "examples",
        *,
        asynchronous: bool = False,
        options: Optional[GenerationOptions] = None,
    ) -> Union[List[ScoringResult], List[AsyncScoringResult]]:
        """Score a batch of token sequences.

        Every token after the first receives its log-probability given the
        tokens before it. Same ordering and failure contract as
        ``generate_batch``.
        """
        if not tokens:
            return []

        resolved_batch_type = str_to_batch_type(batch_type)
        self._check_open()
        futures = self._pool.score_batch_async(
            to_native(tokens),
            options or GenerationOptions(),
            max_batch_size,
            resolved_batch_type,
        )
        if asynchronous:
            return [AsyncScoringResult(future) for future in futures]
        return _collect(futures, to_scoring_result)
