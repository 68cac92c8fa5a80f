"""
Per-step callbacks and the lending of their context to the engine.

A host callback comes with one opaque context object. For the duration of a
batch call the context is moved into a process-wide handle table and the
engine only ever holds the integer handle. Each step borrows the context
from the table for the length of one callback invocation. Once every unit of
the call has completed, the context is taken back out of the table, exactly
once; any later borrow fails instead of reaching a stale object.
"""

import itertools
import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional, Sequence

from genpool.engine.replica import NativeStepResult, StepCallback
from genpool.errors import ContextOwnershipError
from genpool.generation.results import GenerationStepResult

logger = logging.getLogger(__name__)

HostStepCallback = Callable[[GenerationStepResult, Any], bool]


class _ContextTable:
    """Thread-safe map from integer handles to lent contexts."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[int, Any] = {}
        self._next_handle = itertools.count(1)

    def release(self, context: Any) -> int:
        with self._lock:
            handle = next(self._next_handle)
            self._entries[handle] = context
            return handle

    def borrow(self, handle: int) -> Any:
        with self._lock:
            if handle not in self._entries:
                raise ContextOwnershipError(
                    f"callback context {handle} is not lent to the engine"
                )
            return self._entries[handle]

    def reclaim(self, handle: int) -> Any:
        with self._lock:
            if handle not in self._entries:
                raise ContextOwnershipError(f"callback context {handle} was already reclaimed")
            return self._entries.pop(handle)

    def __contains__(self, handle: int) -> bool:
        with self._lock:
            return handle in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


CONTEXT_TABLE = _ContextTable()


def to_step_result(native: NativeStepResult) -> GenerationStepResult:
    """Convert an engine step into the value handed to host callbacks."""
    return GenerationStepResult(
        step=native.step,
        batch_id=native.batch_id,
        token_id=native.token_id,
        token=native.token,
        log_prob=native.log_prob if native.has_log_prob else None,
        is_last=native.is_last,
    )


class CallbackBridge:
    """Binds a host step callback and its context to one batch call.

    A bridge is single-use: one context instance belongs to one call.

    Args:
        callback: ``callback(step_result, context) -> bool``; a false return
            stops decoding of that batch item.
        context: Opaque object passed back to every callback invocation.
        on_reclaim: Called with the context once it has been taken back.
    """

    def __init__(
        self,
        callback: HostStepCallback,
        context: Any = None,
        *,
        on_reclaim: Optional[Callable[[Any], None]] = None,
    ) -> None:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._callback = callback
        self._context = context
        self._on_reclaim = on_reclaim
        self._lock = threading.Lock()
        self._handle: Optional[int] = None
        self._acquired = False
        self._outstanding = 0
        self._reclaimed = threading.Event()

    @property
    def handle(self) -> Optional[int]:
        """Handle of the lent context, or None when it is not lent."""
        return self._handle

    @property
    def reclaimed(self) -> bool:
        return self._reclaimed.is_set()

    @property
    def context(self) -> Any:
        """The context, once it is back in host hands.

        Raises:
            ContextOwnershipError: While the context is lent to the engine.
        """
        with self._lock:
            if self._handle is not None:
                raise ContextOwnershipError("callback context is lent to the engine")
            return self._context

    def acquire(self) -> int:
        """Move the context into the handle table and return its handle.

        Raises:
            ContextOwnershipError: If this bridge was already used.
        """
        with self._lock:
            if self._acquired:
                raise ContextOwnershipError("a CallbackBridge can only serve one batch call")
            self._acquired = True
            self._handle = CONTEXT_TABLE.release(self._context)
            self._context = None
            return self._handle

    def step_function(self) -> StepCallback:
        """Build the engine-side step closure for the lent context."""
        handle = self._handle
        if handle is None:
            raise ContextOwnershipError("acquire() must be called before step_function()")
        callback = self._callback

        def step(native: NativeStepResult) -> bool:
            return bool(callback(to_step_result(native), CONTEXT_TABLE.borrow(handle)))

        return step

    def attach(self, futures: Sequence[Future]) -> None:
        """Reclaim the context once every future in ``futures`` is done."""
        with self._lock:
            self._outstanding += len(futures)
        if not futures:
            self.reclaim()
            return
        for future in futures:
            future.add_done_callback(self._unit_done)

    def _unit_done(self, _future: Future) -> None:
        with self._lock:
            self._outstanding -= 1
            last = self._outstanding == 0
        if last:
            self.reclaim()

    def reclaim(self) -> Any:
        """Take the context back from the handle table.

        Only the first call after ``acquire()`` has an effect; it runs
        ``on_reclaim``. Every call returns the context.
        """
        with self._lock:
            if self._handle is None:
                return self._context
            handle, self._handle = self._handle, None
            self._context = CONTEXT_TABLE.reclaim(handle)
            context = self._context
        logger.debug("Reclaimed callback context %d", handle)
        try:
            if self._on_reclaim is not None:
                self._on_reclaim(context)
        except Exception:
            logger.exception("on_reclaim hook failed for callback context %d", handle)
        finally:
            self._reclaimed.set()
        return context

    def wait_reclaimed(self, timeout: Optional[float] = None) -> bool:
        """Block until the context has been reclaimed, or ``timeout`` expires."""
        return self._reclaimed.wait(timeout)
