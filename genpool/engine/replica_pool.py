"""
Pool of replica worker threads fed from one bounded queue.

Submissions are split into jobs, each job is queued once and picked up by the
first free worker. Every input item gets its own future so results can be
collected in submission order whatever order the jobs finish in.
"""

import logging
import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass, replace
from typing import List, Optional

from genpool.config.pool_config import ModelLoader, ReplicaPoolConfig
from genpool.config.types import BatchType
from genpool.engine.replica import NativeStepResult, Replica, StepCallback
from genpool.errors import (
    ConfigurationError,
    GenPoolError,
    ModelLoadError,
    PoolClosedError,
    QueueFullError,
)
from genpool.generation.options import GenerationOptions
from genpool.sequence.adapter import NativeBatch

logger = logging.getLogger(__name__)

_GENERATE = "generate"
_SCORE = "score"
_STOP = object()


@dataclass
class _Job:
    """One sub-batch waiting for, or running on, a replica."""

    kind: str
    batch: NativeBatch
    indices: List[int]
    options: GenerationOptions
    futures: List[Future]
    step_callback: Optional[StepCallback] = None


def rebatch(lengths: List[int], max_batch_size: int, batch_type: BatchType) -> List[List[int]]:
    """Group example indices into batches of at most ``max_batch_size``.

    Examples are sorted by length first so each batch holds similar lengths.
    A batch is measured in examples or in tokens depending on ``batch_type``;
    an example larger than the limit on its own still gets a batch.

    Args:
        lengths: Length of every example, in submission order.
        max_batch_size: Size limit per batch; 0 keeps everything in one batch.
        batch_type: Unit of ``max_batch_size``.

    Returns:
        Lists of example indices, one list per batch.
    """
    if not lengths:
        return []
    if max_batch_size <= 0:
        return [list(range(len(lengths)))]

    order = sorted(range(len(lengths)), key=lambda i: lengths[i])
    batches: List[List[int]] = []
    current: List[int] = []
    current_size = 0
    for index in order:
        increment = lengths[index] if batch_type == BatchType.TOKENS else 1
        if current and current_size + increment > max_batch_size:
            batches.append(current)
            current, current_size = [], 0
        current.append(index)
        current_size += increment
    if current:
        batches.append(current)
    return batches


class ReplicaPool:
    """Replicas plus the worker threads and queue that drive them.

    Attributes:
        model_loader: What was loaded and where.
        pool_config: Queue and threading settings.
    """

    def __init__(self, model_loader: ModelLoader, pool_config: ReplicaPoolConfig) -> None:
        """Load every replica and start one worker thread per replica.

        Raises:
            ModelLoadError: If a replica cannot be built.
        """
        if model_loader.replica_factory is None:
            raise ConfigurationError("model_loader has no replica_factory")

        self.model_loader = model_loader
        self.pool_config = pool_config
        self._replicas = self._load_replicas()

        self._queue: "queue.Queue" = queue.Queue(
            maxsize=pool_config.queue_size(len(self._replicas))
        )
        self._lock = threading.Lock()
        self._submit_lock = threading.Lock()
        self._num_active = 0
        self._closed = False

        self._workers = [
            threading.Thread(
                target=self._worker_loop,
                args=(replica,),
                name=f"genpool-replica-{i}",
                daemon=True,
            )
            for i, replica in enumerate(self._replicas)
        ]
        for worker in self._workers:
            worker.start()

        logger.info(
            "Started %d replica worker(s) for %s on %s:%s (compute_type=%s, queue=%d)",
            len(self._workers),
            model_loader.model_path,
            model_loader.device.value,
            list(model_loader.device_indices),
            model_loader.compute_type.value,
            self._queue.maxsize,
        )

    def _load_replicas(self) -> List[Replica]:
        loader = self.model_loader
        replicas: List[Replica] = []
        for device_index in loader.device_indices:
            try:
                replica = loader.replica_factory(
                    loader.model_path,
                    loader.device,
                    device_index,
                    loader.compute_type,
                    self.pool_config.num_threads_per_replica,
                )
            except GenPoolError:
                raise
            except Exception as e:
                raise ModelLoadError(
                    f"Failed to load {loader.model_path} on "
                    f"{loader.device.value}:{device_index}: {e}"
                ) from e
            # Replicas on the same device share one set of weights.
            replicas.extend([replica] * loader.num_replicas_per_device)
        return replicas

    @property
    def num_replicas(self) -> int:
        return len(self._replicas)

    @property
    def num_queued_batches(self) -> int:
        return self._queue.qsize()

    @property
    def num_active_batches(self) -> int:
        with self._lock:
            return self._num_active

    @property
    def closed(self) -> bool:
        return self._closed

    def generate_batch_async(
        self,
        batch: NativeBatch,
        options: GenerationOptions,
        max_batch_size: int = 0,
        batch_type: BatchType = BatchType.EXAMPLES,
        step_callback: Optional[StepCallback] = None,
    ) -> List[Future]:
        """Queue a generation batch and return one future per input item.

        Step results passed to ``step_callback`` carry the index of the item
        in ``batch``. Futures of jobs that could not be queued fail with
        ``QueueFullError``.

        Raises:
            PoolClosedError: If the pool has been closed.
        """
        return self._submit(_GENERATE, batch, options, max_batch_size, batch_type, step_callback)

    def score_batch_async(
        self,
        batch: NativeBatch,
        options: GenerationOptions,
        max_batch_size: int = 0,
        batch_type: BatchType = BatchType.EXAMPLES,
    ) -> List[Future]:
        """Queue a scoring batch and return one future per input item."""
        return self._submit(_SCORE, batch, options, max_batch_size, batch_type, None)

    def _submit(
        self,
        kind: str,
        batch: NativeBatch,
        options: GenerationOptions,
        max_batch_size: int,
        batch_type: BatchType,
        step_callback: Optional[StepCallback],
    ) -> List[Future]:
        futures: List[Future] = [Future() for _ in range(len(batch))]
        for future in futures:
            future.set_running_or_notify_cancel()

        groups = rebatch(batch.lengths(), max_batch_size, batch_type)
        logger.debug("Split %d example(s) into %d job(s)", len(batch), len(groups))

        with self._submit_lock:
            if self._closed:
                raise PoolClosedError("cannot submit work to a closed pool")
            for indices in groups:
                job = _Job(
                    kind=kind,
                    batch=batch.select(indices),
                    indices=indices,
                    options=options,
                    futures=[futures[i] for i in indices],
                    step_callback=step_callback,
                )
                self._enqueue(job)
        return futures

    def _enqueue(self, job: _Job) -> None:
        timeout = self.pool_config.submit_timeout
        try:
            if timeout == 0:
                self._queue.put(job, block=False)
            else:
                self._queue.put(job, timeout=timeout)
        except queue.Full:
            logger.warning(
                "Rejected a job of %d example(s): %d batch(es) already queued",
                len(job.indices),
                self._queue.qsize(),
            )
            error = QueueFullError(
                f"queue is full ({self._queue.maxsize} batches); job rejected"
            )
            for future in job.futures:
                future.set_exception(error)

    def _worker_loop(self, replica: Replica) -> None:
        while True:
            job = self._queue.get()
            if job is _STOP:
                return
            self._run_job(replica, job)

    def _run_job(self, replica: Replica, job: _Job) -> None:
        with self._lock:
            self._num_active += 1
        try:
            outputs = self._execute(replica, job)
            if len(outputs) != len(job.futures):
                raise RuntimeError(
                    f"replica returned {len(outputs)} result(s) for {len(job.futures)} input(s)"
                )
        except Exception as e:
            logger.exception("Job of %d example(s) failed", len(job.indices))
            with self._lock:
                self._num_active -= 1
            for future in job.futures:
                future.set_exception(e)
            return

        with self._lock:
            self._num_active -= 1
        for future, output in zip(job.futures, outputs):
            future.set_result(output)

    def _execute(self, replica: Replica, job: _Job) -> list:
        if job.kind == _SCORE:
            return replica.score(job.batch, job.options)

        step_callback = None
        if job.step_callback is not None:
            job_callback = job.step_callback
            indices = job.indices

            def step_callback(step: NativeStepResult) -> bool:
                return job_callback(replace(step, batch_id=indices[step.batch_id]))

        return replica.generate(job.batch, job.options, step_callback)

    def close(self, wait: bool = True) -> None:
        """Stop accepting work and let workers finish queued jobs.

        Args:
            wait: Join the workers before returning.
        """
        with self._submit_lock:
            if self._closed:
                return
            self._closed = True
        for _ in self._workers:
            self._queue.put(_STOP)
        if wait:
            for worker in self._workers:
                if worker is not threading.current_thread():
                    worker.join()
        logger.info("Closed pool of %d replica worker(s)", len(self._workers))
