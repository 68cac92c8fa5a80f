"""
Tests for ReplicaPool scheduling: rebatching, queueing and shutdown.
"""

import threading
from abc import ABC

import pytest

from genpool.config.pool_config import ModelLoader, ReplicaPoolConfig
from genpool.config.types import BatchType, ComputeType, Device
from genpool.engine.replica import Replica
from genpool.engine.replica_pool import ReplicaPool, rebatch
from genpool.errors import (
    ConfigurationError,
    InvalidDeviceError,
    ModelLoadError,
    PoolClosedError,
    QueueFullError,
)
from genpool.generation.options import GenerationOptions
from genpool.sequence.adapter import to_native
from tests.utils.stub_replica import StubReplica, stub_factory, wait_until


def make_pool(replica, device_indices=(0,), replicas_per_device=1, loads=None, **config):
    loader = ModelLoader(
        "stub-model",
        Device.CPU,
        device_indices,
        ComputeType.DEFAULT,
        replicas_per_device,
        replica_factory=stub_factory(replica, loads),
    )
    return ReplicaPool(loader, ReplicaPoolConfig(**config))


class TestRebatch:
    """Test rebatch grouping."""

    @pytest.mark.unit
    def test_zero_keeps_one_batch(self):
        """Test max_batch_size=0 keeps the input as a single batch."""
        assert rebatch([3, 1, 2], 0, BatchType.EXAMPLES) == [[0, 1, 2]]

    @pytest.mark.unit
    def test_empty(self):
        """Test an empty input gives no batches."""
        assert rebatch([], 2, BatchType.EXAMPLES) == []

    @pytest.mark.unit
    def test_examples_sorted_by_length(self):
        """Test examples are grouped by length in batches of at most N."""
        assert rebatch([5, 1, 3, 2], 2, BatchType.EXAMPLES) == [[1, 3], [2, 0]]

    @pytest.mark.unit
    def test_tokens_budget(self):
        """Test token batches stay within the token budget."""
        batches = rebatch([4, 1, 2, 3], 5, BatchType.TOKENS)
        lengths = [4, 1, 2, 3]

        assert sorted(i for batch in batches for i in batch) == [0, 1, 2, 3]
        for batch in batches:
            assert sum(lengths[i] for i in batch) <= 5

    @pytest.mark.unit
    def test_oversized_example_gets_own_batch(self):
        """Test an example above the token budget is still scheduled alone."""
        assert rebatch([10, 1], 4, BatchType.TOKENS) == [[1], [0]]


class TestReplicaInterface:
    """Test the Replica abstract interface."""

    @pytest.mark.unit
    def test_is_abstract_class(self):
        """Test Replica is an abstract base class."""
        assert issubclass(Replica, ABC)
        with pytest.raises(TypeError):
            Replica()

    @pytest.mark.unit
    def test_incomplete_replica_rejected(self):
        """Test a replica must implement both generate and score."""

        class GenerateOnly(Replica):
            def generate(self, batch, options, step_callback=None):
                return []

        with pytest.raises(TypeError):
            GenerateOnly()


class TestReplicaPool:
    """Test ReplicaPool lifecycle and scheduling."""

    @pytest.mark.unit
    def test_replica_count(self):
        """Test one load per device index and shared replicas per device."""
        loads = []
        pool = make_pool(StubReplica(), device_indices=(0, 1), replicas_per_device=2, loads=loads)
        try:
            assert pool.num_replicas == 4
            assert [load[2] for load in loads] == [0, 1]
        finally:
            pool.close()

    @pytest.mark.unit
    def test_num_threads_forwarded(self):
        """Test the per-replica thread count reaches the factory."""
        loads = []
        pool = make_pool(StubReplica(), loads=loads, num_threads_per_replica=3)
        pool.close()
        assert loads[0][4] == 3

    @pytest.mark.unit
    def test_load_failure_wrapped(self):
        """Test factory exceptions surface as ModelLoadError."""

        def failing_factory(*args):
            raise OSError("no such model")

        loader = ModelLoader("missing", replica_factory=failing_factory)
        with pytest.raises(ModelLoadError) as excinfo:
            ReplicaPool(loader, ReplicaPoolConfig())
        assert isinstance(excinfo.value.__cause__, OSError)

    @pytest.mark.unit
    def test_genpool_errors_pass_through(self):
        """Test configuration errors from the factory are not rewrapped."""

        def failing_factory(*args):
            raise InvalidDeviceError("cuda:7 is not visible")

        loader = ModelLoader("model", replica_factory=failing_factory)
        with pytest.raises(InvalidDeviceError):
            ReplicaPool(loader, ReplicaPoolConfig())

    @pytest.mark.unit
    def test_missing_factory(self):
        """Test a loader without a factory is rejected."""
        with pytest.raises(ConfigurationError):
            ReplicaPool(ModelLoader("model"), ReplicaPoolConfig())

    @pytest.mark.unit
    def test_one_future_per_item(self):
        """Test every input item gets its own future and result."""
        pool = make_pool(StubReplica(num_steps=2))
        try:
            futures = pool.generate_batch_async(
                to_native([["a"], ["b"], ["c"]]), GenerationOptions(), max_batch_size=2
            )
            assert len(futures) == 3
            results = [f.result(timeout=5) for f in futures]
            assert [r.sequences.at(0)[0] for r in results] == ["a", "b", "c"]
        finally:
            pool.close()

    @pytest.mark.unit
    def test_futures_cannot_be_cancelled(self):
        """Test submitted futures are already running."""
        gate = threading.Event()
        pool = make_pool(StubReplica(gate=gate))
        try:
            (future,) = pool.generate_batch_async(to_native([["a"]]), GenerationOptions())
            assert not future.cancel()
        finally:
            gate.set()
            pool.close()

    @pytest.mark.unit
    def test_counters(self):
        """Test queued and active counts while a replica is busy."""
        gate = threading.Event()
        replica = StubReplica(gate=gate)
        pool = make_pool(replica, max_queued_batches=4)
        try:
            first = pool.generate_batch_async(to_native([["a"]]), GenerationOptions())
            assert wait_until(lambda: pool.num_active_batches == 1)

            second = pool.generate_batch_async(to_native([["b"]]), GenerationOptions())
            assert pool.num_queued_batches == 1

            gate.set()
            for future in first + second:
                future.result(timeout=5)
            assert wait_until(lambda: pool.num_active_batches == 0)
            assert pool.num_queued_batches == 0
        finally:
            gate.set()
            pool.close()

    @pytest.mark.unit
    def test_rejects_when_queue_full(self):
        """Test submit_timeout=0 rejects jobs that do not fit in the queue."""
        gate = threading.Event()
        pool = make_pool(StubReplica(gate=gate), max_queued_batches=1, submit_timeout=0)
        try:
            busy = pool.generate_batch_async(to_native([["x"]]), GenerationOptions())
            assert wait_until(lambda: pool.num_active_batches == 1)

            futures = pool.generate_batch_async(
                to_native([["a"], ["b"], ["c"]]), GenerationOptions(), max_batch_size=1
            )
            for rejected in futures[1:]:
                assert rejected.done()
                with pytest.raises(QueueFullError):
                    rejected.result()

            gate.set()
            assert busy[0].result(timeout=5) is not None
            assert futures[0].result(timeout=5) is not None
        finally:
            gate.set()
            pool.close()

    @pytest.mark.unit
    def test_job_failure_fails_its_futures_only(self):
        """Test a failing job does not affect the other jobs of the batch."""
        pool = make_pool(StubReplica(fail_on="boom"))
        try:
            futures = pool.generate_batch_async(
                to_native([["ok"], ["boom"]]), GenerationOptions(), max_batch_size=1
            )
            assert futures[0].result(timeout=5) is not None
            with pytest.raises(RuntimeError, match="boom"):
                futures[1].result(timeout=5)
        finally:
            pool.close()

    @pytest.mark.unit
    def test_step_batch_ids_are_global(self):
        """Test step results carry the index in the submitted batch."""
        pool = make_pool(StubReplica(num_steps=1))
        seen = []
        lock = threading.Lock()

        def on_step(step):
            with lock:
                seen.append(step.batch_id)
            return True

        try:
            futures = pool.generate_batch_async(
                to_native([["a", "a", "a"], ["b"], ["c", "c"]]),
                GenerationOptions(),
                max_batch_size=1,
                step_callback=on_step,
            )
            for future in futures:
                future.result(timeout=5)
            assert sorted(seen) == [0, 1, 2]
        finally:
            pool.close()

    @pytest.mark.unit
    def test_score_batch(self):
        """Test scoring returns one result per input item."""
        pool = make_pool(StubReplica())
        try:
            futures = pool.score_batch_async(to_native([["a", "b"], ["c"]]), GenerationOptions())
            first, second = [f.result(timeout=5) for f in futures]
            assert first.log_probs == [-1.0]
            assert second.log_probs == []
        finally:
            pool.close()

    @pytest.mark.unit
    def test_close_drains_queue(self):
        """Test close() finishes queued work before stopping."""
        replica = StubReplica(delays={"a": 0.05})
        pool = make_pool(replica)
        futures = pool.generate_batch_async(
            to_native([["a"], ["a"], ["a"]]), GenerationOptions(), max_batch_size=1
        )
        pool.close()

        assert all(f.done() for f in futures)
        assert replica.num_calls == 3

    @pytest.mark.unit
    def test_submit_after_close(self):
        """Test a closed pool rejects new work and close() is idempotent."""
        pool = make_pool(StubReplica())
        pool.close()
        pool.close()

        assert pool.closed
        with pytest.raises(PoolClosedError):
            pool.generate_batch_async(to_native([["a"]]), GenerationOptions())
