"""Test utilities for genpool."""

from tests.utils.stub_replica import (
    GENERATED_ID_BASE,
    StubReplica,
    stub_factory,
    stub_token_id,
    wait_until,
)

__all__ = [
    "GENERATED_ID_BASE",
    "StubReplica",
    "stub_factory",
    "stub_token_id",
    "wait_until",
]
