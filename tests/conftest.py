"""
Pytest configuration and shared fixtures for genpool tests.

This module provides reusable fixtures for testing, including:
- CUDA disabled for every test
- Stub replicas and generators built on them
- A tiny transformers model saved to a temporary directory
"""

import os
from typing import Callable, List, Optional

import pytest
import torch

from genpool.core.generator import Generator
from tests.utils.stub_replica import StubReplica, stub_factory


# Force CPU-only testing by disabling CUDA
os.environ["CUDA_VISIBLE_DEVICES"] = ""

TINY_VOCAB = [
    "<unk>",
    "<s>",
    "</s>",
    "<pad>",
    "hello",
    "world",
    "the",
    "cat",
    "sat",
    "on",
    "mat",
    "a",
    "dog",
    "ran",
    "home",
    "today",
]


@pytest.fixture
def stub_replica() -> StubReplica:
    """A fresh stub replica generating five tokens per prompt."""
    return StubReplica()


@pytest.fixture
def make_generator(stub_replica: StubReplica) -> Callable[..., Generator]:
    """
    Build generators backed by ``stub_replica``; all are closed on teardown.

    Example:
        def test_generate(make_generator):
            generator = make_generator(inter_threads=2)
            results = generator.generate_batch([["a"]])
    """
    generators: List[Generator] = []

    def make(replica: Optional[StubReplica] = None, **kwargs) -> Generator:
        factory = stub_factory(replica or stub_replica)
        generator = Generator("stub-model", "cpu", replica_factory=factory, **kwargs)
        generators.append(generator)
        return generator

    yield make

    for generator in generators:
        generator.close()


@pytest.fixture(scope="session")
def tiny_model_path(tmp_path_factory) -> str:
    """
    Save a randomly initialized two-layer GPT-2 and a word-level tokenizer.

    This fixture:
    - Builds the tokenizer from a fixed vocabulary (no download)
    - Seeds torch so the model weights are reproducible
    - Returns the directory path, loadable with ``from_pretrained``

    Returns:
        str: Path of the saved model directory
    """
    from tokenizers import Tokenizer, models, pre_tokenizers
    from transformers import GPT2Config, GPT2LMHeadModel, PreTrainedTokenizerFast

    path = tmp_path_factory.mktemp("tiny-gpt2")
    vocab = {token: i for i, token in enumerate(TINY_VOCAB)}

    backend = Tokenizer(models.WordLevel(vocab=vocab, unk_token="<unk>"))
    backend.pre_tokenizer = pre_tokenizers.Whitespace()
    tokenizer = PreTrainedTokenizerFast(
        tokenizer_object=backend,
        unk_token="<unk>",
        bos_token="<s>",
        eos_token="</s>",
        pad_token="<pad>",
    )
    tokenizer.save_pretrained(path)

    torch.manual_seed(0)
    config = GPT2Config(
        vocab_size=len(vocab),
        n_positions=64,
        n_embd=32,
        n_layer=2,
        n_head=2,
        bos_token_id=vocab["<s>"],
        eos_token_id=vocab["</s>"],
        pad_token_id=vocab["<pad>"],
    )
    GPT2LMHeadModel(config).save_pretrained(path)
    return str(path)
