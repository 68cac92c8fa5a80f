"""
Example demonstrating step callbacks, token streaming and asynchronous results.

The first part streams one generation token by token and stops it early.
The second part submits a batch asynchronously with a per-step callback that
counts tokens into a shared context, then collects the results.
"""

from transformers import AutoTokenizer

from genpool import CallbackBridge, Generator

model_name = "Qwen/Qwen2.5-0.5B"
tokenizer = AutoTokenizer.from_pretrained(model_name)


def tokenize(text):
    return tokenizer.convert_ids_to_tokens(tokenizer.encode(text))


with Generator(model_name, "cpu", max_queued_batches=8) as generator:
    # Stream tokens as they are generated
    print("Streaming:")
    prompt = "Once upon a time"
    print(prompt, end="", flush=True)
    for step in generator.generate_tokens(tokenize(prompt), max_length=32):
        print(tokenizer.convert_tokens_to_string([step.token]), end="", flush=True)
        if step.token_id == tokenizer.convert_tokens_to_ids(tokenize(".")[0]):
            break
    print()

    # Asynchronous batch with a per-step callback
    counts = {}

    def count_steps(step, context):
        context[step.batch_id] = context.get(step.batch_id, 0) + 1
        return True

    bridge = CallbackBridge(count_steps, counts)
    prompts = ["The weather today is", "My favorite food is"]
    handles = generator.generate_batch(
        [tokenize(p) for p in prompts],
        asynchronous=True,
        callback=bridge,
        max_length=12,
    )
    print(f"\nSubmitted {len(handles)} prompts, done: {[h.done() for h in handles]}")

    for prompt, handle in zip(prompts, handles):
        result = handle.result()
        print(f"  {tokenizer.decode(result.sequences_ids[0])!r}")

    bridge.wait_reclaimed()
    print(f"\nSteps per prompt: {bridge.context}")
