"""
Example demonstrating batch generation on a pool of model replicas.

This example tokenizes a few prompts, runs them through two replicas in
batches of one example each and prints the continuations in input order.
"""

from transformers import AutoTokenizer

from genpool import Generator

model_name = "Qwen/Qwen2.5-0.5B"
tokenizer = AutoTokenizer.from_pretrained(model_name)

prompts = [
    "The capital of France is",
    "Hello, my name is",
    "In the year 2024,",
]
start_tokens = [tokenizer.convert_ids_to_tokens(tokenizer.encode(p)) for p in prompts]

print("Loading two replicas on cpu...")
with Generator(model_name, "cpu", inter_threads=2) as generator:
    print(f"  {generator}")

    print("\nGenerating...")
    results = generator.generate_batch(
        start_tokens,
        max_batch_size=1,
        max_length=16,
        return_scores=True,
        include_prompt_in_result=False,
    )

    for prompt, result in zip(prompts, results):
        text = tokenizer.decode(result.sequences_ids[0])
        print(f"\n{prompt!r}")
        print(f"  -> {text!r} (score {result.scores[0]:.2f})")

    print("\nScoring the prompts...")
    for prompt, scored in zip(prompts, generator.score_batch(start_tokens)):
        print(f"  {prompt!r}: mean log-prob {scored.score:.3f}")
