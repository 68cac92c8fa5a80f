"""
Replica backed by a Hugging Face causal language model.

Decoding is delegated to ``model.generate``. Per-step reporting and per-item
early stopping go through a ``StoppingCriteria`` that sees every step of
every row before transformers decides which rows are finished.
"""

import logging
import math
import threading
from typing import Dict, List, Optional, Sequence, Tuple

import torch
from transformers import (
    AutoModelForCausalLM,
    AutoTokenizer,
    StoppingCriteria,
    StoppingCriteriaList,
)

from genpool.config.types import ComputeType, Device
from genpool.engine.replica import (
    NativeGenerationResult,
    NativeScoringResult,
    NativeStepResult,
    Replica,
    StepCallback,
)
from genpool.errors import InvalidDeviceError, ModelLoadError
from genpool.generation.options import GenerationOptions
from genpool.sequence.adapter import IDS, TOKENS, NativeBatch, to_native

logger = logging.getLogger(__name__)

_DTYPES = {
    ComputeType.FLOAT32: torch.float32,
    ComputeType.FLOAT16: torch.float16,
    ComputeType.BFLOAT16: torch.bfloat16,
}


def _torch_device(device: Device, device_index: int) -> torch.device:
    if device == Device.AUTO:
        device = Device.CUDA if torch.cuda.is_available() else Device.CPU
    if device == Device.CPU:
        return torch.device("cpu")
    if device_index >= torch.cuda.device_count():
        raise InvalidDeviceError(
            f"cuda:{device_index} requested but {torch.cuda.device_count()} device(s) are visible"
        )
    return torch.device("cuda", device_index)


class _StepReporter(StoppingCriteria):
    """Tracks generated lengths and forwards each step to a callback.

    Rows are the rows of ``input_ids`` (one per input when beam_size is 1).
    A row is reported until it emits an end token, reaches the length limit
    or the callback asks to stop it.
    """

    def __init__(
        self,
        prompt_width: int,
        num_rows: int,
        end_ids: Sequence[int],
        max_new_tokens: int,
        id_to_token,
        callback: Optional[StepCallback],
    ) -> None:
        self.prompt_width = prompt_width
        self.end_ids = set(end_ids)
        self.max_new_tokens = max_new_tokens
        self.id_to_token = id_to_token
        self.callback = callback
        self.lengths = [0] * num_rows
        self.finished = [False] * num_rows

    def __call__(self, input_ids: torch.LongTensor, scores, **kwargs) -> torch.BoolTensor:
        step = input_ids.shape[1] - self.prompt_width - 1
        last_scores = scores[-1] if isinstance(scores, tuple) and scores else scores
        log_probs = None
        if isinstance(last_scores, torch.Tensor):
            log_probs = torch.log_softmax(last_scores.float(), dim=-1)

        stop = torch.zeros(input_ids.shape[0], dtype=torch.bool, device=input_ids.device)
        for row, token_id in enumerate(input_ids[:, -1].tolist()):
            if self.finished[row]:
                continue
            self.lengths[row] += 1
            is_last = token_id in self.end_ids or step + 1 >= self.max_new_tokens
            if self.callback is not None:
                has_log_prob = log_probs is not None
                keep_going = self.callback(
                    NativeStepResult(
                        step=step,
                        batch_id=row,
                        token_id=token_id,
                        token=self.id_to_token(token_id),
                        log_prob=float(log_probs[row, token_id]) if has_log_prob else math.nan,
                        has_log_prob=has_log_prob,
                        is_last=is_last,
                    )
                )
                if not keep_going:
                    stop[row] = True
                    is_last = True
            if is_last:
                self.finished[row] = True
        return stop


class TransformersReplica(Replica):
    """Causal LM replica driven through ``transformers``.

    Attributes:
        model: The loaded model, in eval mode.
        tokenizer: Tokenizer used to map tokens to ids and back.
        device: Torch device holding the weights.
    """

    def __init__(self, model, tokenizer, device: torch.device) -> None:
        self.model = model
        self.tokenizer = tokenizer
        self.device = device
        self._static_prompt_cache: Dict[Tuple[str, ...], List[int]] = {}
        self._cache_lock = threading.Lock()

    @classmethod
    def load(
        cls,
        model_path: str,
        device: Device,
        device_index: int,
        compute_type: ComputeType,
        num_threads: int = 0,
    ) -> "TransformersReplica":
        """Load a model directory onto one device.

        Raises:
            InvalidDeviceError: If the CUDA device index is not visible.
            ModelLoadError: If the compute type is unsupported on the device.
        """
        torch_device = _torch_device(device, device_index)
        if compute_type == ComputeType.INT16:
            raise ModelLoadError("int16 compute type is not supported by this backend")
        if compute_type.is_int8 and torch_device.type != "cpu":
            raise ModelLoadError(f"{compute_type} is only supported on cpu")
        if num_threads > 0:
            torch.set_num_threads(num_threads)

        if compute_type.is_int8:
            dtype = torch.float32
        else:
            dtype = _DTYPES.get(compute_type, "auto")

        tokenizer = AutoTokenizer.from_pretrained(model_path)
        model = AutoModelForCausalLM.from_pretrained(model_path, torch_dtype=dtype)
        model = model.to(torch_device)
        model.eval()
        if compute_type.is_int8:
            model = torch.ao.quantization.quantize_dynamic(
                model, {torch.nn.Linear}, dtype=torch.qint8
            )

        logger.info("Loaded %s on %s (%s)", model_path, torch_device, compute_type)
        return cls(model, tokenizer, torch_device)

    # Token helpers

    def _tokens_to_ids(self, tokens: Sequence[str]) -> List[int]:
        ids = self.tokenizer.convert_tokens_to_ids(list(tokens))
        missing = [t for t, i in zip(tokens, ids) if i is None]
        if missing:
            raise ValueError(f"tokens not in vocabulary: {missing}")
        return list(ids)

    def _ids_to_tokens(self, ids: Sequence[int]) -> List[str]:
        return list(self.tokenizer.convert_ids_to_tokens(list(ids)))

    def _prompts(self, batch: NativeBatch) -> List[List[int]]:
        if batch.kind == IDS:
            return [batch.at(i) for i in range(len(batch))]
        return [self._tokens_to_ids(batch.at(i)) for i in range(len(batch))]

    def _static_prompt_ids(self, options: GenerationOptions) -> List[int]:
        if not options.static_prompt:
            return []
        key = tuple(options.static_prompt)
        if not options.cache_static_prompt:
            return self._tokens_to_ids(key)
        with self._cache_lock:
            if key not in self._static_prompt_cache:
                self._static_prompt_cache[key] = self._tokens_to_ids(key)
            return self._static_prompt_cache[key]

    def _end_ids(self, options: GenerationOptions) -> List[int]:
        end_tokens = options.end_tokens
        if end_tokens:
            if isinstance(end_tokens[0], str):
                return self._tokens_to_ids(end_tokens)
            return [int(t) for t in end_tokens]
        eos = self.model.generation_config.eos_token_id
        if eos is None:
            eos = self.tokenizer.eos_token_id
        if eos is None:
            return []
        return list(eos) if isinstance(eos, (list, tuple)) else [eos]

    def _pad_id(self, end_ids: List[int]) -> int:
        if self.tokenizer.pad_token_id is not None:
            return self.tokenizer.pad_token_id
        return end_ids[0] if end_ids else 0

    def _bad_words(self, options: GenerationOptions) -> List[List[int]]:
        bad = [self._tokens_to_ids(s) for s in options.suppress_sequences or () if s]
        if options.disable_unk and self.tokenizer.unk_token_id is not None:
            bad.append([self.tokenizer.unk_token_id])
        return bad

    def _decoding_kwargs(self, options: GenerationOptions, end_ids: List[int]) -> dict:
        kwargs = {
            "num_beams": options.beam_size,
            "repetition_penalty": options.repetition_penalty,
            "no_repeat_ngram_size": options.no_repeat_ngram_size,
            "do_sample": options.is_sampling,
            "eos_token_id": end_ids or None,
            "pad_token_id": self._pad_id(end_ids),
        }
        if options.beam_size > 1:
            kwargs["length_penalty"] = options.length_penalty
        if options.is_sampling:
            kwargs["top_k"] = options.sampling_topk
            kwargs["top_p"] = options.sampling_topp
            kwargs["temperature"] = options.sampling_temperature
        bad_words = self._bad_words(options)
        if bad_words:
            kwargs["bad_words_ids"] = bad_words
        return kwargs

    @staticmethod
    def _pad_left(prompts: List[List[int]], pad_id: int) -> Tuple[torch.Tensor, torch.Tensor]:
        width = max(len(p) for p in prompts)
        input_ids = torch.full((len(prompts), width), pad_id, dtype=torch.long)
        attention_mask = torch.zeros((len(prompts), width), dtype=torch.long)
        for i, prompt in enumerate(prompts):
            if prompt:
                input_ids[i, width - len(prompt) :] = torch.tensor(prompt, dtype=torch.long)
                attention_mask[i, width - len(prompt) :] = 1
        return input_ids, attention_mask

    def _finish(
        self,
        generated: List[int],
        end_ids: List[int],
        options: GenerationOptions,
    ) -> List[int]:
        end_set = set(end_ids)
        for position, token_id in enumerate(generated):
            if token_id in end_set:
                generated = generated[: position + 1]
                break
        if generated and generated[-1] in end_set and not options.return_end_token:
            generated = generated[:-1]
        return generated

    def _to_result(
        self,
        prompt: List[int],
        hypotheses: List[List[int]],
        scores: List[float],
        options: GenerationOptions,
    ) -> NativeGenerationResult:
        prefix = prompt if options.include_prompt_in_result else []
        ids = [prefix + h for h in hypotheses]
        return NativeGenerationResult(
            sequences=to_native([self._ids_to_tokens(h) for h in ids], kind=TOKENS),
            sequences_ids=to_native(ids, kind=IDS),
            scores=scores if options.return_scores else [],
        )

    # Replica interface

    def generate(
        self,
        batch: NativeBatch,
        options: GenerationOptions,
        step_callback: Optional[StepCallback] = None,
    ) -> List[NativeGenerationResult]:
        prompts = self._prompts(batch)
        if options.return_alternatives:
            return [self._generate_alternatives(prompt, options) for prompt in prompts]

        static_ids = self._static_prompt_ids(options)
        full_prompts = [static_ids + prompt for prompt in prompts]
        if any(not p for p in full_prompts):
            bos = self.tokenizer.bos_token_id
            if bos is None:
                raise ValueError("empty prompts require a tokenizer with a bos token")
            full_prompts = [p or [bos] for p in full_prompts]

        end_ids = self._end_ids(options)
        input_ids, attention_mask = self._pad_left(full_prompts, self._pad_id(end_ids))
        width = input_ids.shape[1]
        n = options.num_hypotheses

        reporter = None
        if options.beam_size == 1:
            reporter = _StepReporter(
                prompt_width=width,
                num_rows=len(prompts) * n,
                end_ids=end_ids,
                max_new_tokens=options.max_length,
                id_to_token=self.tokenizer.convert_ids_to_tokens,
                callback=step_callback,
            )

        kwargs = self._decoding_kwargs(options, end_ids)
        if options.min_length > 0:
            kwargs["min_new_tokens"] = options.min_length
        if reporter is not None:
            kwargs["stopping_criteria"] = StoppingCriteriaList([reporter])

        with torch.no_grad():
            output = self.model.generate(
                input_ids=input_ids.to(self.device),
                attention_mask=attention_mask.to(self.device),
                max_new_tokens=options.max_length,
                num_return_sequences=n,
                output_scores=True,
                return_dict_in_generate=True,
                **kwargs,
            )

        new_tokens = output.sequences[:, width:].tolist()
        if options.beam_size > 1:
            row_scores = output.sequences_scores.tolist()
        else:
            transitions = self.model.compute_transition_scores(
                output.sequences, output.scores, normalize_logits=True
            )

        results = []
        for i, prompt in enumerate(prompts):
            hypotheses, scores = [], []
            for row in range(i * n, (i + 1) * n):
                generated = new_tokens[row]
                if reporter is not None:
                    generated = generated[: reporter.lengths[row]]
                    scores.append(float(transitions[row, : len(generated)].sum()))
                else:
                    scores.append(float(row_scores[row]))
                hypotheses.append(self._finish(generated, end_ids, options))
            results.append(self._to_result(prompt, hypotheses, scores, options))
        return results

    def _generate_alternatives(
        self, prompt: List[int], options: GenerationOptions
    ) -> NativeGenerationResult:
        """Expand the most likely first tokens, then decode each alternative."""
        full_prompt = self._static_prompt_ids(options) + prompt
        end_ids = self._end_ids(options)
        with torch.no_grad():
            logits = self.model(torch.tensor([full_prompt], device=self.device)).logits
        log_probs = torch.log_softmax(logits[0, -1].float(), dim=-1)
        k = min(options.num_hypotheses, log_probs.shape[-1])
        top_log_probs, top_ids = torch.topk(log_probs, k)

        kwargs = self._decoding_kwargs(options, end_ids)
        hypotheses, scores = [], []
        for rank, (log_prob, token_id) in enumerate(zip(top_log_probs.tolist(), top_ids.tolist())):
            if rank > 0 and math.exp(log_prob) < options.min_alternative_expansion_prob:
                break
            generated = [token_id]
            score = log_prob
            if token_id not in end_ids and options.max_length > 1:
                with torch.no_grad():
                    output = self.model.generate(
                        input_ids=torch.tensor([full_prompt + [token_id]], device=self.device),
                        max_new_tokens=options.max_length - 1,
                        output_scores=True,
                        return_dict_in_generate=True,
                        **kwargs,
                    )
                continuation = self._finish(
                    output.sequences[0, len(full_prompt) + 1 :].tolist(), end_ids, options
                )
                transitions = self.model.compute_transition_scores(
                    output.sequences, output.scores, normalize_logits=True
                )
                score += float(transitions[0, : len(continuation)].sum())
                generated += continuation
            hypotheses.append(self._finish(generated, end_ids, options))
            scores.append(score)
        return self._to_result(prompt, hypotheses, scores, options)

    def score(
        self, batch: NativeBatch, options: GenerationOptions
    ) -> List[NativeScoringResult]:
        results = []
        for prompt in self._prompts(batch):
            ids = self._static_prompt_ids(options) + prompt
            scored = len(prompt) - 1 if prompt else 0
            if scored <= 0:
                results.append(NativeScoringResult(tokens=to_native([[]], kind=TOKENS), log_probs=[]))
                continue
            with torch.no_grad():
                logits = self.model(torch.tensor([ids], device=self.device)).logits[0]
            log_probs = torch.log_softmax(logits[:-1].float(), dim=-1)
            targets = torch.tensor(ids[1:], device=log_probs.device)
            token_log_probs = log_probs.gather(-1, targets.unsqueeze(-1)).squeeze(-1)
            results.append(
                NativeScoringResult(
                    tokens=to_native([self._ids_to_tokens(prompt[1:])], kind=TOKENS),
                    log_probs=token_log_probs[-scored:].tolist(),
                )
            )
        return results
