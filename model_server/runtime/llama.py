# Copyright 2025 LLM Inference Service Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""GGUF inference through llama-cpp-python."""
import gc
import logging
import threading
from pathlib import Path
from typing import Any, FrozenSet, List, Sequence

import numpy as np

from .base import InferenceRuntime
from ..core.schemas import ModelDescriptor

logger = logging.getLogger(__name__)

HF_SCHEME = 'hf://'
END_MARKERS = ('<|eot_id|>', '<|im_end|>', '<|endoftext|>')


class LlamaHandle:
    """A loaded llama.cpp model plus the lock that serializes evaluation on it."""

    def __init__(self, name: str, model: Any, eos_ids: FrozenSet[int]):
        self.name = name
        self.model = model
        self.eos_ids = eos_ids
        self.lock = threading.Lock()

    def __repr__(self) -> str:
        return f"LlamaHandle({self.name!r})"


def resolve_model_path(source: str) -> str:
    """Map a catalog source to a local file, downloading hub sources into the HF cache."""
    if source.startswith(HF_SCHEME):
        from huggingface_hub import hf_hub_download

        repo_id, _, filename = source[len(HF_SCHEME):].rpartition('/')
        if not repo_id or not filename:
            raise ValueError(f"Hub source must look like hf://<org>/<repo>/<file>, got {source!r}")
        logger.info(f"Fetching {filename} from {repo_id}")
        return hf_hub_download(repo_id=repo_id, filename=filename)

    path = Path(source).expanduser()
    if not path.is_file():
        raise FileNotFoundError(f"Model file not found: {path}")
    return str(path)


class LlamaCppRuntime(InferenceRuntime):
    """Runtime backed by `llama_cpp.Llama`."""

    def __init__(self, n_gpu_layers: int = -1, main_gpu: int = 0, verbose: bool = False):
        self.n_gpu_layers = n_gpu_layers
        self.main_gpu = main_gpu
        self.verbose = verbose

    def load(self, descriptor: ModelDescriptor) -> LlamaHandle:
        from llama_cpp import Llama

        model_path = resolve_model_path(descriptor.source)
        logger.info(f"Loading GGUF model '{descriptor.name}' from {model_path} "
                    f"(n_ctx={descriptor.context_size}, n_gpu_layers={self.n_gpu_layers})")
        model = Llama(
            model_path=model_path,
            n_ctx=descriptor.context_size,
            n_gpu_layers=self.n_gpu_layers,
            main_gpu=self.main_gpu,
            verbose=self.verbose,
        )
        try:
            eos_ids = self._end_token_ids(model)
        except Exception:
            self._close(model)
            raise
        return LlamaHandle(descriptor.name, model, eos_ids)

    def _end_token_ids(self, model: Any) -> FrozenSet[int]:
        ids = {model.token_eos()}
        for marker in END_MARKERS:
            tokens = model.tokenize(marker.encode('utf-8'), add_bos=False, special=True)
            if len(tokens) == 1:
                ids.add(tokens[0])
        return frozenset(ids)

    @staticmethod
    def _close(model: Any) -> None:
        close = getattr(model, 'close', None)
        if close is not None:
            close()

    def unload(self, handle: LlamaHandle) -> None:
        with handle.lock:
            model, handle.model = handle.model, None
        if model is not None:
            self._close(model)
            del model
            gc.collect()
        logger.info(f"Released llama.cpp model '{handle.name}'")

    def next_token_distribution(self, handle: LlamaHandle, context: Sequence[int]) -> np.ndarray:
        with handle.lock:
            model = handle.model
            if model is None:
                raise RuntimeError(f"Model '{handle.name}' has been released")
            if len(context) > model.n_ctx():
                raise ValueError(f"Context of {len(context)} tokens exceeds window of {model.n_ctx()}")

            # Reuse the KV cache when this context extends what was last evaluated
            cached = model.input_ids[:model.n_tokens].tolist()
            if 0 < len(cached) < len(context) and list(context[:len(cached)]) == cached:
                pending = list(context[len(cached):])
            else:
                model.reset()
                pending = list(context)

            model.eval(pending)
            return np.array(model.scores[model.n_tokens - 1], dtype=np.float32, copy=True)

    def encode(self, handle: LlamaHandle, text: str) -> List[int]:
        with handle.lock:
            # Templates leave BOS to the tokenizer and keep their markers out of user text
            return list(handle.model.tokenize(text.encode('utf-8'), add_bos=True, special=True))

    def decode(self, handle: LlamaHandle, token_ids: Sequence[int]) -> str:
        with handle.lock:
            raw = handle.model.detokenize(list(token_ids))
        return raw.decode('utf-8', errors='replace')

    def eos_token_ids(self, handle: LlamaHandle) -> FrozenSet[int]:
        return handle.eos_ids
