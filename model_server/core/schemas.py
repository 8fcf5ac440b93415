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

"""Core data structures for the model server."""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ModelStatus(str, Enum):
    """Lifecycle state of a catalog entry."""
    UNLOADED = 'unloaded'
    LOADING = 'loading'
    LOADED = 'loaded'
    UNLOADING = 'unloading'
    FAILED = 'failed'


@dataclass(frozen=True)
class SamplingDefaults:
    """Per-model sampling defaults from the catalog."""
    temperature: float = 0.7
    top_p: float = 0.9
    max_tokens: int = 512


@dataclass(frozen=True)
class ModelDescriptor:
    """Static description of a model, fixed for the life of the process."""
    name: str
    source: str  # local GGUF path or hf://<repo>/<file>
    estimated_bytes: int
    template: str = 'raw'
    context_size: int = 4096
    quantization: Optional[str] = None
    defaults: SamplingDefaults = field(default_factory=SamplingDefaults)

    @property
    def estimated_mb(self) -> int:
        return self.estimated_bytes // (1024 * 1024)


@dataclass(frozen=True)
class ActiveModel:
    """Immutable snapshot of the active-model marker."""
    name: str
    descriptor: ModelDescriptor


@dataclass(frozen=True)
class SamplingParams:
    """Fully resolved sampling parameters for one session."""
    temperature: float
    top_p: float
    max_tokens: int
    seed: Optional[int] = None


@dataclass
class GenerationRequest:
    """Validated inference request; unset sampling fields fall back to model defaults."""
    prompt: str
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    seed: Optional[int] = None

    def resolve(self, defaults: SamplingDefaults) -> SamplingParams:
        """Fill unset fields from the bound model's defaults."""
        return SamplingParams(
            temperature=self.temperature if self.temperature is not None else defaults.temperature,
            top_p=self.top_p if self.top_p is not None else defaults.top_p,
            max_tokens=self.max_tokens if self.max_tokens is not None else defaults.max_tokens,
            seed=self.seed,
        )


@dataclass(frozen=True)
class Token:
    """One unit of generated output, or the error that ended generation."""
    text: str = ''
    token_id: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def failure(cls, reason: str) -> 'Token':
        return cls(error=reason)


@dataclass
class SessionStatus:
    """Tracking record for a generation session"""
    session_id: str
    model: str
    status: str  # generating, completed, cancelled, error
    start_time: float
    last_update: float
    max_tokens: int
    tokens: int = 0
    finish_reason: Optional[str] = None
    error: Optional[str] = None
    completion_time: Optional[float] = None

    @property
    def duration(self) -> float:
        if self.completion_time:
            return self.completion_time - self.start_time
        return time.time() - self.start_time

    @property
    def tokens_per_second(self) -> float:
        if self.status == 'error' or self.tokens == 0 or self.duration < 0.1:
            return 0.0
        return self.tokens / self.duration

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'model': self.model,
            'status': self.status,
            'tokens': self.tokens,
            'max_tokens': self.max_tokens,
            'finish_reason': self.finish_reason,
            'error': self.error,
            'start_time': self.start_time,
            'duration': round(self.duration, 3),
            'tokens_per_second': round(self.tokens_per_second, 2),
        }
