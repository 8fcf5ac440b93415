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

"""
Input validation for request bodies and catalog defaults.

Out-of-range values are rejected, never clamped. Validation touches no model
state, so a rejected request leaves the server exactly as it was.
"""
import numbers
from typing import Any, Dict, Optional

from .schemas import GenerationRequest, SamplingDefaults
from ..errors import InvalidParam

DEFAULT_MAX_TOKENS_LIMIT = 4096
DEFAULT_MAX_TEMPERATURE = 2.0
MAX_PROMPT_CHARS = 1_048_576


def _is_number(value: Any) -> bool:
    # bool is an int subclass; JSON true/false are not numbers here
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _is_integer(value: Any) -> bool:
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)


def validate_model_name(data: Any) -> str:
    """Extract the `name` field of a lifecycle request body."""
    if not isinstance(data, dict):
        raise InvalidParam('body', 'expected a JSON object')
    name = data.get('name')
    if not name or not isinstance(name, str):
        raise InvalidParam('name', 'a non-empty string is required')
    return name


def validate_temperature(value: Any, max_temperature: float = DEFAULT_MAX_TEMPERATURE) -> float:
    if not _is_number(value):
        raise InvalidParam('temperature', f"must be a number, got {type(value).__name__}")
    if not value > 0:
        raise InvalidParam('temperature', f"must be greater than 0, got {value}")
    if value > max_temperature:
        raise InvalidParam('temperature', f"must be at most {max_temperature}, got {value}")
    return float(value)


def validate_top_p(value: Any) -> float:
    if not _is_number(value):
        raise InvalidParam('top_p', f"must be a number, got {type(value).__name__}")
    if not 0 < value <= 1:
        raise InvalidParam('top_p', f"must be in (0, 1], got {value}")
    return float(value)


def validate_max_tokens(value: Any, limit: int = DEFAULT_MAX_TOKENS_LIMIT) -> int:
    if not _is_integer(value):
        raise InvalidParam('max_tokens', f"must be an integer, got {type(value).__name__}")
    if value < 1:
        raise InvalidParam('max_tokens', f"must be positive, got {value}")
    if value > limit:
        raise InvalidParam('max_tokens', f"must be at most {limit}, got {value}")
    return int(value)


def validate_seed(value: Any) -> int:
    if not _is_integer(value):
        raise InvalidParam('seed', f"must be an integer, got {type(value).__name__}")
    if value < 0:
        raise InvalidParam('seed', f"must be non-negative, got {value}")
    return int(value)


def _optional_text(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidParam(key, f"must be a string, got {type(value).__name__}")
    if len(value) > MAX_PROMPT_CHARS:
        raise InvalidParam(key, f"too long ({len(value)} chars, max {MAX_PROMPT_CHARS})")
    return value


def validate_generation_request(data: Any,
                                max_tokens_limit: int = DEFAULT_MAX_TOKENS_LIMIT,
                                max_temperature: float = DEFAULT_MAX_TEMPERATURE) -> GenerationRequest:
    """Build a GenerationRequest from a JSON body, failing fast on the first bad field."""
    if not isinstance(data, dict):
        raise InvalidParam('body', 'expected a JSON object')

    prompt = _optional_text(data, 'prompt')
    if not prompt:
        raise InvalidParam('prompt', 'a non-empty string is required')

    request = GenerationRequest(prompt=prompt, system_prompt=_optional_text(data, 'system_prompt'))
    if data.get('temperature') is not None:
        request.temperature = validate_temperature(data['temperature'], max_temperature)
    if data.get('top_p') is not None:
        request.top_p = validate_top_p(data['top_p'])
    if data.get('max_tokens') is not None:
        request.max_tokens = validate_max_tokens(data['max_tokens'], max_tokens_limit)
    if data.get('seed') is not None:
        request.seed = validate_seed(data['seed'])
    return request


def validate_sampling_defaults(data: Any,
                               max_tokens_limit: int = DEFAULT_MAX_TOKENS_LIMIT,
                               max_temperature: float = DEFAULT_MAX_TEMPERATURE) -> SamplingDefaults:
    """Validate a catalog `defaults` block against the same ranges as requests."""
    if data is None:
        return SamplingDefaults()
    if not isinstance(data, dict):
        raise InvalidParam('defaults', 'expected a JSON object')
    base = SamplingDefaults()
    return SamplingDefaults(
        temperature=validate_temperature(data.get('temperature', base.temperature), max_temperature),
        top_p=validate_top_p(data.get('top_p', base.top_p)),
        max_tokens=validate_max_tokens(data.get('max_tokens', base.max_tokens), max_tokens_limit),
    )
