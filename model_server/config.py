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

"""Configuration management for the model server."""
import argparse
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .core.schemas import ModelDescriptor
from .core.validators import DEFAULT_MAX_TEMPERATURE, DEFAULT_MAX_TOKENS_LIMIT, validate_sampling_defaults
from .errors import ConfigError, InvalidParam
from .models.lifecycle import UNLOAD_DRAIN, UNLOAD_POLICIES
from .models.templates import TEMPLATES

logger = logging.getLogger(__name__)

MB = 1024 * 1024
LOAD_OVERHEAD_MB = 500  # runtime buffers and KV cache on top of the weights file
DEFAULT_CONTEXT_SIZE = 4096


@dataclass
class ServerConfig:
    """Server configuration parameters."""
    models_config: Path
    log_dir: Path
    host: str
    port: int
    debug: bool
    device: str = 'cuda'
    gpu_index: int = 0
    safety_margin: float = 0.1
    unload_policy: str = UNLOAD_DRAIN
    request_timeout: float = 0.0
    relay_buffer: int = 100
    max_tokens_limit: int = DEFAULT_MAX_TOKENS_LIMIT
    max_temperature: float = DEFAULT_MAX_TEMPERATURE
    preload: Optional[str] = None

    @property
    def n_gpu_layers(self) -> int:
        """Layers to offload: everything on cuda, nothing on cpu."""
        return 0 if self.device == 'cpu' else -1


def parse_arguments(argv: Optional[Sequence[str]] = None) -> ServerConfig:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Run a local multi-model inference server')
    parser.add_argument('--models-config', type=str, default='models.json',
                        help='Path to the JSON model catalog (default: models.json)')
    parser.add_argument('--log-dir', type=str, default='logs',
                        help='Path to the logs directory (default: logs)')
    parser.add_argument('--host', type=str, default='127.0.0.1',
                        help='Host to run the API server on (default: 127.0.0.1)')
    parser.add_argument('--port', type=int, default=8081,
                        help='Port to run the API server on (default: 8081)')
    parser.add_argument('--debug', action='store_true',
                        help='Run the API server in debug mode')
    parser.add_argument('--device', choices=['cuda', 'cpu'], default='cuda',
                        help='Device models are loaded onto (default: cuda)')
    parser.add_argument('--gpu-index', type=int, default=0,
                        help='GPU to probe and load onto (default: 0)')
    parser.add_argument('--safety-margin', type=float, default=0.1,
                        help='Fraction added to a model\'s estimated size before the memory check (default: 0.1)')
    parser.add_argument('--unload-policy', choices=list(UNLOAD_POLICIES), default=UNLOAD_DRAIN,
                        help='What unload does to in-flight sessions: let them finish (drain) '
                             'or stop them (cancel) (default: drain)')
    parser.add_argument('--request-timeout', type=float, default=0.0,
                        help='Cancel generation after this many seconds; 0 disables (default: 0)')
    parser.add_argument('--relay-buffer', type=int, default=100,
                        help='Tokens buffered between generation and a streaming client (default: 100)')
    parser.add_argument('--max-tokens-limit', type=int, default=DEFAULT_MAX_TOKENS_LIMIT,
                        help=f'Largest accepted max_tokens (default: {DEFAULT_MAX_TOKENS_LIMIT})')
    parser.add_argument('--max-temperature', type=float, default=DEFAULT_MAX_TEMPERATURE,
                        help=f'Largest accepted temperature (default: {DEFAULT_MAX_TEMPERATURE})')
    parser.add_argument('--preload', type=str, default=None,
                        help='Model to load and activate at startup')

    args = parser.parse_args(argv)

    if args.safety_margin < 0:
        parser.error('--safety-margin must be >= 0')
    if args.request_timeout < 0:
        parser.error('--request-timeout must be >= 0')
    if args.relay_buffer < 1:
        parser.error('--relay-buffer must be >= 1')
    if args.max_tokens_limit < 1:
        parser.error('--max-tokens-limit must be >= 1')
    if args.max_temperature <= 0:
        parser.error('--max-temperature must be > 0')

    return ServerConfig(
        models_config=Path(args.models_config),
        log_dir=Path(args.log_dir),
        host=args.host,
        port=args.port,
        debug=args.debug,
        device=args.device,
        gpu_index=args.gpu_index,
        safety_margin=args.safety_margin,
        unload_policy=args.unload_policy,
        request_timeout=args.request_timeout,
        relay_buffer=args.relay_buffer,
        max_tokens_limit=args.max_tokens_limit,
        max_temperature=args.max_temperature,
        preload=args.preload,
    )


def hub_file_size(repo_id: str, filename: str) -> int:
    """Size in bytes of a file on the Hugging Face Hub, read from its metadata without downloading it."""
    try:
        from huggingface_hub import get_hf_file_metadata, hf_hub_url
    except ImportError as e:
        raise ConfigError(f"huggingface_hub is needed to size {repo_id}/{filename}; "
                          f"install the 'llama' extra or set 'size_mb'") from e
    try:
        metadata = get_hf_file_metadata(hf_hub_url(repo_id=repo_id, filename=filename))
    except Exception as e:
        raise ConfigError(f"Could not read size of {repo_id}/{filename} from the Hub: {e}") from e
    if not metadata.size:
        raise ConfigError(f"Hub reports no size for {repo_id}/{filename}; set 'size_mb'")
    return int(metadata.size)


def _positive_int(name: str, key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"Model '{name}': '{key}' must be a positive integer, got {value!r}", name)
    return value


def _parse_model(name: str, entry: Any, base_dir: Path,
                 max_tokens_limit: int, max_temperature: float) -> ModelDescriptor:
    if not isinstance(entry, dict):
        raise ConfigError(f"Model '{name}': expected an object, got {type(entry).__name__}", name)

    size_mb = entry.get('size_mb')
    if size_mb is not None:
        if isinstance(size_mb, bool) or not isinstance(size_mb, (int, float)) or size_mb <= 0:
            raise ConfigError(f"Model '{name}': 'size_mb' must be a positive number, got {size_mb!r}", name)

    if 'path' in entry and ('repo' in entry or 'file' in entry):
        raise ConfigError(f"Model '{name}': give either 'path' or 'repo' + 'file', not both", name)

    if 'path' in entry:
        path = Path(entry['path']).expanduser()
        if not path.is_absolute():
            path = base_dir / path
        source = str(path)
        if size_mb is None:
            if not path.is_file():
                raise ConfigError(f"Model '{name}': weights file {path} not found and no 'size_mb' given", name)
            estimated = path.stat().st_size + LOAD_OVERHEAD_MB * MB
        else:
            estimated = int(size_mb * MB)
    elif entry.get('repo') and entry.get('file'):
        source = f"hf://{entry['repo']}/{entry['file']}"
        if size_mb is None:
            estimated = hub_file_size(entry['repo'], entry['file']) + LOAD_OVERHEAD_MB * MB
        else:
            estimated = int(size_mb * MB)
    else:
        raise ConfigError(f"Model '{name}': a 'path' or 'repo' + 'file' source is required", name)

    template = entry.get('template', 'raw')
    if template not in TEMPLATES:
        raise ConfigError(f"Model '{name}': unknown template {template!r} (expected one of {', '.join(TEMPLATES)})",
                          name)

    quantization = entry.get('quantization')
    if quantization is not None and not isinstance(quantization, str):
        raise ConfigError(f"Model '{name}': 'quantization' must be a string", name)

    try:
        defaults = validate_sampling_defaults(entry.get('defaults'), max_tokens_limit, max_temperature)
    except InvalidParam as e:
        raise ConfigError(f"Model '{name}' defaults: {e}", name) from e

    return ModelDescriptor(
        name=name,
        source=source,
        estimated_bytes=estimated,
        template=template,
        context_size=_positive_int(name, 'context_size', entry.get('context_size', DEFAULT_CONTEXT_SIZE)),
        quantization=quantization,
        defaults=defaults,
    )


def load_model_catalog(path: Path,
                       max_tokens_limit: int = DEFAULT_MAX_TOKENS_LIMIT,
                       max_temperature: float = DEFAULT_MAX_TEMPERATURE) -> List[ModelDescriptor]:
    """Read the model catalog.

    The catalog is a JSON object with a `models` mapping from model name to its
    source, estimated size, template and sampling defaults. Relative weight
    paths are resolved against the catalog's directory.

    Raises:
        ConfigError: if the file is missing, malformed, or any entry is invalid
    """
    path = Path(path)
    try:
        with open(path, 'r', encoding='utf-8') as f:
            document: Dict[str, Any] = json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Model catalog {path} not found") from e
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not read model catalog {path}: {e}") from e

    if not isinstance(document, dict) or not isinstance(document.get('models'), dict):
        raise ConfigError(f"Model catalog {path} must contain a 'models' object")
    models = document['models']
    if not models:
        raise ConfigError(f"Model catalog {path} defines no models")

    descriptors = [_parse_model(name, entry, path.parent, max_tokens_limit, max_temperature)
                   for name, entry in models.items()]
    logger.info(f"Loaded {len(descriptors)} model descriptors from {path}: "
                f"{', '.join(d.name for d in descriptors)}")
    return descriptors
