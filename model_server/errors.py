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
Exception types for the model server.

Every failure that can reach a caller is one of these. Route handlers map them
to HTTP statuses through HTTP_STATUS_MAP; nothing here is fatal to the process.
"""
from typing import Optional


class ModelServerError(Exception):
    """Base exception for all model server errors"""

    code = 'internal_error'

    def __init__(self, message: str, model_id: Optional[str] = None):
        self.message = message
        self.model_id = model_id
        super().__init__(message)


class ConfigError(ModelServerError):
    """Raised when the model catalog or server flags are invalid"""

    code = 'config_error'


class InvalidParam(ModelServerError):
    """Raised when a request parameter is missing or out of range"""

    code = 'invalid_param'

    def __init__(self, param: str, reason: str):
        super().__init__(f"Invalid parameter '{param}': {reason}")
        self.param = param
        self.reason = reason


class NotFound(ModelServerError):
    """Raised when a model name is not in the catalog"""

    code = 'not_found'

    def __init__(self, model_id: str):
        super().__init__(f"Model '{model_id}' not found in catalog", model_id)


class StateConflict(ModelServerError):
    """Raised when a lifecycle operation does not fit the model's current state"""

    code = 'state_conflict'


class AlreadyLoading(StateConflict):
    code = 'already_loading'

    def __init__(self, model_id: str):
        super().__init__(f"Model '{model_id}' is already loading", model_id)


class AlreadyLoaded(StateConflict):
    code = 'already_loaded'

    def __init__(self, model_id: str):
        super().__init__(f"Model '{model_id}' is already loaded", model_id)


class NotLoaded(StateConflict):
    code = 'not_loaded'

    def __init__(self, model_id: str, status: str = 'unloaded'):
        super().__init__(f"Model '{model_id}' is not loaded (state: {status})", model_id)
        self.status = status


class ModelBusy(StateConflict):
    """Raised when a model is in the middle of unloading"""

    code = 'model_busy'

    def __init__(self, model_id: str, status: str):
        super().__init__(f"Model '{model_id}' is busy (state: {status})", model_id)
        self.status = status


class NoActiveModel(StateConflict):
    code = 'no_active_model'

    def __init__(self):
        super().__init__("No active model selected")


class CapacityDenied(ModelServerError):
    """Raised when the capacity guard refuses a load"""

    code = 'capacity_denied'

    def __init__(self, model_id: str, reason: str):
        super().__init__(f"Cannot load model '{model_id}': {reason}", model_id)
        self.reason = reason


class LoadFailed(ModelServerError):
    """Raised when the inference runtime fails to load a model"""

    code = 'load_failed'

    def __init__(self, model_id: str, reason: str):
        super().__init__(f"Failed to load model '{model_id}': {reason}", model_id)
        self.reason = reason


class GenerationError(ModelServerError):
    """Raised when token generation fails"""

    code = 'generation_error'

    def __init__(self, model_id: str, reason: str):
        super().__init__(f"Generation failed for '{model_id}': {reason}", model_id)
        self.reason = reason


HTTP_STATUS_MAP = {
    InvalidParam: 400,
    NotFound: 404,
    StateConflict: 409,
    CapacityDenied: 507,
    LoadFailed: 500,
    GenerationError: 500,
    ModelServerError: 500,
}


def http_status_for(exc: ModelServerError) -> int:
    """Resolve the HTTP status for an error, walking its class hierarchy."""
    for cls in type(exc).__mro__:
        if cls in HTTP_STATUS_MAP:
            return HTTP_STATUS_MAP[cls]
    return 500
