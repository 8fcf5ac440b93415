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

"""Flask routes for the model server."""
import logging
from datetime import datetime

from flask import Blueprint, jsonify, request

from .handlers import RequestHandler, error_response, internal_error, success
from ..core.validators import validate_model_name
from ..errors import InvalidParam, ModelServerError
from ..utils.gpu_monitor import safe_snapshot

logger = logging.getLogger(__name__)


def create_routes(service, coordinator, tracker, probe, config) -> Blueprint:
    """Create and configure all API routes."""
    api_bp = Blueprint('api', __name__)
    handler = RequestHandler(service, config.max_tokens_limit, config.max_temperature)

    def _json_body():
        return request.get_json(silent=True)

    # ============================================================================
    # Inference Endpoints
    # ============================================================================

    @api_bp.route('/infer', methods=['POST'])
    def infer():
        """Buffered inference against the active model."""
        try:
            request_obj = handler.parse_request(_json_body())
            return handler.handle_non_streaming_request(request_obj)
        except ModelServerError as e:
            return error_response(e)
        except Exception as e:
            return internal_error('infer', e)

    @api_bp.route('/infer_stream', methods=['POST'])
    def infer_stream():
        """Streaming inference against the active model (server-sent events)."""
        try:
            request_obj = handler.parse_request(_json_body())
            return handler.create_streaming_response(request_obj)
        except ModelServerError as e:
            return error_response(e)
        except Exception as e:
            return internal_error('infer_stream', e)

    @api_bp.route('/cancel', methods=['POST'])
    def cancel():
        """Cooperatively cancel an in-flight session."""
        try:
            data = _json_body()
            session_id = data.get('session_id') if isinstance(data, dict) else None
            if not isinstance(session_id, str) or not session_id:
                raise InvalidParam('session_id', 'a non-empty string is required')
            cancelled = service.cancel(session_id)
            return success({'session_id': session_id, 'cancelled': cancelled})
        except ModelServerError as e:
            return error_response(e)
        except Exception as e:
            return internal_error('cancel', e)

    @api_bp.route('/sessions', methods=['GET'])
    def sessions():
        """Active sessions plus the most recently finished ones."""
        return success({
            'active': tracker.active_count(),
            'sessions': [s.to_dict() for s in tracker.get_recent_sessions()],
        })

    # ============================================================================
    # Model Management Endpoints
    # ============================================================================

    @api_bp.route('/models', methods=['GET'])
    def list_models():
        """Catalog with per-model state, the active model and device memory."""
        try:
            data = coordinator.list_models()
            data['memory'] = safe_snapshot(probe)
            return success(data)
        except Exception as e:
            return internal_error('list_models', e)

    @api_bp.route('/load_model', methods=['POST'])
    def load_model():
        try:
            name = validate_model_name(_json_body())
            state = coordinator.load(name)
            return success({'name': name, 'state': state.value})
        except ModelServerError as e:
            return error_response(e)
        except Exception as e:
            return internal_error('load_model', e)

    @api_bp.route('/unload_model', methods=['POST'])
    def unload_model():
        """Unload a model. Returns once every session using it has exited."""
        try:
            name = validate_model_name(_json_body())
            state = coordinator.unload(name)
            return success({'name': name, 'state': state.value})
        except ModelServerError as e:
            return error_response(e)
        except Exception as e:
            return internal_error('unload_model', e)

    @api_bp.route('/set_model', methods=['POST'])
    def set_model():
        try:
            name = validate_model_name(_json_body())
            active = coordinator.set_active(name)
            return success({'active': active.name})
        except ModelServerError as e:
            return error_response(e)
        except Exception as e:
            return internal_error('set_model', e)

    @api_bp.route('/acknowledge', methods=['POST'])
    def acknowledge():
        """Clear a failed load so the model can be retried."""
        try:
            name = validate_model_name(_json_body())
            state = coordinator.acknowledge(name)
            return success({'name': name, 'state': state.value})
        except ModelServerError as e:
            return error_response(e)
        except Exception as e:
            return internal_error('acknowledge', e)

    # ============================================================================
    # Health
    # ============================================================================

    @api_bp.route('/health', methods=['GET'])
    def health_check():
        """Health check endpoint."""
        return jsonify({
            'status': 'ok',
            'timestamp': datetime.now().isoformat(),
            'components': {
                'models': len(coordinator.registry),
                'active_model': coordinator.active_name,
                'active_sessions': tracker.active_count(),
            }
        })

    return api_bp
