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

"""Request handlers for the API endpoints."""
import logging
from typing import Any, Dict, Optional

from flask import Response, jsonify, stream_with_context

from ..core.relay import StreamRelay
from ..core.schemas import GenerationRequest
from ..core.service import InferenceService
from ..core.validators import validate_generation_request
from ..errors import ModelServerError, http_status_for

logger = logging.getLogger(__name__)


def success(data: Dict[str, Any], status: int = 200):
    """Wrap a payload in the success envelope."""
    return jsonify({'status': 'ok', 'data': data}), status


def error_response(e: ModelServerError):
    """Map a ModelServerError to its status code and error envelope."""
    status = http_status_for(e)
    if status >= 500:
        logger.error(f"{e.code}: {e.message}")
    else:
        logger.info(f"Rejected request ({e.code}): {e.message}")
    return jsonify({'status': 'error', 'error': e.code, 'message': e.message}), status


def internal_error(context: str, e: Exception):
    logger.exception(f"Unexpected error in {context}")
    return jsonify({'status': 'error', 'error': 'internal_error', 'message': str(e)}), 500


class RequestHandler:
    """Handles inference request processing for the buffered and streaming routes."""

    def __init__(self, service: InferenceService, max_tokens_limit: int, max_temperature: float):
        self.service = service
        self.max_tokens_limit = max_tokens_limit
        self.max_temperature = max_temperature

    def parse_request(self, data: Optional[Dict[str, Any]]) -> GenerationRequest:
        return validate_generation_request(data, self.max_tokens_limit, self.max_temperature)

    def create_streaming_response(self, request_obj: GenerationRequest) -> Response:
        """Create a streaming response for the request.

        Errors raised before the first event (no active model) propagate to the
        route as a normal JSON error; anything after that arrives in-stream.
        """
        relay: StreamRelay = self.service.infer_stream(request_obj)
        session_id = relay.session_id
        logger.info(f"[{session_id}] Creating streaming response. Model: {relay.session.model_name}")

        def generate_stream_content():
            for event in relay.events():
                yield event.to_sse()

        response = Response(stream_with_context(generate_stream_content()),
                            mimetype='text/event-stream',
                            headers={'X-Session-ID': session_id, 'Cache-Control': 'no-cache'})
        response.call_on_close(relay.close)
        return response

    def handle_non_streaming_request(self, request_obj: GenerationRequest):
        """Handle non-streaming request."""
        result = self.service.infer(request_obj)
        logger.info(f"[{result.session_id}] Non-streaming call finished ({result.finish_reason}). "
                    f"Tokens: {result.tokens}, output len: {len(result.text)}")
        resp, status = success(result.to_dict())
        resp.headers['X-Session-ID'] = result.session_id
        return resp, status
