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

"""Inference entry points shared by the buffered and streaming routes."""
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterator, List, Optional

from .engine import GenerationEngine
from .relay import StreamRelay
from .schemas import GenerationRequest, Token
from .session import GenerationSession
from .session_tracker import SessionTracker
from ..errors import GenerationError
from ..models.lifecycle import LifecycleCoordinator
from ..models.templates import apply_chat_template

logger = logging.getLogger(__name__)


@dataclass
class InferenceResult:
    text: str
    model: str
    tokens: int
    finish_reason: str
    session_id: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class InferenceService:
    """Binds requests to the active model and runs them through the engine.

    Both paths share session setup and teardown, so a streamed response and a
    buffered one with the same parameters and seed produce the same text.
    """

    def __init__(self, coordinator: LifecycleCoordinator, engine: GenerationEngine,
                 tracker: SessionTracker, relay_buffer: int = 100, request_timeout: float = 0):
        self.coordinator = coordinator
        self.engine = engine
        self.tracker = tracker
        self.relay_buffer = relay_buffer
        self.request_timeout = request_timeout

    def open_session(self, request: GenerationRequest):
        """Bind to the active model and register the session.

        Returns the session and the templated prompt. Raises NoActiveModel when
        nothing is active; no session exists in that case.
        """
        lease = self.coordinator.acquire_active()
        descriptor = lease.descriptor
        session = GenerationSession(lease, request.resolve(descriptor.defaults))
        prompt = apply_chat_template(descriptor.template, request.prompt, request.system_prompt)
        self.tracker.add(session)
        session.arm_timeout(self.request_timeout)
        return session, prompt

    def _run(self, session: GenerationSession, prompt: str) -> Iterator[Token]:
        try:
            yield from self.engine.generate(session, prompt)
        finally:
            self._finish_session(session)

    def _finish_session(self, session: GenerationSession) -> None:
        if session.finish_reason is None:
            session.complete('stop')
        session.close()
        self.tracker.finish(session)

    def infer(self, request: GenerationRequest) -> InferenceResult:
        """Generate the whole response before returning.

        A cancelled or timed-out session returns the text produced so far with
        finish_reason 'cancelled'. A generation failure raises GenerationError.
        """
        session, prompt = self.open_session(request)
        pieces: List[str] = []
        error: Optional[str] = None
        for token in self._run(session, prompt):
            if token.is_error:
                error = token.error
                continue
            pieces.append(token.text)

        if error is not None:
            raise GenerationError(session.model_name, error)
        return InferenceResult(
            text=''.join(pieces),
            model=session.model_name,
            tokens=session.token_count,
            finish_reason=session.finish_reason,
            session_id=session.session_id,
        )

    def infer_stream(self, request: GenerationRequest) -> StreamRelay:
        """Set up a relay for the request. Generation starts when it is consumed."""
        session, prompt = self.open_session(request)
        return StreamRelay(session, self._run(session, prompt), maxsize=self.relay_buffer,
                           on_abandon=lambda: self._finish_session(session))

    def cancel(self, session_id: str) -> bool:
        return self.tracker.cancel(session_id)
