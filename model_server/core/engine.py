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

"""Token-by-token generation loop."""
import logging
from typing import Iterator, List

from .sampling import make_rng, sample_token
from .schemas import Token
from .session import GenerationSession
from ..runtime.base import InferenceRuntime

logger = logging.getLogger(__name__)

REPLACEMENT_CHAR = '�'


class GenerationEngine:
    """Runs generation for a session against the handle it holds."""

    def __init__(self, runtime: InferenceRuntime):
        self.runtime = runtime

    def generate(self, session: GenerationSession, prompt: str) -> Iterator[Token]:
        """Yield tokens for `prompt` as they are sampled.

        Generation stops at `max_tokens`, at an end-of-sequence token, or at the
        first step boundary after the session is cancelled. A failure inside a
        step ends the sequence with an error token; it is never raised to the
        caller, and the model handle stays usable for other sessions.

        The returned iterator is single-use.
        """
        sid = session.session_id
        handle = session.handle
        params = session.params
        rng = make_rng(params.seed)

        try:
            context: List[int] = list(self.runtime.encode(handle, prompt))
            eos_ids = self.runtime.eos_token_ids(handle)
        except Exception as e:
            logger.exception(f"[{sid}] Failed to tokenize prompt")
            yield self._fail(session, f"tokenization failed: {e}")
            return

        logger.info(f"[{sid}] Generating up to {params.max_tokens} tokens "
                    f"from {len(context)} prompt tokens on '{session.model_name}'")

        generated: List[int] = []
        text = ''
        emitted = 0
        while True:
            if session.cancelled:
                session.finish_reason = 'cancelled'
                logger.info(f"[{sid}] Stopped after {session.token_count} tokens: {session.cancel_reason}")
                return
            if session.token_count >= params.max_tokens:
                reason = 'length'
                break

            try:
                logits = self.runtime.next_token_distribution(handle, context)
                token_id = sample_token(logits, params.temperature, params.top_p, rng)
            except Exception as e:
                logger.exception(f"[{sid}] Generation step {session.token_count} failed")
                yield self._fail(session, str(e) or type(e).__name__)
                return

            if token_id in eos_ids:
                reason = 'stop'
                break

            context.append(token_id)
            generated.append(token_id)
            session.token_count += 1

            try:
                text = self.runtime.decode(handle, generated)
            except Exception as e:
                logger.exception(f"[{sid}] Failed to decode token {token_id}")
                yield self._fail(session, f"decode failed: {e}")
                return

            # Hold back a trailing partial UTF-8 sequence until it completes
            if len(text) > emitted and not text.endswith(REPLACEMENT_CHAR):
                piece, emitted = text[emitted:], len(text)
                yield Token(text=piece, token_id=token_id)

        if not session.complete(reason):
            logger.info(f"[{sid}] Cancelled at completion after {session.token_count} tokens: {session.cancel_reason}")
            return
        if len(text) > emitted:
            yield Token(text=text[emitted:])
        logger.info(f"[{sid}] Finished ({session.finish_reason}) after {session.token_count} tokens")

    @staticmethod
    def _fail(session: GenerationSession, reason: str) -> Token:
        session.finish_reason = 'error'
        session.error = reason
        return Token.failure(reason)
