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

"""Session tracking functionality."""
import logging
import threading
import time
from collections import deque
from typing import Dict, List, Optional

from .schemas import SessionStatus
from .session import GenerationSession

logger = logging.getLogger(__name__)


class SessionTracker:
    """Tracks in-flight sessions and keeps a short history of finished ones."""

    def __init__(self, history: int = 10):
        self.active_sessions: Dict[str, GenerationSession] = {}
        self.statuses: Dict[str, SessionStatus] = {}
        self.completed_sessions: deque = deque(maxlen=history)
        self._lock = threading.Lock()

    def add(self, session: GenerationSession) -> None:
        """Add a new session to tracking."""
        with self._lock:
            if session.session_id in self.active_sessions:
                logger.warning(f"[{session.session_id}] Attempted to add existing session to tracker.")
                return
            now = time.time()
            self.active_sessions[session.session_id] = session
            self.statuses[session.session_id] = SessionStatus(
                session_id=session.session_id,
                model=session.model_name,
                status='generating',
                start_time=now,
                last_update=now,
                max_tokens=session.params.max_tokens,
            )
        logger.info(f"[{session.session_id}] Session started. Model: {session.model_name}, "
                    f"temperature={session.params.temperature}, top_p={session.params.top_p}, "
                    f"max_tokens={session.params.max_tokens}, seed={session.params.seed}")

    def finish(self, session: GenerationSession) -> None:
        """Record the outcome of a session and move it to history. Idempotent."""
        with self._lock:
            if self.active_sessions.pop(session.session_id, None) is None:
                return
            status = self.statuses.pop(session.session_id)
            if session.error:
                status.status = 'error'
            elif session.finish_reason == 'cancelled':
                status.status = 'cancelled'
            else:
                status.status = 'completed'
            status.tokens = session.token_count
            status.finish_reason = session.finish_reason
            status.error = session.error or (session.cancel_reason if status.status == 'cancelled' else None)
            status.completion_time = status.last_update = time.time()
            self.completed_sessions.append(status)
        logger.info(f"[{session.session_id}] Session {status.status}. Tokens: {status.tokens}, "
                    f"finish_reason={status.finish_reason}, duration={status.duration:.2f}s")

    def get(self, session_id: str) -> Optional[SessionStatus]:
        """Get session status, live or recently finished."""
        with self._lock:
            session = self.active_sessions.get(session_id)
            if session is not None:
                status = self.statuses[session_id]
                status.tokens = session.token_count
                status.last_update = time.time()
                return status
            for status in self.completed_sessions:
                if status.session_id == session_id:
                    return status
        return None

    def cancel(self, session_id: str, reason: str = 'cancelled by client') -> bool:
        """Cancel an in-flight session. Returns False if it is not running or already done."""
        with self._lock:
            session = self.active_sessions.get(session_id)
        if session is None:
            logger.debug(f"[{session_id}] Cancel requested for unknown or finished session.")
            return False
        return session.cancel(reason)

    def active_count(self) -> int:
        with self._lock:
            return len(self.active_sessions)

    def get_recent_sessions(self) -> List[SessionStatus]:
        """Get active sessions plus recently finished ones for display."""
        with self._lock:
            recent = []
            for session_id, session in self.active_sessions.items():
                status = self.statuses[session_id]
                status.tokens = session.token_count
                recent.append(status)
            recent.extend(self.completed_sessions)

        recent.sort(key=lambda s: s.start_time, reverse=True)
        return recent[:20]
