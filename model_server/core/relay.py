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

"""Hand-off of generated tokens from a producer thread to a response writer.

The producer thread runs the engine and pushes framed events into a bounded
queue; the HTTP response generator pops them. When the queue is full the
producer blocks, so a slow client slows generation instead of growing memory.
Every relay ends with exactly one terminal event: `done` or `error`.
"""
import json
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from .schemas import Token
from .session import GenerationSession

logger = logging.getLogger(__name__)

TOKEN = 'token'
DONE = 'done'
ERROR = 'error'


@dataclass(frozen=True)
class RelayEvent:
    kind: str
    text: str = ''
    finish_reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.kind != TOKEN

    @classmethod
    def token(cls, text: str) -> 'RelayEvent':
        return cls(TOKEN, text=text)

    @classmethod
    def done(cls, finish_reason: str) -> 'RelayEvent':
        return cls(DONE, finish_reason=finish_reason)

    @classmethod
    def failure(cls, error: str) -> 'RelayEvent':
        return cls(ERROR, error=error)

    def to_sse(self) -> str:
        """Frame the event for a text/event-stream response."""
        if self.kind == TOKEN:
            return f"data: {json.dumps({'text': self.text})}\n\n"
        if self.kind == DONE:
            return "data: [DONE]\n\n"
        return f"event: error\ndata: {json.dumps({'error': self.error})}\n\n"


class StreamRelay:
    """Bridges one session's token iterator to one consumer.

    Args:
        session: the session being relayed; cancelled when the consumer goes away
        tokens: the engine's token iterator for that session
        maxsize: capacity of the hand-off queue
        on_abandon: cleanup to run if the consumer closes before the relay starts
        poll_interval: how often a blocked producer re-checks for cancellation
    """

    def __init__(self, session: GenerationSession, tokens: Iterator[Token], maxsize: int = 100,
                 on_abandon: Optional[Callable[[], None]] = None, poll_interval: float = 0.05):
        if maxsize < 1:
            raise ValueError(f"maxsize must be at least 1, got {maxsize}")
        self.session = session
        self.terminal: Optional[RelayEvent] = None
        self._tokens = tokens
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._on_abandon = on_abandon
        self._poll_interval = poll_interval
        self._consumer_gone = threading.Event()
        self._start_lock = threading.Lock()
        self._started = False
        self._thread = threading.Thread(target=self._produce, name=f"relay-{session.session_id[:8]}",
                                        daemon=True)

    @property
    def session_id(self) -> str:
        return self.session.session_id

    def start(self) -> 'StreamRelay':
        with self._start_lock:
            if not self._started and not self._consumer_gone.is_set():
                self._started = True
                self._thread.start()
        return self

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the producer to exit. Returns True if it has."""
        if self._started:
            self._thread.join(timeout)
            return not self._thread.is_alive()
        return True

    def _put(self, event: RelayEvent, abort_on_cancel: bool) -> bool:
        while True:
            if self._consumer_gone.is_set():
                return False
            if abort_on_cancel and self.session.cancelled:
                return False
            try:
                self._queue.put(event, timeout=self._poll_interval)
                return True
            except queue.Full:
                continue

    def _produce(self) -> None:
        sid = self.session_id
        terminal: Optional[RelayEvent] = None
        try:
            for token in self._tokens:
                if token.is_error:
                    terminal = RelayEvent.failure(token.error)
                    break
                if not self._put(RelayEvent.token(token.text), abort_on_cancel=True):
                    break
        except Exception as e:
            logger.exception(f"[{sid}] Token iterator raised")
            terminal = RelayEvent.failure(str(e) or type(e).__name__)
        finally:
            close = getattr(self._tokens, 'close', None)
            if close is not None:
                close()

        if terminal is None:
            # complete() decides between done and error atomically with any cancel
            if self.session.complete(self.session.finish_reason or 'stop'):
                terminal = RelayEvent.done(self.session.finish_reason)
            else:
                terminal = RelayEvent.failure(self.session.cancel_reason or 'cancelled')
        self.terminal = terminal
        if not self._put(terminal, abort_on_cancel=False):
            logger.info(f"[{sid}] Consumer gone before terminal event ({terminal.kind})")

    def _discarding(self) -> bool:
        # A cancelled session never completes, so its stream ends in an error event
        return self.session.cancelled

    def events(self) -> Iterator[RelayEvent]:
        """Consume events in generation order, ending with one terminal event.

        Closing this iterator early counts as a client disconnect.
        """
        self.start()
        finished = False
        try:
            while True:
                event = self._queue.get()
                if event.kind == TOKEN and self._discarding():
                    continue
                yield event
                if event.terminal:
                    finished = True
                    return
        finally:
            if not finished:
                self.close()

    def close(self) -> None:
        """Detach the consumer. Cancels the session unless the stream already ended."""
        if self._consumer_gone.is_set():
            return
        # Producer must never observe a gone consumer on an uncancelled session
        if self.terminal is None:
            self.session.cancel('client disconnected')
        self._consumer_gone.set()
        with self._start_lock:
            started = self._started
        if not started and self._on_abandon is not None:
            self._on_abandon()
