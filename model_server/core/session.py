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

"""Per-request generation state."""
import logging
import threading
import time
import uuid
from typing import Any, Optional

from .schemas import SamplingParams

logger = logging.getLogger(__name__)


class GenerationSession:
    """One generation call, from binding to the active model until it exits.

    The session owns a lease on the model handle it was bound to, so switching
    or unloading the active model never pulls the handle out from under it.
    Cancellation is a flag checked by the engine between steps.
    """

    def __init__(self, lease: Any, params: SamplingParams, session_id: Optional[str] = None):
        self.session_id = session_id or str(uuid.uuid4())
        self.lease = lease
        self.params = params
        self.token_count = 0
        self.finish_reason: Optional[str] = None
        self.error: Optional[str] = None
        self.start_time = time.time()
        self._cancel_reason: Optional[str] = None
        self._cancelled = threading.Event()
        self._timer: Optional[threading.Timer] = None
        self._closed = False
        self._completed = False
        self._lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return self.lease.name

    @property
    def handle(self) -> Any:
        return self.lease.handle

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled_locked()

    def _cancelled_locked(self) -> bool:
        # A revocation that lands after completion does not count
        return self._cancelled.is_set() or (self.lease.revoked.is_set() and not self._completed)

    @property
    def cancel_reason(self) -> Optional[str]:
        if self._cancel_reason:
            return self._cancel_reason
        if self.cancelled:
            return 'model unloaded'
        return None

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def closed(self) -> bool:
        return self._closed

    def complete(self, finish_reason: str) -> bool:
        """Mark generation as having ended normally.

        Completion and cancellation exclude each other: returns False (and
        records 'cancelled') if a cancel got in first. Calling it again after a
        successful completion keeps the first finish reason.
        """
        with self._lock:
            if self._completed:
                return True
            if self._cancelled_locked():
                self.finish_reason = 'cancelled'
                return False
            self._completed = True
            self.finish_reason = finish_reason
            return True

    def cancel(self, reason: str = 'cancelled') -> bool:
        """Request cooperative cancellation.

        Returns False if the session is already cancelled or has completed.
        """
        with self._lock:
            if self._cancelled.is_set() or self._completed:
                return False
            self._cancel_reason = reason
            self._cancelled.set()
        logger.info(f"[{self.session_id}] Cancellation requested: {reason}")
        return True

    def arm_timeout(self, seconds: Optional[float]) -> None:
        """Cancel the session after `seconds`; a falsy value disables the timeout."""
        if not seconds or seconds <= 0:
            return
        self._timer = threading.Timer(seconds, self.cancel, kwargs={'reason': 'timeout'})
        self._timer.daemon = True
        self._timer.start()

    def close(self) -> None:
        """Drop the handle reference. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        self.lease.release()
