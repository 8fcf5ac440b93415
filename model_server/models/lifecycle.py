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

"""Model lifecycle: load, unload and the active-model marker.

All registry mutation goes through LifecycleCoordinator. Transitions for one
model are serialized by that entry's lock, which is only held for the state
check and the state write; slow work (runtime load, draining sessions) runs
with the entry parked in LOADING or UNLOADING so that competing requests are
rejected rather than queued.

Lock order: entry.lock -> capacity lock -> active lock -> entry.leases_cond.
"""
import logging
import threading
from typing import Any, Dict, Optional

from .capacity import CapacityGuard
from .registry import ModelRegistry, RegistryEntry
from ..core.schemas import ActiveModel, ModelDescriptor, ModelStatus
from ..errors import (
    AlreadyLoaded, AlreadyLoading, CapacityDenied, LoadFailed, ModelBusy,
    NoActiveModel, NotLoaded, StateConflict
)
from ..runtime.base import InferenceRuntime

logger = logging.getLogger(__name__)

UNLOAD_DRAIN = 'drain'
UNLOAD_CANCEL = 'cancel'
UNLOAD_POLICIES = (UNLOAD_DRAIN, UNLOAD_CANCEL)


class ModelLease:
    """A session's claim on a loaded model's runtime handle.

    The handle is not released while any lease on it is outstanding. A lease
    is revoked (not released) when an unload asks in-flight sessions to stop.
    """

    def __init__(self, coordinator: 'LifecycleCoordinator', entry: RegistryEntry):
        self._coordinator = coordinator
        self._entry = entry
        self.name = entry.name
        self.descriptor: ModelDescriptor = entry.descriptor
        self.handle: Any = entry.handle
        self.revoked = threading.Event()
        self._released = False
        self._lock = threading.Lock()

    def revoke(self) -> None:
        self.revoked.set()

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._coordinator._release(self._entry, self)

    def __enter__(self) -> 'ModelLease':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class LifecycleCoordinator:
    """Single writer for the model registry and the active-model marker."""

    def __init__(self, registry: ModelRegistry, runtime: InferenceRuntime,
                 capacity_guard: CapacityGuard, unload_policy: str = UNLOAD_DRAIN):
        if unload_policy not in UNLOAD_POLICIES:
            raise ValueError(f"unload_policy must be one of {UNLOAD_POLICIES}, got {unload_policy!r}")
        self.registry = registry
        self.runtime = runtime
        self.capacity_guard = capacity_guard
        self.unload_policy = unload_policy
        self._active: Optional[ActiveModel] = None
        self._active_lock = threading.Lock()
        self._capacity_lock = threading.Lock()

    @property
    def active(self) -> Optional[ActiveModel]:
        """Current active-model snapshot. Never mutated in place."""
        return self._active

    @property
    def active_name(self) -> Optional[str]:
        active = self._active
        return active.name if active else None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def load(self, name: str) -> ModelStatus:
        """Unloaded -> Loading -> Loaded, gated by the capacity guard."""
        entry = self.registry.get(name)
        descriptor = entry.descriptor

        with entry.lock:
            if entry.status is ModelStatus.FAILED:
                self._acknowledge_locked(entry)
            if entry.status is ModelStatus.LOADING:
                raise AlreadyLoading(name)
            if entry.status is ModelStatus.LOADED:
                raise AlreadyLoaded(name)
            if entry.status is ModelStatus.UNLOADING:
                raise ModelBusy(name, entry.status.value)

            with self._capacity_lock:
                decision = self.capacity_guard.check(descriptor, self._pending_bytes())
                if not decision.allowed:
                    raise CapacityDenied(name, decision.reason)
                entry.status = ModelStatus.LOADING

        logger.info(f"Loading model '{name}' from {descriptor.source}")
        try:
            handle = self.runtime.load(descriptor)
        except Exception as e:
            reason = str(e) or type(e).__name__
            logger.exception(f"Model '{name}' failed to load")
            with entry.lock:
                entry.status = ModelStatus.FAILED
                entry.failure_reason = reason
            raise LoadFailed(name, reason) from e

        with entry.lock:
            entry.handle = handle
            entry.failure_reason = None
            entry.status = ModelStatus.LOADED
        logger.info(f"Model '{name}' loaded")
        return ModelStatus.LOADED

    def set_active(self, name: str) -> ActiveModel:
        """Point the active marker at a loaded model, replacing any previous holder."""
        entry = self.registry.get(name)
        with entry.lock:
            if entry.status is not ModelStatus.LOADED:
                raise NotLoaded(name, entry.status.value)
            with self._active_lock:
                previous = self._active
                self._active = ActiveModel(name=name, descriptor=entry.descriptor)
                current = self._active

        if previous is None or previous.name != name:
            logger.info(f"Active model switched from {previous.name if previous else None!r} to '{name}'")
        return current

    def unload(self, name: str, policy: Optional[str] = None) -> ModelStatus:
        """Loaded -> Unloading -> Unloaded.

        The active marker is cleared before anything else, so no new session can
        bind to the model. The handle is released once every session holding it
        has exited; with the `cancel` policy those sessions are asked to stop first.
        """
        policy = policy or self.unload_policy
        entry = self.registry.get(name)

        with entry.lock:
            if entry.status is ModelStatus.FAILED:
                self._acknowledge_locked(entry)
                return ModelStatus.UNLOADED
            if entry.status is not ModelStatus.LOADED:
                raise NotLoaded(name, entry.status.value)
            entry.status = ModelStatus.UNLOADING
            with self._active_lock:
                if self._active is not None and self._active.name == name:
                    self._active = None
                    logger.info(f"Cleared active marker for '{name}'")

        with entry.leases_cond:
            leases = list(entry.leases)
        if leases:
            if policy == UNLOAD_CANCEL:
                logger.info(f"Cancelling {len(leases)} in-flight sessions on '{name}'")
                for lease in leases:
                    lease.revoke()
            else:
                logger.info(f"Waiting for {len(leases)} in-flight sessions on '{name}' to finish")
        with entry.leases_cond:
            entry.leases_cond.wait_for(lambda: not entry.leases)

        try:
            self.runtime.unload(entry.handle)
        except Exception:
            logger.exception(f"Runtime failed to release '{name}'; dropping handle")

        with entry.lock:
            entry.handle = None
            entry.status = ModelStatus.UNLOADED
        logger.info(f"Model '{name}' unloaded")
        return ModelStatus.UNLOADED

    def acknowledge(self, name: str) -> ModelStatus:
        """Failed -> Unloaded."""
        entry = self.registry.get(name)
        with entry.lock:
            if entry.status is not ModelStatus.FAILED:
                raise StateConflict(f"Model '{name}' has no failure to acknowledge "
                                    f"(state: {entry.status.value})", name)
            self._acknowledge_locked(entry)
        return ModelStatus.UNLOADED

    def _acknowledge_locked(self, entry: RegistryEntry) -> None:
        logger.info(f"Acknowledged load failure of '{entry.name}': {entry.failure_reason}")
        entry.failure_reason = None
        entry.handle = None
        entry.status = ModelStatus.UNLOADED

    def _pending_bytes(self) -> int:
        return sum(self.capacity_guard.required_bytes(e.descriptor)
                   for e in self.registry.entries() if e.status is ModelStatus.LOADING)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def acquire_active(self) -> ModelLease:
        """Bind to the active model, taking a lease on its handle."""
        with self._active_lock:
            active = self._active
            if active is None:
                raise NoActiveModel()
            entry = self.registry.get(active.name)
            lease = ModelLease(self, entry)
            with entry.leases_cond:
                entry.leases.add(lease)
        return lease

    def _release(self, entry: RegistryEntry, lease: ModelLease) -> None:
        with entry.leases_cond:
            entry.leases.discard(lease)
            entry.leases_cond.notify_all()

    # ------------------------------------------------------------------
    # Introspection and teardown
    # ------------------------------------------------------------------

    def list_models(self) -> Dict[str, Any]:
        active = self.active_name
        return {
            'models': {entry.name: entry.to_dict(active=entry.name == active)
                       for entry in self.registry.entries()},
            'active': active,
        }

    def shutdown(self) -> None:
        """Unload every loaded model, cancelling sessions still running on them."""
        for entry in self.registry.entries():
            if entry.status is ModelStatus.LOADED:
                try:
                    self.unload(entry.name, policy=UNLOAD_CANCEL)
                except StateConflict as e:
                    logger.warning(f"Skipping '{entry.name}' during shutdown: {e}")
