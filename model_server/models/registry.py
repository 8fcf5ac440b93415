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

"""Catalog of models and their runtime state."""
import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Set

from ..core.schemas import ModelDescriptor, ModelStatus
from ..errors import ConfigError, NotFound

logger = logging.getLogger(__name__)


class RegistryEntry:
    """State for one catalog model.

    Entries are only mutated by the lifecycle coordinator. `lock` serializes
    transitions for this model; `leases_cond` guards the set of sessions that
    still hold the runtime handle.
    """

    def __init__(self, descriptor: ModelDescriptor):
        self.descriptor = descriptor
        self.status = ModelStatus.UNLOADED
        self.failure_reason: Optional[str] = None
        self.handle: Any = None
        self.lock = threading.Lock()
        self.leases_cond = threading.Condition()
        self.leases: Set[Any] = set()

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def in_flight(self) -> int:
        with self.leases_cond:
            return len(self.leases)

    def to_dict(self, active: bool = False) -> Dict[str, Any]:
        return {
            'state': self.status.value,
            'active': active,
            'size_mb': self.descriptor.estimated_mb,
            'quantization': self.descriptor.quantization,
            'template': self.descriptor.template,
            'in_flight': self.in_flight,
            'reason': self.failure_reason,
        }


class ModelRegistry:
    """Maps model names to registry entries. The set of names is fixed at startup."""

    def __init__(self, descriptors: Iterable[ModelDescriptor]):
        self._entries: Dict[str, RegistryEntry] = {}
        for descriptor in descriptors:
            if descriptor.name in self._entries:
                raise ConfigError(f"Duplicate model name in catalog: {descriptor.name}")
            self._entries[descriptor.name] = RegistryEntry(descriptor)
        logger.info(f"Model registry initialized with {len(self._entries)} models: {sorted(self._entries)}")

    def get(self, name: str) -> RegistryEntry:
        entry = self._entries.get(name)
        if entry is None:
            raise NotFound(name)
        return entry

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def names(self) -> List[str]:
        return sorted(self._entries)

    def entries(self) -> List[RegistryEntry]:
        return [self._entries[name] for name in self.names()]

    def status_of(self, name: str) -> ModelStatus:
        return self.get(name).status
