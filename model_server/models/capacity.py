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

"""Memory admission check for model loads."""
import logging
from dataclasses import dataclass
from typing import Optional

from ..core.schemas import ModelDescriptor
from ..utils.gpu_monitor import MemoryProbe, ProbeUnavailable, MB

logger = logging.getLogger(__name__)

PROBE_UNAVAILABLE = "probe unavailable"


@dataclass(frozen=True)
class CapacityDecision:
    """Outcome of a capacity check."""
    allowed: bool
    reason: Optional[str] = None
    required_bytes: int = 0
    free_bytes: Optional[int] = None

    @classmethod
    def allow(cls, required_bytes: int, free_bytes: int) -> 'CapacityDecision':
        return cls(True, None, required_bytes, free_bytes)

    @classmethod
    def deny(cls, reason: str, required_bytes: int = 0, free_bytes: Optional[int] = None) -> 'CapacityDecision':
        return cls(False, reason, required_bytes, free_bytes)


class CapacityGuard:
    """Compares a model's estimated footprint against probed free memory.

    The check never mutates anything. It fails closed: if the probe cannot
    report free memory the load is denied.
    """

    def __init__(self, probe: MemoryProbe, safety_margin: float = 0.1):
        if safety_margin < 0:
            raise ValueError(f"safety_margin must be non-negative, got {safety_margin}")
        self.probe = probe
        self.safety_margin = safety_margin

    def required_bytes(self, descriptor: ModelDescriptor) -> int:
        return int(descriptor.estimated_bytes * (1 + self.safety_margin))

    def check(self, descriptor: ModelDescriptor, pending_bytes: int = 0) -> CapacityDecision:
        """Decide whether `descriptor` fits.

        Args:
            descriptor: model about to be loaded
            pending_bytes: estimated cost of other loads still in progress, which
                the probe cannot see yet
        """
        required = self.required_bytes(descriptor)
        try:
            free = self.probe.free_bytes()
        except ProbeUnavailable as e:
            logger.warning(f"Capacity check for '{descriptor.name}' denied: {e}")
            return CapacityDecision.deny(PROBE_UNAVAILABLE, required)
        except Exception:
            logger.exception(f"Memory probe raised unexpectedly while checking '{descriptor.name}'")
            return CapacityDecision.deny(PROBE_UNAVAILABLE, required)

        available = free - pending_bytes
        if required > available:
            reason = (f"requires {required // MB} MB (estimate {descriptor.estimated_mb} MB "
                      f"+ {self.safety_margin:.0%} margin), only {max(available, 0) // MB} MB free")
            logger.warning(f"Capacity check for '{descriptor.name}' denied: {reason}")
            return CapacityDecision.deny(reason, required, free)

        logger.info(f"Capacity check for '{descriptor.name}' passed: "
                    f"{required // MB} MB required, {available // MB} MB free")
        return CapacityDecision.allow(required, free)
