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

"""Boundary between the server and the library that owns weights and tensor math."""
from abc import ABC, abstractmethod
from typing import Any, FrozenSet, List, Sequence

import numpy as np

from ..core.schemas import ModelDescriptor


class InferenceRuntime(ABC):
    """Loads models and computes next-token distributions.

    Handles returned by `load` are opaque to the server. A handle may be read by
    any number of sessions at once; implementations serialize internally where
    the underlying library needs it.
    """

    @abstractmethod
    def load(self, descriptor: ModelDescriptor) -> Any:
        """Load weights and return a handle. Must release partial resources on failure."""
        pass

    @abstractmethod
    def unload(self, handle: Any) -> None:
        """Release the memory held by a handle."""
        pass

    @abstractmethod
    def next_token_distribution(self, handle: Any, context: Sequence[int]) -> np.ndarray:
        """Return logits over the vocabulary for the token following `context`."""
        pass

    @abstractmethod
    def encode(self, handle: Any, text: str) -> List[int]:
        pass

    @abstractmethod
    def decode(self, handle: Any, token_ids: Sequence[int]) -> str:
        pass

    @abstractmethod
    def eos_token_ids(self, handle: Any) -> FrozenSet[int]:
        pass
