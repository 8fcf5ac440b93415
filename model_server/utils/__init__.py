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

"""Logging setup and accelerator-memory probes."""

from .gpu_monitor import (
    GPUMemoryProbe, HostMemoryProbe, MemoryProbe, MemorySnapshot, ProbeUnavailable,
    create_probe, safe_snapshot
)
from .logging import setup_logging

__all__ = [
    'GPUMemoryProbe',
    'HostMemoryProbe',
    'MemoryProbe',
    'MemorySnapshot',
    'ProbeUnavailable',
    'create_probe',
    'safe_snapshot',
    'setup_logging',
]
