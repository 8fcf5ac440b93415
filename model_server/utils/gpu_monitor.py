"""
Accelerator memory probes used by the capacity guard.
Supports NVIDIA GPUs with nvidia-ml-py integration and host RAM via psutil.
"""

import logging
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

import psutil

logger = logging.getLogger(__name__)

MB = 1024 * 1024


class ProbeUnavailable(RuntimeError):
    """Raised when free memory cannot be determined."""


@dataclass(frozen=True)
class MemorySnapshot:
    """Point-in-time memory reading for one device."""
    device: str
    free_bytes: int
    total_bytes: int

    @property
    def used_bytes(self) -> int:
        return max(self.total_bytes - self.free_bytes, 0)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['usage'] = f"{self.used_bytes // MB}/{self.total_bytes // MB} MB"
        return data


class MemoryProbe(ABC):
    """Source of free-memory readings for the device models are loaded onto."""

    @abstractmethod
    def snapshot(self) -> MemorySnapshot:
        """Read current memory. Raises ProbeUnavailable on any failure."""

    def free_bytes(self) -> int:
        return self.snapshot().free_bytes


class GPUMemoryProbe(MemoryProbe):
    """Free VRAM on one NVIDIA GPU, via NVML with an nvidia-smi fallback."""

    def __init__(self, gpu_index: int = 0):
        self.gpu_index = gpu_index
        self._lock = threading.Lock()
        self.nvidia_ml_available = self._init_nvidia_ml()

    def _init_nvidia_ml(self) -> bool:
        """Try to initialize nvidia-ml-py for better performance."""
        try:
            import pynvml
            pynvml.nvmlInit()
            self.pynvml = pynvml
            logger.info("nvidia-ml-py initialized successfully")
            return True
        except ImportError:
            logger.warning("pynvml not available, falling back to nvidia-smi")
            return False
        except Exception as e:
            logger.warning(f"Failed to initialize pynvml: {e}, falling back to nvidia-smi")
            return False

    def _snapshot_nvidia_ml(self) -> MemorySnapshot:
        with self._lock:
            handle = self.pynvml.nvmlDeviceGetHandleByIndex(self.gpu_index)
            mem_info = self.pynvml.nvmlDeviceGetMemoryInfo(handle)
        return MemorySnapshot(device=f"cuda:{self.gpu_index}",
                              free_bytes=int(mem_info.free),
                              total_bytes=int(mem_info.total))

    def _snapshot_nvidia_smi(self) -> MemorySnapshot:
        cmd = [
            'nvidia-smi',
            f'--id={self.gpu_index}',
            '--query-gpu=memory.free,memory.total',
            '--format=csv,noheader,nounits'
        ]
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=5)
        if result.returncode != 0:
            raise ProbeUnavailable(f"nvidia-smi failed: {result.stderr.strip()}")

        line = result.stdout.strip().split('\n')[0]
        parts = [p.strip() for p in line.split(',')]
        if len(parts) < 2:
            raise ProbeUnavailable(f"Unexpected nvidia-smi output: {line!r}")
        free_mb, total_mb = int(float(parts[0])), int(float(parts[1]))
        return MemorySnapshot(device=f"cuda:{self.gpu_index}",
                              free_bytes=free_mb * MB,
                              total_bytes=total_mb * MB)

    def snapshot(self) -> MemorySnapshot:
        try:
            if self.nvidia_ml_available:
                return self._snapshot_nvidia_ml()
            return self._snapshot_nvidia_smi()
        except ProbeUnavailable:
            raise
        except Exception as e:
            raise ProbeUnavailable(f"GPU {self.gpu_index} memory query failed: {e}") from e


class HostMemoryProbe(MemoryProbe):
    """Available system RAM, for CPU-only inference."""

    def snapshot(self) -> MemorySnapshot:
        try:
            vm = psutil.virtual_memory()
        except Exception as e:
            raise ProbeUnavailable(f"Host memory query failed: {e}") from e
        return MemorySnapshot(device='cpu', free_bytes=int(vm.available), total_bytes=int(vm.total))


def create_probe(device: str, gpu_index: int = 0) -> MemoryProbe:
    """Pick the probe matching the device models are loaded onto."""
    if device == 'cpu':
        return HostMemoryProbe()
    return GPUMemoryProbe(gpu_index)


def safe_snapshot(probe: MemoryProbe) -> Optional[Dict[str, Any]]:
    """Snapshot for display purposes; None when the probe is unavailable."""
    try:
        return probe.snapshot().to_dict()
    except ProbeUnavailable as e:
        logger.debug(f"Memory snapshot unavailable: {e}")
        return None
