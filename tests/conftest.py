"""Shared fixtures: a scripted in-memory runtime, a settable memory probe and app wiring."""
import json
import threading
import time
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pytest

from model_server.config import ServerConfig
from model_server.core.engine import GenerationEngine
from model_server.core.schemas import ModelDescriptor, SamplingDefaults
from model_server.core.service import InferenceService
from model_server.core.session_tracker import SessionTracker
from model_server.main import create_app
from model_server.models.capacity import CapacityGuard
from model_server.models.lifecycle import LifecycleCoordinator
from model_server.models.registry import ModelRegistry
from model_server.runtime.base import InferenceRuntime
from model_server.utils.gpu_monitor import MB, MemoryProbe, MemorySnapshot, ProbeUnavailable

BOS_ID = 0
EOS_ID = 1
GATE_TIMEOUT = 5.0


class FakeHandle:
    def __init__(self, name: str):
        self.name = name
        self.released = False


class FakeRuntime(InferenceRuntime):
    """Deterministic runtime that emits a fixed script of tokens, then EOS.

    Every step returns one-hot logits, so sampling always picks the scripted
    token regardless of temperature, top_p or seed. Script items may be str or
    raw bytes (to exercise partial UTF-8 sequences).
    """

    def __init__(self, script: Sequence[Union[str, bytes]] = ('a', 'b', 'c', 'd', 'e'), gated: bool = False):
        self.vocab: Dict[int, bytes] = {}
        self.ids: List[int] = []
        for item in script:
            piece = item.encode('utf-8') if isinstance(item, str) else item
            token_id = next((i for i, p in self.vocab.items() if p == piece), None)
            if token_id is None:
                token_id = len(self.vocab) + 2
                self.vocab[token_id] = piece
            self.ids.append(token_id)
        self.vocab_size = len(self.vocab) + 2

        self.fail_load: Dict[str, str] = {}
        self.fail_at_step: Optional[int] = None
        self.load_gate = threading.Event()
        self.load_gate.set()
        self.load_started = threading.Event()
        self.step_semaphore = threading.Semaphore(0) if gated else None
        self.steps_requested = 0
        self.steps_taken = 0
        self.prompts: List[str] = []
        self.loaded: List[str] = []
        self.unloaded: List[str] = []
        self._lock = threading.Lock()

    def release_steps(self, n: int = 1) -> None:
        for _ in range(n):
            self.step_semaphore.release()

    def load(self, descriptor: ModelDescriptor) -> FakeHandle:
        self.load_started.set()
        assert self.load_gate.wait(GATE_TIMEOUT), "load gate never opened"
        if descriptor.name in self.fail_load:
            raise RuntimeError(self.fail_load[descriptor.name])
        with self._lock:
            self.loaded.append(descriptor.name)
        return FakeHandle(descriptor.name)

    def unload(self, handle: FakeHandle) -> None:
        handle.released = True
        with self._lock:
            self.unloaded.append(handle.name)

    def next_token_distribution(self, handle: FakeHandle, context: Sequence[int]) -> np.ndarray:
        with self._lock:
            self.steps_requested += 1
        if self.step_semaphore is not None:
            assert self.step_semaphore.acquire(timeout=GATE_TIMEOUT), "step gate never opened"
        if handle.released:
            raise RuntimeError(f"handle for '{handle.name}' used after release")
        step = len(context) - 1
        with self._lock:
            self.steps_taken += 1
        if self.fail_at_step is not None and step == self.fail_at_step:
            raise RuntimeError("malformed context")
        logits = np.full(self.vocab_size, -np.inf)
        logits[self.ids[step] if step < len(self.ids) else EOS_ID] = 0.0
        return logits

    def encode(self, handle: FakeHandle, text: str) -> List[int]:
        self.prompts.append(text)
        return [BOS_ID]

    def decode(self, handle: FakeHandle, token_ids: Sequence[int]) -> str:
        return b''.join(self.vocab[i] for i in token_ids).decode('utf-8', errors='replace')

    def eos_token_ids(self, handle: FakeHandle):
        return frozenset({EOS_ID})


class FlatRuntime(FakeRuntime):
    """Every letter of the alphabet is equally likely at every step and EOS never is.

    Output is decided entirely by the sampler's seed, so it exercises seeded
    reproducibility where the scripted runtime cannot.
    """

    def __init__(self, alphabet: str = 'abcdefgh'):
        super().__init__(script=tuple(alphabet))

    def next_token_distribution(self, handle: FakeHandle, context: Sequence[int]) -> np.ndarray:
        if handle.released:
            raise RuntimeError(f"handle for '{handle.name}' used after release")
        with self._lock:
            self.steps_requested += 1
            self.steps_taken += 1
        logits = np.zeros(self.vocab_size)
        logits[[BOS_ID, EOS_ID]] = -np.inf
        return logits


class FakeProbe(MemoryProbe):
    """Reports a settable amount of free memory, or fails when unavailable."""

    def __init__(self, free_mb: int = 4096, total_mb: int = 8192):
        self.free_mb = free_mb
        self.total_mb = total_mb
        self.available = True

    def snapshot(self) -> MemorySnapshot:
        if not self.available:
            raise ProbeUnavailable("device not present")
        return MemorySnapshot(device='fake', free_bytes=self.free_mb * MB, total_bytes=self.total_mb * MB)


def make_descriptor(name: str, size_mb: int = 100, template: str = 'raw', **defaults) -> ModelDescriptor:
    return ModelDescriptor(name=name, source=f"/models/{name}.gguf", estimated_bytes=size_mb * MB,
                           template=template, defaults=SamplingDefaults(**defaults))


def wait_until(predicate, timeout=5.0, interval=0.005):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(interval)
    raise AssertionError("condition not reached in time")


class Worker(threading.Thread):
    """Runs a callable on a thread and keeps its result or exception."""

    def __init__(self, fn, *args):
        super().__init__(daemon=True)
        self.fn = fn
        self.args = args
        self.result = None
        self.error = None

    def run(self):
        try:
            self.result = self.fn(*self.args)
        except Exception as e:
            self.error = e

    def outcome(self, timeout=5.0):
        self.join(timeout)
        assert not self.is_alive(), "worker did not finish"
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def gated_runtime():
    return FakeRuntime(gated=True)


@pytest.fixture
def flat_runtime():
    return FlatRuntime()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def descriptors():
    return [make_descriptor('alpha'), make_descriptor('beta', size_mb=200), make_descriptor('gamma', size_mb=300)]


@pytest.fixture
def make_coordinator(descriptors, probe):
    def _make(runtime, unload_policy='drain', safety_margin=0.1):
        registry = ModelRegistry(descriptors)
        return LifecycleCoordinator(registry, runtime, CapacityGuard(probe, safety_margin), unload_policy)
    return _make


@pytest.fixture
def coordinator(make_coordinator, runtime):
    return make_coordinator(runtime)


@pytest.fixture
def make_service():
    def _make(coordinator, relay_buffer=100, request_timeout=0):
        return InferenceService(coordinator, GenerationEngine(coordinator.runtime), SessionTracker(),
                                relay_buffer=relay_buffer, request_timeout=request_timeout)
    return _make


@pytest.fixture
def service(make_service, coordinator):
    return make_service(coordinator)


@pytest.fixture
def catalog_file(tmp_path):
    catalog = {
        'models': {
            'alpha': {'path': 'alpha.gguf', 'size_mb': 100, 'quantization': 'Q4_K_M', 'template': 'raw'},
            'beta': {'repo': 'org/beta-GGUF', 'file': 'beta.Q8_0.gguf', 'size_mb': 200,
                     'template': 'llama3', 'defaults': {'temperature': 0.5, 'max_tokens': 64}},
        }
    }
    path = tmp_path / 'models.json'
    path.write_text(json.dumps(catalog))
    return path


@pytest.fixture
def server_config(tmp_path, catalog_file):
    return ServerConfig(models_config=catalog_file, log_dir=tmp_path / 'logs', host='127.0.0.1',
                        port=8081, debug=False)


@pytest.fixture
def app(server_config, runtime, probe):
    app = create_app(server_config, runtime=runtime, probe=probe)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()
