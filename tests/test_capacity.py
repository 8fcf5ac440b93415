"""Tests for the capacity guard."""
import pytest

from conftest import FakeProbe, make_descriptor
from model_server.models.capacity import PROBE_UNAVAILABLE, CapacityGuard
from model_server.utils.gpu_monitor import MB


class TestCapacityGuard:

    def test_fits_with_margin(self):
        guard = CapacityGuard(FakeProbe(free_mb=1000), safety_margin=0.1)
        decision = guard.check(make_descriptor('m', size_mb=900))
        assert decision.allowed
        assert decision.required_bytes == int(900 * MB * 1.1)

    def test_margin_pushes_over_free(self):
        guard = CapacityGuard(FakeProbe(free_mb=1000), safety_margin=0.2)
        decision = guard.check(make_descriptor('m', size_mb=900))
        assert not decision.allowed
        assert decision.reason.startswith('requires')

    def test_zero_margin_exact_fit(self):
        guard = CapacityGuard(FakeProbe(free_mb=500), safety_margin=0.0)
        assert guard.check(make_descriptor('m', size_mb=500)).allowed

    def test_pending_loads_are_reserved(self):
        guard = CapacityGuard(FakeProbe(free_mb=1000), safety_margin=0.0)
        descriptor = make_descriptor('m', size_mb=600)
        assert guard.check(descriptor).allowed
        assert not guard.check(descriptor, pending_bytes=600 * MB).allowed

    def test_probe_unavailable_fails_closed(self):
        probe = FakeProbe(free_mb=10 ** 6)
        probe.available = False
        decision = CapacityGuard(probe).check(make_descriptor('m', size_mb=1))
        assert not decision.allowed
        assert decision.reason == PROBE_UNAVAILABLE

    def test_unexpected_probe_error_fails_closed(self):
        class BrokenProbe(FakeProbe):
            def snapshot(self):
                raise OSError("driver crashed")

        decision = CapacityGuard(BrokenProbe()).check(make_descriptor('m'))
        assert not decision.allowed
        assert decision.reason == PROBE_UNAVAILABLE

    def test_negative_margin_rejected(self):
        with pytest.raises(ValueError):
            CapacityGuard(FakeProbe(), safety_margin=-0.1)
