"""Tests for the inference service: buffered and streaming paths over one engine."""
import pytest

from conftest import Worker, make_descriptor, wait_until
from model_server.core.schemas import GenerationRequest
from model_server.errors import GenerationError, NoActiveModel
from model_server.models.capacity import CapacityGuard
from model_server.models.lifecycle import LifecycleCoordinator
from model_server.models.registry import ModelRegistry

HELLO = dict(prompt='Hello', temperature=0.7, top_p=0.9, max_tokens=5, seed=200)


@pytest.fixture
def active_service(coordinator, service):
    coordinator.load('alpha')
    coordinator.set_active('alpha')
    return service


def stream_text(relay):
    events = list(relay.events())
    assert events[-1].terminal
    return ''.join(e.text for e in events if e.kind == 'token'), events[-1]


class TestBuffered:

    def test_same_seed_identical_output(self, active_service):
        first = active_service.infer(GenerationRequest(**HELLO))
        second = active_service.infer(GenerationRequest(**HELLO))
        assert first.text == second.text == 'abcde'
        assert first.model == 'alpha'
        assert first.tokens == 5
        assert first.finish_reason == 'length'
        assert first.session_id != second.session_id

    def test_no_active_model(self, service):
        with pytest.raises(NoActiveModel):
            service.infer(GenerationRequest(prompt='Hello'))
        assert service.tracker.active_count() == 0

    def test_generation_failure_raises(self, active_service, runtime, coordinator):
        runtime.fail_at_step = 1
        with pytest.raises(GenerationError) as exc:
            active_service.infer(GenerationRequest(**HELLO))
        assert 'malformed context' in exc.value.reason
        assert coordinator.registry.get('alpha').in_flight == 0

        recent = active_service.tracker.get_recent_sessions()
        assert recent[0].status == 'error'

    def test_lease_released_after_completion(self, active_service, coordinator):
        active_service.infer(GenerationRequest(**HELLO))
        assert coordinator.registry.get('alpha').in_flight == 0
        assert active_service.tracker.active_count() == 0

    def test_model_defaults_fill_missing_params(self, runtime, probe, make_service):
        registry = ModelRegistry([make_descriptor('alpha', max_tokens=3)])
        coordinator = LifecycleCoordinator(registry, runtime, CapacityGuard(probe))
        coordinator.load('alpha')
        coordinator.set_active('alpha')
        result = make_service(coordinator).infer(GenerationRequest(prompt='Hello'))
        assert result.text == 'abc'
        assert result.finish_reason == 'length'

    def test_chat_template_applied(self, runtime, probe, make_service):
        registry = ModelRegistry([make_descriptor('alpha', template='phi')])
        coordinator = LifecycleCoordinator(registry, runtime, CapacityGuard(probe))
        coordinator.load('alpha')
        coordinator.set_active('alpha')
        make_service(coordinator).infer(GenerationRequest(prompt='Hello', system_prompt='Be brief.'))
        assert runtime.prompts == ['Instruct: Be brief. Hello\nOutput:']


class TestStreaming:

    def test_streaming_matches_buffered(self, active_service):
        buffered = active_service.infer(GenerationRequest(**HELLO))
        streamed, terminal = stream_text(active_service.infer_stream(GenerationRequest(**HELLO)))
        assert streamed == buffered.text == 'abcde'
        assert terminal.kind == 'done'
        assert terminal.finish_reason == 'length'

    def test_stream_error_mid_generation(self, active_service, runtime, coordinator):
        runtime.fail_at_step = 2
        text, terminal = stream_text(active_service.infer_stream(GenerationRequest(**HELLO)))
        assert text == 'ab'
        assert terminal.kind == 'error'
        assert coordinator.registry.status_of('alpha').value == 'loaded'

    def test_stream_requires_active_model(self, service):
        with pytest.raises(NoActiveModel):
            service.infer_stream(GenerationRequest(prompt='Hello'))

    def test_abandoned_stream_releases_lease(self, active_service, coordinator):
        relay = active_service.infer_stream(GenerationRequest(**HELLO))
        assert coordinator.registry.get('alpha').in_flight == 1
        relay.close()
        assert coordinator.registry.get('alpha').in_flight == 0
        assert active_service.tracker.active_count() == 0

    def test_stream_session_tracked(self, active_service):
        relay = active_service.infer_stream(GenerationRequest(**HELLO))
        stream_text(relay)
        assert relay.join(2)
        status = active_service.tracker.get(relay.session_id)
        assert status.status == 'completed'
        assert status.tokens == 5


class TestSeededSampling:
    """Over a flat distribution the output depends only on the seed."""

    @pytest.fixture
    def sampling_service(self, make_coordinator, make_service, flat_runtime):
        coordinator = make_coordinator(flat_runtime)
        coordinator.load('alpha')
        coordinator.set_active('alpha')
        return make_service(coordinator)

    def request(self, seed):
        return GenerationRequest(prompt='Hello', temperature=1.0, top_p=1.0, max_tokens=16, seed=seed)

    def test_same_seed_same_text_buffered_and_streamed(self, sampling_service):
        first = sampling_service.infer(self.request(7)).text
        second = sampling_service.infer(self.request(7)).text
        streamed, terminal = stream_text(sampling_service.infer_stream(self.request(7)))

        assert len(first) == 16
        assert first == second == streamed
        assert terminal.finish_reason == 'length'

    def test_different_seed_different_text(self, sampling_service):
        assert sampling_service.infer(self.request(7)).text != sampling_service.infer(self.request(8)).text

    def test_unseeded_runs_vary(self, sampling_service):
        texts = {sampling_service.infer(self.request(None)).text for _ in range(3)}
        assert len(texts) > 1


class TestCancellation:

    def test_explicit_cancel_by_session_id(self, make_coordinator, make_service, gated_runtime):
        coordinator = make_coordinator(gated_runtime)
        service = make_service(coordinator)
        coordinator.load('alpha')
        coordinator.set_active('alpha')

        relay = service.infer_stream(GenerationRequest(**HELLO))
        events = relay.events()
        gated_runtime.release_steps(1)
        assert next(events).text == 'a'

        assert service.cancel(relay.session_id)
        gated_runtime.release_steps(5)
        rest = list(events)
        assert [e.kind for e in rest] == ['error']
        assert rest[0].error == 'cancelled by client'
        assert relay.join(2)
        assert service.tracker.get(relay.session_id).status == 'cancelled'
        assert not service.cancel(relay.session_id)

    def test_timeout_returns_partial_text(self, make_coordinator, make_service, gated_runtime):
        coordinator = make_coordinator(gated_runtime)
        service = make_service(coordinator, request_timeout=0.5)
        coordinator.load('alpha')
        coordinator.set_active('alpha')

        gated_runtime.release_steps(2)
        worker = Worker(service.infer, GenerationRequest(**HELLO))
        worker.start()
        wait_until(lambda: gated_runtime.steps_requested == 3)
        wait_until(lambda: all(s.cancelled for s in list(service.tracker.active_sessions.values())))
        gated_runtime.release_steps(3)

        result = worker.outcome()
        assert result.finish_reason == 'cancelled'
        assert result.text == 'abc'
        assert service.tracker.get(result.session_id).error == 'timeout'

    def test_timeout_ends_stream_with_error(self, make_coordinator, make_service, gated_runtime):
        coordinator = make_coordinator(gated_runtime)
        service = make_service(coordinator, request_timeout=0.2)
        coordinator.load('alpha')
        coordinator.set_active('alpha')

        relay = service.infer_stream(GenerationRequest(**HELLO))
        consumer = Worker(stream_text, relay)
        consumer.start()
        wait_until(lambda: relay.session.cancelled)
        gated_runtime.release_steps(5)

        _, terminal = consumer.outcome()
        assert terminal.kind == 'error'
        assert terminal.error == 'timeout'
