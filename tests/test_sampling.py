"""Tests for temperature / top-p sampling."""
import numpy as np
import pytest

from model_server.core.sampling import make_rng, sample_token, top_p_filter


def draw(logits, temperature=1.0, top_p=1.0, seed=0, n=50):
    rng = make_rng(seed)
    return [sample_token(logits, temperature, top_p, rng) for _ in range(n)]


class TestTopPFilter:

    def test_keeps_smallest_covering_nucleus(self):
        ids, weights = top_p_filter(np.array([0.1, 0.6, 0.3]), 0.8)
        assert list(ids) == [1, 2]
        assert weights.sum() == pytest.approx(1.0)
        assert weights[0] == pytest.approx(0.6 / 0.9)

    def test_top_p_one_keeps_everything(self):
        ids, _ = top_p_filter(np.array([0.25, 0.25, 0.5]), 1.0)
        assert sorted(ids) == [0, 1, 2]

    def test_tiny_top_p_keeps_argmax(self):
        ids, weights = top_p_filter(np.array([0.2, 0.5, 0.3]), 0.01)
        assert list(ids) == [1]
        assert list(weights) == [1.0]


class TestSampleToken:

    def test_same_seed_same_sequence(self):
        logits = np.log(np.array([0.2, 0.3, 0.5]))
        assert draw(logits, seed=200) == draw(logits, seed=200)

    def test_different_seeds_diverge(self):
        logits = np.zeros(50)
        assert draw(logits, seed=1) != draw(logits, seed=2)

    def test_one_hot_is_deterministic(self):
        logits = np.full(10, -np.inf)
        logits[7] = 0.0
        assert set(draw(logits, seed=None)) == {7}

    def test_low_temperature_concentrates_on_argmax(self):
        logits = np.array([1.0, 2.0, 1.5])
        assert set(draw(logits, temperature=0.01)) == {1}

    def test_top_p_excludes_tail(self):
        logits = np.log(np.array([0.05, 0.05, 0.9]))
        assert set(draw(logits, top_p=0.5, n=200)) == {2}

    def test_samples_stay_in_vocabulary(self):
        logits = np.random.default_rng(3).normal(size=32)
        assert all(0 <= t < 32 for t in draw(logits, n=200))

    @pytest.mark.parametrize('logits', [[], [float('nan'), 0.0], [-np.inf, -np.inf]])
    def test_degenerate_distributions_raise(self, logits):
        with pytest.raises(ValueError):
            sample_token(np.array(logits, dtype=float), 1.0, 1.0, make_rng(0))
