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

"""Temperature / nucleus (top-p) sampling over next-token logits."""
from typing import Optional

import numpy as np


def make_rng(seed: Optional[int]) -> np.random.Generator:
    """Seeded generator when a seed is given, fresh OS entropy otherwise."""
    return np.random.default_rng(seed)


def top_p_filter(probs: np.ndarray, top_p: float):
    """Return (token ids, renormalized probabilities) of the smallest nucleus covering top_p."""
    order = np.argsort(-probs, kind='stable')
    sorted_probs = probs[order]
    cumulative = np.cumsum(sorted_probs)
    cutoff = min(int(np.searchsorted(cumulative, top_p, side='left')) + 1, len(order))
    kept = sorted_probs[:cutoff]
    return order[:cutoff], kept / kept.sum()


def sample_token(logits, temperature: float, top_p: float, rng: np.random.Generator) -> int:
    """Draw one token id from logits scaled by temperature and truncated to the top-p nucleus.

    Args:
        logits: 1-D array of unnormalized scores over the vocabulary
        temperature: strictly positive scaling factor
        top_p: nucleus mass in (0, 1]
        rng: source of randomness for this session

    Raises:
        ValueError: if the distribution is empty or degenerate
    """
    scores = np.asarray(logits, dtype=np.float64).ravel()
    if scores.size == 0:
        raise ValueError("empty next-token distribution")
    if np.isnan(scores).any():
        raise ValueError("next-token distribution contains NaN")

    scaled = scores / temperature
    peak = np.max(scaled)
    if not np.isfinite(peak):
        raise ValueError("next-token distribution has no finite logits")

    probs = np.exp(scaled - peak)
    probs /= probs.sum()

    candidates, weights = top_p_filter(probs, top_p)
    if len(candidates) == 1:
        return int(candidates[0])
    return int(candidates[rng.choice(len(candidates), p=weights)])
