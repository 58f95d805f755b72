"""Negative label sampling for the contrastive objective."""

from __future__ import annotations

import collections
import logging
from typing import Deque, Iterable, Sequence, Tuple

import numpy as np

from .schemas import NUM_OUTCOMES

logger = logging.getLogger(__name__)


class NegativeLabelSampler:
    """Draw outcome labels from unrelated games.

    Labels are kept in a bounded first-in-first-out pool.  A game's own
    label is never returned as one of its negatives.
    """

    def __init__(
        self,
        capacity: int = 1000,
        *,
        seed: int | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be greater than zero")
        self.capacity = capacity
        self._pool: Deque[Tuple[str, np.ndarray]] = collections.deque(maxlen=capacity)
        self._rng = rng if rng is not None else np.random.default_rng(seed)

    def __len__(self) -> int:
        return len(self._pool)

    def add(self, game_id: str, label: Sequence[float]) -> None:
        vector = np.asarray(label, dtype=np.float32)
        if vector.shape != (NUM_OUTCOMES,):
            raise ValueError(f"Label must have shape ({NUM_OUTCOMES},), got {vector.shape}")
        self._pool.append((str(game_id), vector))

    def extend(self, items: Iterable[Tuple[str, Sequence[float]]]) -> None:
        for game_id, label in items:
            self.add(game_id, label)

    def sample(self, count: int, *, exclude_game_id: str | None = None) -> np.ndarray:
        """Return ``count`` negative labels as an array of shape ``(count, 8)``."""

        if count <= 0:
            return np.zeros((0, NUM_OUTCOMES), dtype=np.float32)
        candidates = [label for game_id, label in self._pool if game_id != exclude_game_id]
        if not candidates:
            logger.debug("Negative pool empty; drawing %d synthetic labels", count)
            return self._rng.dirichlet(np.ones(NUM_OUTCOMES), size=count).astype(np.float32)
        replace = len(candidates) < count
        indices = self._rng.choice(len(candidates), size=count, replace=replace)
        return np.stack([candidates[index] for index in indices]).astype(np.float32)

    def sample_batch(self, game_ids: Sequence[str], count: int) -> np.ndarray:
        """Negatives for each game in a batch, shape ``(batch, count, 8)``."""

        return np.stack([self.sample(count, exclude_game_id=game_id) for game_id in game_ids])


__all__ = ["NegativeLabelSampler"]
