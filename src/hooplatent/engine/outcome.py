"""Supervised model from two team posteriors plus context to possession outcomes."""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from .schemas import CONTEXT_DIM, LATENT_DIM, NUM_OUTCOMES, GameContext, TeamPosterior

logger = logging.getLogger(__name__)


class OutcomeNetwork(nn.Module):
    def __init__(
        self,
        input_dim: int,
        hidden_dims: Sequence[int] = (128, 64, 32),
        num_outcomes: int = NUM_OUTCOMES,
    ) -> None:
        super().__init__()
        layers: List[nn.Module] = []
        prev_dim = input_dim
        for hidden_dim in hidden_dims:
            layers.append(nn.Linear(prev_dim, hidden_dim))
            layers.append(nn.ReLU())
            prev_dim = hidden_dim
        layers.append(nn.Linear(prev_dim, num_outcomes))
        self.layers = nn.Sequential(*layers)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.layers(x)


class OutcomeTransitionModel:
    """Predict an 8-way possession outcome distribution for one team.

    The input is ``[team mu, team sigma^2, opponent mu, opponent sigma^2,
    context]``.  The model is trained continuously against observed outcome
    vectors; posteriors enter as plain numbers, so no gradient ever reaches
    the encoder that produced them.
    """

    def __init__(
        self,
        *,
        latent_dim: int = LATENT_DIM,
        context_dim: int = CONTEXT_DIM,
        hidden_dims: Sequence[int] = (128, 64, 32),
        learning_rate: float = 1e-3,
        seed: int | None = 7,
    ) -> None:
        self.latent_dim = latent_dim
        self.context_dim = context_dim
        self.hidden_dims = tuple(int(dim) for dim in hidden_dims)
        self.learning_rate = learning_rate
        with torch.random.fork_rng(devices=[], enabled=seed is not None):
            if seed is not None:
                torch.manual_seed(seed)
            self.network = OutcomeNetwork(self.input_dim, self.hidden_dims)
        self.optimizer = torch.optim.Adam(self.network.parameters(), lr=learning_rate)
        self.training_steps = 0

    @property
    def input_dim(self) -> int:
        return 4 * self.latent_dim + self.context_dim

    def _team_block(self, posterior: TeamPosterior | None) -> List[float]:
        if posterior is None:
            return [0.0] * self.latent_dim + [1.0] * self.latent_dim
        if posterior.dim != self.latent_dim:
            raise ValueError(
                f"Posterior for {posterior.team_id} has {posterior.dim} dimensions, expected {self.latent_dim}"
            )
        return list(posterior.mu) + list(posterior.variance)

    def build_input(
        self,
        team: TeamPosterior | None,
        opponent: TeamPosterior | None,
        context: GameContext | None = None,
    ) -> np.ndarray:
        context_vector = (context or GameContext()).to_vector()
        if len(context_vector) != self.context_dim:
            raise ValueError(
                f"Game context must be {self.context_dim}-dimensional, got {len(context_vector)}"
            )
        vector = self._team_block(team) + self._team_block(opponent) + context_vector
        return np.asarray(vector, dtype=np.float32)

    def predict_from_input(self, inputs: np.ndarray) -> np.ndarray:
        array = np.asarray(inputs, dtype=np.float32)
        single = array.ndim == 1
        if single:
            array = array[None, :]
        if array.shape[1] != self.input_dim:
            raise ValueError(f"Invalid input dimension: expected {self.input_dim}, got {array.shape[1]}")
        self.network.eval()
        with torch.no_grad():
            probabilities = torch.softmax(self.network(torch.from_numpy(array)), dim=1).numpy()
        probabilities = probabilities.astype(np.float64)
        probabilities /= probabilities.sum(axis=1, keepdims=True)
        return probabilities[0] if single else probabilities

    def predict(
        self,
        team: TeamPosterior | None,
        opponent: TeamPosterior | None,
        context: GameContext | None = None,
    ) -> Tuple[float, ...]:
        """Outcome distribution for ``team`` on offence against ``opponent``."""

        return tuple(float(value) for value in self.predict_from_input(self.build_input(team, opponent, context)))

    def predict_matchup(
        self,
        home: TeamPosterior | None,
        away: TeamPosterior | None,
        context: GameContext | None = None,
    ) -> Tuple[Tuple[float, ...], Tuple[float, ...]]:
        """Home and away distributions with the team/opponent slots swapped."""

        home_context = context or GameContext(is_home=True)
        return (
            self.predict(home, away, home_context),
            self.predict(away, home, home_context.for_away()),
        )

    def train_batch(self, inputs: np.ndarray, targets: np.ndarray) -> float:
        """One gradient step of soft-label cross-entropy; returns the loss."""

        x = torch.as_tensor(np.asarray(inputs, dtype=np.float32))
        y = torch.as_tensor(np.asarray(targets, dtype=np.float32))
        if x.ndim == 1:
            x = x[None, :]
            y = y[None, :]
        if x.shape[1] != self.input_dim:
            raise ValueError(f"Invalid input dimension: expected {self.input_dim}, got {x.shape[1]}")
        if y.shape != (x.shape[0], NUM_OUTCOMES):
            raise ValueError(f"Targets must have shape ({x.shape[0]}, {NUM_OUTCOMES})")
        self.network.train()
        self.optimizer.zero_grad()
        loss = -(y * F.log_softmax(self.network(x), dim=1)).sum(dim=1).mean()
        loss.backward()
        self.optimizer.step()
        self.training_steps += 1
        value = float(loss.detach())
        logger.debug("Outcome model step %d loss %.5f", self.training_steps, value)
        return value

    def train_step(
        self,
        team: TeamPosterior | None,
        opponent: TeamPosterior | None,
        context: GameContext | None,
        target: Sequence[float],
    ) -> float:
        return self.train_batch(self.build_input(team, opponent, context), np.asarray(target))

    def snapshot(self) -> Dict[str, Any]:
        """Copy of the trainable state, for ``restore`` after a failed update."""

        return {
            "network": copy.deepcopy(self.network.state_dict()),
            "optimizer": copy.deepcopy(self.optimizer.state_dict()),
            "training_steps": self.training_steps,
        }

    def restore(self, snapshot: Dict[str, Any]) -> None:
        self.network.load_state_dict(snapshot["network"])
        self.optimizer.load_state_dict(snapshot["optimizer"])
        self.training_steps = int(snapshot["training_steps"])

    def state(self) -> Dict[str, Any]:
        return {
            "latent_dim": self.latent_dim,
            "context_dim": self.context_dim,
            "hidden_dims": list(self.hidden_dims),
            "learning_rate": self.learning_rate,
            "training_steps": self.training_steps,
            "network": self.network.state_dict(),
            "optimizer": self.optimizer.state_dict(),
        }

    def save(self, path: str | os.PathLike[str]) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        torch.save(self.state(), target)
        return target

    @classmethod
    def load(cls, path: str | os.PathLike[str]) -> "OutcomeTransitionModel":
        state = torch.load(Path(path), weights_only=True)
        model = cls(
            latent_dim=int(state["latent_dim"]),
            context_dim=int(state["context_dim"]),
            hidden_dims=state["hidden_dims"],
            learning_rate=float(state["learning_rate"]),
            seed=None,
        )
        model.network.load_state_dict(state["network"])
        model.optimizer.load_state_dict(state["optimizer"])
        model.training_steps = int(state.get("training_steps", 0))
        return model


__all__ = ["OutcomeNetwork", "OutcomeTransitionModel"]
