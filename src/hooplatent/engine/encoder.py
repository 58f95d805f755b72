"""Contrastive variational encoder, its pretraining loop and the frozen wrapper.

The encoder maps an 80-dimensional game feature vector to a 16-dimensional
Gaussian latent.  It is trained once with a reconstruction + KL + InfoNCE
objective and then frozen: :class:`FrozenEncoder` holds a private copy of
the weights, exposes no way to update them, and refuses every attempt with
:class:`~hooplatent.engine.errors.FrozenEncoderViolation`.
"""

from __future__ import annotations

import copy
import dataclasses
import hashlib
import logging
import math
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Sequence, Tuple

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from .errors import FrozenEncoderViolation, InsufficientTrainingData
from .sampling import NegativeLabelSampler
from .schemas import (
    FEATURE_DIM,
    LATENT_DIM,
    NUM_OUTCOMES,
    EncoderWeights,
    coerce_datetime,
    utcnow,
)

logger = logging.getLogger(__name__)

LOGVAR_BOUNDS = (-10.0, 10.0)
MODEL_VERSION = "infonce-vae-v1"


# ---------------------------------------------------------------------------
# Networks
# ---------------------------------------------------------------------------


class GaussianEncoder(nn.Module):
    """Feature vector -> (mu, log variance)."""

    def __init__(
        self,
        input_dim: int = FEATURE_DIM,
        latent_dim: int = LATENT_DIM,
        hidden_dims: Sequence[int] = (64, 32),
    ) -> None:
        super().__init__()
        self.input_dim = input_dim
        self.latent_dim = latent_dim
        self.hidden_dims = tuple(int(dim) for dim in hidden_dims)
        layers: List[nn.Module] = []
        prev_dim = input_dim
        for hidden_dim in self.hidden_dims:
            layers.append(nn.Linear(prev_dim, hidden_dim))
            layers.append(nn.ReLU())
            prev_dim = hidden_dim
        self.body = nn.Sequential(*layers)
        self.mu_head = nn.Linear(prev_dim, latent_dim)
        self.logvar_head = nn.Linear(prev_dim, latent_dim)

    def forward(self, x: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        hidden = self.body(x)
        mu = self.mu_head(hidden)
        logvar = self.logvar_head(hidden).clamp(*LOGVAR_BOUNDS)
        return mu, logvar


class ContrastiveVAE(nn.Module):
    def __init__(
        self,
        input_dim: int = FEATURE_DIM,
        latent_dim: int = LATENT_DIM,
        hidden_dims: Sequence[int] = (64, 32),
    ) -> None:
        super().__init__()
        self.encoder = GaussianEncoder(input_dim, latent_dim, hidden_dims)
        layers: List[nn.Module] = []
        prev_dim = latent_dim
        for hidden_dim in reversed(self.encoder.hidden_dims):
            layers.append(nn.Linear(prev_dim, hidden_dim))
            layers.append(nn.ReLU())
            prev_dim = hidden_dim
        layers.append(nn.Linear(prev_dim, input_dim))
        self.decoder = nn.Sequential(*layers)

    def forward(
        self, x: torch.Tensor, generator: torch.Generator | None = None
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor]:
        mu, logvar = self.encoder(x)
        std = torch.exp(0.5 * logvar)
        eps = torch.randn(std.shape, generator=generator, dtype=std.dtype)
        z = mu + std * eps
        return self.decoder(z), mu, logvar, z


class LabelEmbedding(nn.Module):
    """Linear projection of an outcome label into latent space."""

    def __init__(self, label_dim: int = NUM_OUTCOMES, latent_dim: int = LATENT_DIM) -> None:
        super().__init__()
        self.projection = nn.Linear(label_dim, latent_dim)

    def forward(self, labels: torch.Tensor) -> torch.Tensor:
        return self.projection(labels)


# ---------------------------------------------------------------------------
# Loss terms
# ---------------------------------------------------------------------------


def kl_divergence(mu: torch.Tensor, logvar: torch.Tensor) -> torch.Tensor:
    """KL(N(mu, sigma^2) || N(0, 1)) summed over dimensions, averaged over the batch."""
    return (-0.5 * torch.sum(1.0 + logvar - mu.pow(2) - logvar.exp(), dim=1)).mean()


def info_nce_loss(
    z: torch.Tensor,
    positives: torch.Tensor,
    negatives: torch.Tensor,
    embedding: LabelEmbedding,
    temperature: float = 0.1,
) -> torch.Tensor:
    """Contrastive loss pulling ``z`` toward its own label embedding.

    Args:
        z: Latent samples, shape ``(batch, latent_dim)``.
        positives: Labels of the same games, shape ``(batch, label_dim)``.
        negatives: Labels of unrelated games, shape ``(batch, k, label_dim)``.
        embedding: Label embedding ``g``.
        temperature: Softmax temperature ``T``.

    Similarities are cosine similarities; the loss is the cross-entropy of
    the positive against ``[positive, negatives...]``.
    """

    if temperature <= 0:
        raise ValueError("temperature must be greater than zero")
    anchor = F.normalize(z, dim=-1)
    pos = F.normalize(embedding(positives), dim=-1)
    neg = F.normalize(embedding(negatives), dim=-1)
    pos_sim = torch.sum(anchor * pos, dim=-1, keepdim=True)
    neg_sim = torch.einsum("bd,bkd->bk", anchor, neg)
    logits = torch.cat([pos_sim, neg_sim], dim=1) / temperature
    targets = torch.zeros(logits.shape[0], dtype=torch.long)
    return F.cross_entropy(logits, targets)


@dataclasses.dataclass(slots=True)
class LossBreakdown:
    total: float
    reconstruction: float
    kl: float
    info_nce: float


@dataclasses.dataclass(slots=True)
class TrainingHistory:
    train_losses: List[float] = dataclasses.field(default_factory=list)
    validation_losses: List[float] = dataclasses.field(default_factory=list)
    stop_reason: str = "max_epochs"
    best_epoch: int = 0
    samples_used: int = 0
    samples_discarded: int = 0

    @property
    def epochs_run(self) -> int:
        return len(self.train_losses)

    @property
    def best_validation_loss(self) -> float | None:
        if not self.validation_losses:
            return None
        return min(self.validation_losses)


# ---------------------------------------------------------------------------
# Frozen encoder
# ---------------------------------------------------------------------------


def _state_hash(state: Mapping[str, torch.Tensor]) -> str:
    digest = hashlib.sha256()
    for name in sorted(state):
        tensor = state[name].detach().cpu().contiguous()
        digest.update(name.encode("utf-8"))
        digest.update(tensor.numpy().tobytes())
    return digest.hexdigest()


class FrozenEncoder:
    """Read-only encoder produced by pretraining.

    The wrapped network is a private deep copy with gradients disabled.
    :meth:`encode` runs under :func:`torch.inference_mode` and checks the
    weight hash recorded at freeze time before every call.
    """

    __slots__ = ("_network", "_metadata", "_sealed")

    def __init__(self, network: GaussianEncoder, *, metadata: EncoderWeights) -> None:
        private = copy.deepcopy(network)
        private.eval()
        for parameter in private.parameters():
            parameter.requires_grad_(False)
        object.__setattr__(self, "_network", private)
        object.__setattr__(
            self,
            "_metadata",
            dataclasses.replace(metadata, frozen=True, weights_hash=_state_hash(private.state_dict())),
        )
        object.__setattr__(self, "_sealed", True)
        logger.info(
            "Encoder %s frozen (hash %s)", self._metadata.version, self._metadata.weights_hash[:12]
        )

    @classmethod
    def freeze(cls, model: ContrastiveVAE | GaussianEncoder, *, version: str = MODEL_VERSION) -> "FrozenEncoder":
        network = model.encoder if isinstance(model, ContrastiveVAE) else model
        return cls(network, metadata=EncoderWeights(version=version, frozen=True, created_at=utcnow()))

    # -- mutation guards -----------------------------------------------------

    def __setattr__(self, name: str, value: Any) -> None:
        raise FrozenEncoderViolation(f"Cannot set attribute {name!r} on a frozen encoder")

    def __delattr__(self, name: str) -> None:
        raise FrozenEncoderViolation(f"Cannot delete attribute {name!r} on a frozen encoder")

    def load_state_dict(self, *args: Any, **kwargs: Any) -> None:
        raise FrozenEncoderViolation("Frozen encoder weights cannot be replaced")

    def train(self, *args: Any, **kwargs: Any) -> None:
        raise FrozenEncoderViolation("Frozen encoder cannot be trained")

    def update_weights(self, *args: Any, **kwargs: Any) -> None:
        raise FrozenEncoderViolation("Frozen encoder weights cannot be updated")

    # -- read-only surface ---------------------------------------------------

    @property
    def metadata(self) -> EncoderWeights:
        return self._metadata

    @property
    def weights_hash(self) -> str:
        return self._metadata.weights_hash or ""

    @property
    def input_dim(self) -> int:
        return self._network.input_dim

    @property
    def latent_dim(self) -> int:
        return self._network.latent_dim

    def validate_immutability(self) -> None:
        """Raise :class:`FrozenEncoderViolation` if the weights changed since freezing."""

        current = _state_hash(self._network.state_dict())
        if current != self._metadata.weights_hash:
            raise FrozenEncoderViolation(
                f"Encoder weights changed after freezing ({current[:12]} != {self.weights_hash[:12]})"
            )
        if self._network.training or any(p.requires_grad for p in self._network.parameters()):
            raise FrozenEncoderViolation("Encoder was switched back into training mode")

    def encode(self, features: Sequence[float] | Sequence[Sequence[float]] | np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """Map features to latent ``(mu, sigma)``.

        A single vector returns arrays of shape ``(latent_dim,)``; a batch
        returns ``(batch, latent_dim)``.
        """

        self.validate_immutability()
        array = np.asarray(features, dtype=np.float32)
        single = array.ndim == 1
        if single:
            array = array[None, :]
        if array.ndim != 2 or array.shape[1] != self.input_dim:
            raise ValueError(f"Expected features with {self.input_dim} columns, got shape {array.shape}")
        array = np.nan_to_num(array, nan=0.0, posinf=0.0, neginf=0.0)
        with torch.inference_mode():
            mu, logvar = self._network(torch.from_numpy(array))
            sigma = torch.exp(0.5 * logvar)
        mu_np = mu.numpy().copy()
        sigma_np = sigma.numpy().copy()
        if single:
            return mu_np[0], sigma_np[0]
        return mu_np, sigma_np

    def check_repeatable(self, features: Sequence[float] | np.ndarray, repeats: int = 3) -> bool:
        """Encode ``features`` several times and confirm bit-identical output."""

        reference_mu, reference_sigma = self.encode(features)
        for _ in range(max(1, repeats) - 1):
            mu, sigma = self.encode(features)
            if not (np.array_equal(mu, reference_mu) and np.array_equal(sigma, reference_sigma)):
                return False
        return True

    # -- persistence ---------------------------------------------------------

    def to_record(self) -> Dict[str, Any]:
        state = self._network.state_dict()
        return {
            "model_version": self._metadata.version,
            "encoder_weights": {name: tensor.tolist() for name, tensor in state.items()},
            "hidden_dims": list(self._network.hidden_dims),
            "latent_dim": self.latent_dim,
            "input_dim": self.input_dim,
            "frozen": True,
            "training_completed": True,
            "created_at": self._metadata.created_at.isoformat(),
            "weights_hash": self.weights_hash,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "FrozenEncoder":
        if not record.get("training_completed", True):
            raise ValueError("Cannot freeze weights from an incomplete training run")
        network = GaussianEncoder(
            input_dim=int(record.get("input_dim", FEATURE_DIM)),
            latent_dim=int(record.get("latent_dim", LATENT_DIM)),
            hidden_dims=record.get("hidden_dims", (64, 32)),
        )
        state = {name: torch.tensor(values, dtype=torch.float32) for name, values in record["encoder_weights"].items()}
        network.load_state_dict(state)
        created = record.get("created_at")
        metadata = EncoderWeights(
            version=str(record.get("model_version", MODEL_VERSION)),
            frozen=True,
            created_at=utcnow() if created is None else coerce_datetime(created),
        )
        encoder = cls(network, metadata=metadata)
        expected = record.get("weights_hash")
        if expected and expected != encoder.weights_hash:
            raise FrozenEncoderViolation("Stored encoder weights do not match their recorded hash")
        return encoder

    def save(self, path: str | os.PathLike[str]) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        torch.save(self.to_record(), target)
        return target

    @classmethod
    def load(cls, path: str | os.PathLike[str]) -> "FrozenEncoder":
        record = torch.load(Path(path), weights_only=True)
        return cls.from_record(record)


# ---------------------------------------------------------------------------
# Pretraining
# ---------------------------------------------------------------------------


class ContrastivePretrainer:
    """Mini-batch pretraining with early stopping, ending in a frozen encoder."""

    def __init__(
        self,
        *,
        input_dim: int = FEATURE_DIM,
        latent_dim: int = LATENT_DIM,
        label_dim: int = NUM_OUTCOMES,
        hidden_dims: Sequence[int] = (64, 32),
        beta: float = 1.0,
        lambda_infonce: float = 1.0,
        temperature: float = 0.1,
        num_negatives: int = 64,
        batch_size: int = 32,
        max_epochs: int = 100,
        learning_rate: float = 1e-3,
        validation_split: float = 0.2,
        patience: int = 10,
        convergence_threshold: float = 1e-4,
        seed: int | None = 42,
        negative_pool_size: int = 1000,
    ) -> None:
        if not 0.0 <= validation_split < 1.0:
            raise ValueError("validation_split must lie within [0, 1)")
        self.input_dim = input_dim
        self.latent_dim = latent_dim
        self.label_dim = label_dim
        self.hidden_dims = tuple(hidden_dims)
        self.beta = beta
        self.lambda_infonce = lambda_infonce
        self.temperature = temperature
        self.num_negatives = num_negatives
        self.batch_size = batch_size
        self.max_epochs = max_epochs
        self.learning_rate = learning_rate
        self.validation_split = validation_split
        self.patience = patience
        self.convergence_threshold = convergence_threshold
        self.seed = seed
        self.negative_pool_size = negative_pool_size
        with torch.random.fork_rng(devices=[], enabled=seed is not None):
            if seed is not None:
                torch.manual_seed(seed)
            self.model = ContrastiveVAE(input_dim, latent_dim, self.hidden_dims)
            self.embedding = LabelEmbedding(label_dim, latent_dim)
        self.history = TrainingHistory()

    def _clean(
        self,
        features: np.ndarray,
        labels: np.ndarray,
        game_ids: Sequence[str],
    ) -> Tuple[np.ndarray, np.ndarray, List[str]]:
        if features.ndim != 2 or features.shape[1] != self.input_dim:
            raise ValueError(f"features must have shape (n, {self.input_dim}), got {features.shape}")
        if labels.ndim != 2 or labels.shape[1] != self.label_dim:
            raise ValueError(f"labels must have shape (n, {self.label_dim}), got {labels.shape}")
        if len(features) != len(labels) or len(features) != len(game_ids):
            raise ValueError("features, labels and game_ids must have the same length")
        finite = np.isfinite(features).all(axis=1) & np.isfinite(labels).all(axis=1)
        non_negative = (labels >= 0.0).all(axis=1)
        sums = labels.sum(axis=1)
        normalised = np.abs(sums - 1.0) <= 1e-3
        keep = finite & non_negative & normalised
        discarded = int((~keep).sum())
        if discarded:
            logger.warning("Discarded %d invalid pretraining sample(s)", discarded)
        self.history.samples_discarded = discarded
        kept_ids = [game_id for game_id, flag in zip(game_ids, keep) if flag]
        kept_labels = labels[keep]
        if len(kept_labels):
            kept_labels = kept_labels / kept_labels.sum(axis=1, keepdims=True)
        return features[keep].astype(np.float32), kept_labels.astype(np.float32), kept_ids

    def _batch_loss(
        self,
        x: torch.Tensor,
        positives: torch.Tensor,
        negatives: torch.Tensor,
        *,
        generator: torch.Generator | None,
        deterministic: bool = False,
    ) -> Tuple[torch.Tensor, LossBreakdown]:
        if deterministic:
            mu, logvar = self.model.encoder(x)
            z = mu
            recon = self.model.decoder(z)
        else:
            recon, mu, logvar, z = self.model(x, generator=generator)
        recon_loss = F.mse_loss(recon, x)
        kl = kl_divergence(mu, logvar)
        contrastive = info_nce_loss(z, positives, negatives, self.embedding, self.temperature)
        total = recon_loss + self.beta * kl + self.lambda_infonce * contrastive
        return total, LossBreakdown(
            total=float(total.detach()),
            reconstruction=float(recon_loss.detach()),
            kl=float(kl.detach()),
            info_nce=float(contrastive.detach()),
        )

    def fit(
        self,
        features: Sequence[Sequence[float]] | np.ndarray,
        labels: Sequence[Sequence[float]] | np.ndarray,
        game_ids: Sequence[str] | None = None,
        *,
        version: str = MODEL_VERSION,
    ) -> FrozenEncoder:
        """Train the encoder and return its frozen copy.

        Raises:
            InsufficientTrainingData: if no valid samples remain, or a
                validation split is requested with fewer than two samples.
        """

        feature_array = np.asarray(features, dtype=np.float64)
        label_array = np.asarray(labels, dtype=np.float64)
        if feature_array.size == 0 or label_array.size == 0:
            raise InsufficientTrainingData("Pretraining requires at least one sample")
        ids = list(game_ids) if game_ids is not None else [str(index) for index in range(len(feature_array))]
        x_all, y_all, ids = self._clean(feature_array, label_array, ids)
        total = len(x_all)
        if total == 0:
            raise InsufficientTrainingData("No valid pretraining samples after validation")
        if self.validation_split > 0 and total < 2:
            raise InsufficientTrainingData("At least two samples are needed for a validation split")

        rng = np.random.default_rng(self.seed)
        generator = torch.Generator()
        if self.seed is not None:
            generator.manual_seed(self.seed)

        order = rng.permutation(total)
        n_val = 0
        if self.validation_split > 0:
            n_val = min(total - 1, max(1, int(round(total * self.validation_split))))
        val_idx, train_idx = order[:n_val], order[n_val:]

        sampler = NegativeLabelSampler(self.negative_pool_size, rng=rng)
        sampler.extend((ids[index], y_all[index]) for index in train_idx)

        x_tensor = torch.from_numpy(x_all)
        y_tensor = torch.from_numpy(y_all)
        val_negatives = (
            torch.from_numpy(sampler.sample_batch([ids[index] for index in val_idx], self.num_negatives))
            if n_val
            else None
        )

        parameters = list(self.model.parameters()) + list(self.embedding.parameters())
        optimizer = torch.optim.Adam(parameters, lr=self.learning_rate)

        self.history.samples_used = total
        best_loss = math.inf
        best_state = copy.deepcopy(self.model.state_dict())
        epochs_without_improvement = 0
        previous_loss: float | None = None
        logger.info(
            "Starting contrastive pretraining on %d samples (%d validation)", total, n_val
        )

        for epoch in range(self.max_epochs):
            self.model.train()
            self.embedding.train()
            shuffled = train_idx[rng.permutation(len(train_idx))]
            epoch_loss = 0.0
            for start in range(0, len(shuffled), self.batch_size):
                batch = shuffled[start : start + self.batch_size]
                negatives = torch.from_numpy(
                    sampler.sample_batch([ids[index] for index in batch], self.num_negatives)
                )
                optimizer.zero_grad()
                loss, breakdown = self._batch_loss(
                    x_tensor[batch], y_tensor[batch], negatives, generator=generator
                )
                loss.backward()
                optimizer.step()
                epoch_loss += breakdown.total * len(batch)
            train_loss = epoch_loss / max(1, len(shuffled))
            self.history.train_losses.append(train_loss)

            if n_val:
                self.model.eval()
                self.embedding.eval()
                with torch.no_grad():
                    _, val_breakdown = self._batch_loss(
                        x_tensor[val_idx],
                        y_tensor[val_idx],
                        val_negatives,
                        generator=None,
                        deterministic=True,
                    )
                monitored = val_breakdown.total
                self.history.validation_losses.append(monitored)
            else:
                monitored = train_loss
            logger.debug("Epoch %d train %.5f monitored %.5f", epoch + 1, train_loss, monitored)

            if monitored < best_loss:
                best_loss = monitored
                best_state = copy.deepcopy(self.model.state_dict())
                self.history.best_epoch = epoch + 1
                epochs_without_improvement = 0
            else:
                epochs_without_improvement += 1
                if epochs_without_improvement >= self.patience:
                    self.history.stop_reason = "patience"
                    break
            if previous_loss is not None and abs(previous_loss - monitored) < self.convergence_threshold:
                self.history.stop_reason = "converged"
                break
            previous_loss = monitored

        self.model.load_state_dict(best_state)
        logger.info(
            "Pretraining stopped after %d epoch(s) (%s); best loss %.5f at epoch %d",
            self.history.epochs_run,
            self.history.stop_reason,
            best_loss,
            self.history.best_epoch,
        )
        return FrozenEncoder.freeze(self.model, version=version)


__all__ = [
    "ContrastivePretrainer",
    "ContrastiveVAE",
    "FrozenEncoder",
    "GaussianEncoder",
    "LabelEmbedding",
    "LossBreakdown",
    "TrainingHistory",
    "info_nce_loss",
    "kl_divergence",
]
