from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    Iterable,
    List,
    Mapping,
    MutableMapping,
    Sequence,
)

import yaml
from pydantic import BaseModel, Field

ENVIRONMENT_VARIABLE = "HOOPLATENT_ENGINE_ENV"
EXTRA_CONFIG_VARIABLE = "HOOPLATENT_ENGINE_CONFIG"
ENV_OVERRIDE_PREFIX = "HOOPLATENT_ENGINE__"

if TYPE_CHECKING:  # pragma: no cover - imported for type checking only
    from .analytics import ExpectedValueCalculator
    from .bayes import SequentialBayesianUpdater
    from .cache import Clock
    from .encoder import ContrastivePretrainer
    from .outcome import OutcomeTransitionModel
    from .seasons import SeasonTransitionManager
    from .simulation import MonteCarloGameSimulator
    from .store import PosteriorStore


class EncoderConfig(BaseModel):
    """Architecture and pretraining schedule for the contrastive encoder."""

    input_dim: int = 80
    latent_dim: int = 16
    label_dim: int = 8
    hidden_dims: List[int] = Field(default_factory=lambda: [64, 32])
    beta: float = 1.0
    lambda_infonce: float = 1.0
    temperature: float = 0.1
    num_negatives: int = 64
    negative_pool_size: int = 1000
    batch_size: int = 32
    max_epochs: int = 100
    learning_rate: float = 0.001
    validation_split: float = 0.2
    patience: int = 10
    convergence_threshold: float = 1e-4
    seed: int | None = 42


class ContextMultiplierConfig(BaseModel):
    """Observation uncertainty multipliers for game circumstances."""

    neutral_site: float = 1.2
    non_conference: float = 1.1
    short_rest: float = 1.15
    short_rest_days: float = 2.0
    postseason: float = 0.9


class SurpriseConfig(BaseModel):
    """Tunable opponent-strength surprise policy."""

    expected_strength_scale: float = 0.3
    margin_scale: float = 20.0
    default_result_signal: float = 0.2
    surprise_threshold: float = 0.5
    increase_rate: float = 0.5
    decrease_rate: float = 0.3
    known_opponent_factor: float = 0.8
    unknown_opponent_factor: float = 1.2
    known_opponent_sigma_ratio: float = 0.5
    min_multiplier: float = 0.5
    max_multiplier: float = 2.0


class OpponentAdjustmentConfig(BaseModel):
    enabled: bool = True
    weight: float = 0.3
    max_shift: float = 0.1


class PosteriorConfig(BaseModel):
    """Bounds and schedule of the sequential Bayesian updater."""

    initial_uncertainty: float = 1.0
    min_uncertainty: float = 0.1
    max_uncertainty: float = 2.0
    uncertainty_decay: float = 0.95
    learning_rate: float = 0.1
    confidence_threshold: float = 0.8
    max_games_for_convergence: int = 20
    context: ContextMultiplierConfig = Field(default_factory=ContextMultiplierConfig)
    surprise: SurpriseConfig = Field(default_factory=SurpriseConfig)
    opponent_adjustment: OpponentAdjustmentConfig = Field(default_factory=OpponentAdjustmentConfig)


class SeasonConfig(BaseModel):
    """Season boundary convention and between-season variance."""

    strategy: str = "month"
    start_month: int = 11
    inter_year_variance: float = 0.25
    cross_season_decay: float = 0.7


class OutcomeModelConfig(BaseModel):
    hidden_dims: List[int] = Field(default_factory=lambda: [128, 64, 32])
    context_dim: int = 10
    learning_rate: float = 0.001
    seed: int | None = 7


class SimulationConfig(BaseModel):
    """Monte Carlo controls."""

    iterations: int = 10_000
    possessions: float = 70.0
    home_court_advantage: float = 0.0
    max_offensive_rebounds: int = 0
    seed: int | None = None
    agreement_tolerance: float = 0.02


class AnalyticsConfig(BaseModel):
    min_ev_threshold: float = 0.05
    default_odds: int = -110


class StoreConfig(BaseModel):
    """Posterior persistence and cache sizing."""

    path: str | None = None
    cache_ttl_seconds: float = 1800.0
    cache_capacity: int = 1000


class PipelineConfig(BaseModel):
    """Retry policy for sequential game processing."""

    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 10.0
    continue_on_error: bool = True


class EngineConfig(BaseModel):
    """Aggregate configuration for the inference engine."""

    environment: str = "default"
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    posterior: PosteriorConfig = Field(default_factory=PosteriorConfig)
    seasons: SeasonConfig = Field(default_factory=SeasonConfig)
    outcome_model: OutcomeModelConfig = Field(default_factory=OutcomeModelConfig)
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)


class ConfigurationError(ValueError):
    """Raised when engine configuration validation fails."""


_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise TypeError(f"Configuration at {path} must be a mapping")
    return dict(data)


def _merge_layers(base: Dict[str, Any], layer: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = dict(base)
    for key, value in layer.items():
        if (
            key in merged
            and isinstance(merged[key], Mapping)
            and isinstance(value, Mapping)
        ):
            merged[key] = _merge_layers(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


def _resolve_env_tokens(value: Any) -> Any:
    if isinstance(value, str):
        return _ENV_PATTERN.sub(lambda match: os.getenv(match.group(1), ""), value)
    if isinstance(value, Mapping):
        return {k: _resolve_env_tokens(v) for k, v in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_resolve_env_tokens(item) for item in value]
    return value


def _coerce_env_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        lowered = raw.lower()
        if lowered in {"true", "false"}:
            return lowered == "true"
        return raw


def _set_nested(mapping: MutableMapping[str, Any], path: Iterable[str], value: Any) -> None:
    segments = list(path)
    if not segments:
        return
    head, *tail = segments
    key = head.lower().replace("-", "_")
    if not tail:
        mapping[key] = value
        return
    child = mapping.get(key)
    if not isinstance(child, MutableMapping):
        child = {}
    else:
        child = dict(child)
    mapping[key] = child
    _set_nested(child, tail, value)


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    updated = dict(data)
    for key, raw_value in os.environ.items():
        if not key.startswith(ENV_OVERRIDE_PREFIX):
            continue
        path = [segment for segment in key[len(ENV_OVERRIDE_PREFIX) :].split("__") if segment]
        if not path:
            continue
        _set_nested(updated, path, _coerce_env_value(raw_value))
    return updated


def load_engine_config(
    *,
    base_path: str | os.PathLike[str] | None = None,
    environment: str | None = None,
    extra_paths: Sequence[str | os.PathLike[str]] | None = None,
) -> EngineConfig:
    """Load layered configuration for the inference engine.

    The loader merges ``config/engine.yaml`` with optional environment-specific
    overrides (``config/engine.<env>.yaml``), additional override files, and
    environment variable overrides that use ``HOOPLATENT_ENGINE__`` prefixes.
    A missing base file yields the built-in defaults.
    """

    config_path = Path(base_path or "config/engine.yaml")
    data = _load_yaml(config_path) if config_path.exists() or base_path else {}

    env_name = environment or os.getenv(ENVIRONMENT_VARIABLE) or data.get("environment")
    if isinstance(env_name, str):
        env_path = config_path.with_name(f"{config_path.stem}.{env_name}{config_path.suffix}")
        if env_path.exists():
            data = _merge_layers(data, _load_yaml(env_path))
        data["environment"] = env_name

    merged = dict(data)
    override_sources: list[Path] = []
    if extra_paths:
        override_sources.extend(Path(path) for path in extra_paths)
    env_overrides = os.getenv(EXTRA_CONFIG_VARIABLE)
    if env_overrides:
        override_sources.extend(Path(token) for token in env_overrides.split(os.pathsep) if token)

    for override in override_sources:
        if override.exists():
            merged = _merge_layers(merged, _load_yaml(override))

    merged = _apply_env_overrides(merged)
    merged = _resolve_env_tokens(merged)

    return EngineConfig.model_validate(merged)


def validate_engine_config(config: EngineConfig) -> list[str]:
    """Validate an :class:`EngineConfig` instance.

    Args:
        config: Parsed configuration object to validate.

    Returns:
        A list of warning messages. The function raises
        :class:`ConfigurationError` if any fatal issues are detected.
    """

    from ..utils_date import SEASON_STRATEGIES
    from .simulation import MIN_ITERATIONS

    errors: list[str] = []
    warnings: list[str] = []

    encoder = config.encoder
    for name in ("input_dim", "latent_dim", "label_dim", "num_negatives", "negative_pool_size",
                 "batch_size", "max_epochs", "patience"):
        if getattr(encoder, name) <= 0:
            errors.append(f"encoder.{name} must be greater than zero")
    if not encoder.hidden_dims or any(dim <= 0 for dim in encoder.hidden_dims):
        errors.append("encoder.hidden_dims must be a non-empty list of positive sizes")
    if encoder.beta < 0:
        errors.append("encoder.beta must be non-negative")
    if encoder.lambda_infonce < 0:
        errors.append("encoder.lambda_infonce must be non-negative")
    if encoder.temperature <= 0:
        errors.append("encoder.temperature must be greater than zero")
    if encoder.learning_rate <= 0:
        errors.append("encoder.learning_rate must be greater than zero")
    if not 0 <= encoder.validation_split < 1:
        errors.append("encoder.validation_split must be within [0, 1)")
    if encoder.convergence_threshold < 0:
        errors.append("encoder.convergence_threshold must be non-negative")
    if encoder.latent_dim != 16 or encoder.label_dim != 8:
        warnings.append(
            "encoder dimensions differ from the 16-dim latent / 8-class outcome taxonomy; "
            "stored posteriors will not be compatible"
        )

    posterior = config.posterior
    if not 0 < posterior.min_uncertainty < posterior.max_uncertainty:
        errors.append("posterior.min_uncertainty must be within (0, posterior.max_uncertainty)")
    elif not posterior.min_uncertainty <= posterior.initial_uncertainty <= posterior.max_uncertainty:
        errors.append("posterior.initial_uncertainty must lie between min and max uncertainty")
    if not 0 < posterior.uncertainty_decay <= 1:
        errors.append("posterior.uncertainty_decay must be within (0, 1]")
    if posterior.learning_rate <= 0:
        errors.append("posterior.learning_rate must be greater than zero")
    if not 0 < posterior.confidence_threshold <= 1:
        errors.append("posterior.confidence_threshold must be within (0, 1]")
    if posterior.max_games_for_convergence <= 0:
        errors.append("posterior.max_games_for_convergence must be greater than zero")
    for name, value in posterior.context.model_dump().items():
        if name == "short_rest_days":
            if value < 0:
                errors.append("posterior.context.short_rest_days must be non-negative")
        elif value <= 0:
            errors.append(f"posterior.context.{name} must be greater than zero")
    surprise = posterior.surprise
    for name, value in surprise.model_dump().items():
        if value < 0:
            errors.append(f"posterior.surprise.{name} must be non-negative")
    if surprise.min_multiplier <= 0 or surprise.min_multiplier > surprise.max_multiplier:
        errors.append("posterior.surprise.min_multiplier must be within (0, max_multiplier]")
    if surprise.margin_scale <= 0:
        errors.append("posterior.surprise.margin_scale must be greater than zero")
    adjustment = posterior.opponent_adjustment
    if adjustment.weight < 0:
        errors.append("posterior.opponent_adjustment.weight must be non-negative")
    if adjustment.max_shift <= 0:
        errors.append("posterior.opponent_adjustment.max_shift must be greater than zero")

    seasons = config.seasons
    if seasons.strategy.lower() not in SEASON_STRATEGIES:
        errors.append(
            f"seasons.strategy must be one of {sorted(SEASON_STRATEGIES)}, got '{seasons.strategy}'"
        )
    if not 1 <= seasons.start_month <= 12:
        errors.append("seasons.start_month must be within 1..12")
    if seasons.inter_year_variance < 0:
        errors.append("seasons.inter_year_variance must be non-negative")
    if not 0 < seasons.cross_season_decay <= 1:
        errors.append("seasons.cross_season_decay must be within (0, 1]")

    outcome = config.outcome_model
    if not outcome.hidden_dims or any(dim <= 0 for dim in outcome.hidden_dims):
        errors.append("outcome_model.hidden_dims must be a non-empty list of positive sizes")
    if outcome.context_dim <= 0:
        errors.append("outcome_model.context_dim must be greater than zero")
    if outcome.learning_rate <= 0:
        errors.append("outcome_model.learning_rate must be greater than zero")

    simulation = config.simulation
    if simulation.iterations <= 0:
        errors.append("simulation.iterations must be greater than zero")
    elif simulation.iterations < MIN_ITERATIONS:
        warnings.append(
            f"simulation.iterations is below {MIN_ITERATIONS}; win probabilities will be noisy"
        )
    if simulation.possessions <= 0:
        errors.append("simulation.possessions must be greater than zero")
    if simulation.max_offensive_rebounds < 0:
        errors.append("simulation.max_offensive_rebounds must be non-negative")
    if not 0 < simulation.agreement_tolerance < 1:
        errors.append("simulation.agreement_tolerance must be within (0, 1)")

    analytics = config.analytics
    if analytics.min_ev_threshold <= 0:
        errors.append("analytics.min_ev_threshold must be greater than zero")
    elif analytics.min_ev_threshold < 0.01:
        warnings.append(
            "analytics.min_ev_threshold is very low; expect a large number of candidate opportunities"
        )
    if -100 < analytics.default_odds < 100:
        errors.append("analytics.default_odds must be <= -100 or >= 100")

    store = config.store
    if store.path is not None and not str(store.path).strip():
        errors.append("store.path cannot be empty")
    if store.cache_ttl_seconds <= 0:
        errors.append("store.cache_ttl_seconds must be greater than zero")
    if store.cache_capacity <= 0:
        errors.append("store.cache_capacity must be greater than zero")

    pipeline = config.pipeline
    if pipeline.max_attempts < 1:
        errors.append("pipeline.max_attempts must be at least 1")
    if pipeline.backoff_base_seconds < 0:
        errors.append("pipeline.backoff_base_seconds must be non-negative")
    if pipeline.backoff_cap_seconds < pipeline.backoff_base_seconds:
        errors.append("pipeline.backoff_cap_seconds must be >= pipeline.backoff_base_seconds")

    if errors:
        bullet_list = "\n".join(f"- {message}" for message in errors)
        raise ConfigurationError(f"Configuration validation failed:\n{bullet_list}")

    return warnings


def create_season_manager(config: EngineConfig) -> "SeasonTransitionManager":
    """Construct a :class:`SeasonTransitionManager` from configuration."""

    from ..utils_date import get_season_strategy
    from .seasons import SeasonTransitionManager

    seasons = config.seasons
    return SeasonTransitionManager(
        get_season_strategy(seasons.strategy, start_month=seasons.start_month),
        inter_year_variance=seasons.inter_year_variance,
        cross_season_decay=seasons.cross_season_decay,
        min_uncertainty=config.posterior.min_uncertainty,
        max_uncertainty=config.posterior.max_uncertainty,
    )


def create_bayesian_updater(
    config: EngineConfig,
    *,
    season_manager: "SeasonTransitionManager" | None = None,
) -> "SequentialBayesianUpdater":
    """Build a :class:`SequentialBayesianUpdater` with configured policies."""

    from .bayes import (
        ContextMultipliers,
        OpponentAdjustment,
        SequentialBayesianUpdater,
        SurprisePolicy,
    )

    posterior = config.posterior
    return SequentialBayesianUpdater(
        initial_uncertainty=posterior.initial_uncertainty,
        min_uncertainty=posterior.min_uncertainty,
        max_uncertainty=posterior.max_uncertainty,
        uncertainty_decay=posterior.uncertainty_decay,
        learning_rate=posterior.learning_rate,
        confidence_threshold=posterior.confidence_threshold,
        max_games_for_convergence=posterior.max_games_for_convergence,
        context_multipliers=ContextMultipliers(**posterior.context.model_dump()),
        surprise_policy=SurprisePolicy(**posterior.surprise.model_dump()),
        opponent_adjustment=OpponentAdjustment(**posterior.opponent_adjustment.model_dump()),
        season_manager=season_manager or create_season_manager(config),
    )


def create_posterior_store(
    config: EngineConfig,
    *,
    storage_path: str | os.PathLike[str] | None = None,
    clock: "Clock" | None = None,
) -> "PosteriorStore":
    """Build a :class:`PosteriorStore` and its cache from configuration."""

    from ..config import get_config
    from .bayes import confidence_for
    from .cache import TTLCache
    from .store import PosteriorStore

    posterior = config.posterior
    path = storage_path or config.store.path or get_config().resolved_store_path()
    cache = TTLCache(
        ttl_seconds=config.store.cache_ttl_seconds,
        capacity=config.store.cache_capacity,
        clock=clock,
    )
    return PosteriorStore(
        path,
        cache=cache,
        latent_dim=config.encoder.latent_dim,
        initial_uncertainty=posterior.initial_uncertainty,
        min_uncertainty=posterior.min_uncertainty,
        max_uncertainty=posterior.max_uncertainty,
        confidence_fn=lambda games: confidence_for(
            games, posterior.confidence_threshold, posterior.max_games_for_convergence
        ),
    )


def create_pretrainer(config: EngineConfig) -> "ContrastivePretrainer":
    from .encoder import ContrastivePretrainer

    return ContrastivePretrainer(**config.encoder.model_dump())


def create_outcome_model(config: EngineConfig) -> "OutcomeTransitionModel":
    from .outcome import OutcomeTransitionModel

    outcome = config.outcome_model
    return OutcomeTransitionModel(
        latent_dim=config.encoder.latent_dim,
        context_dim=outcome.context_dim,
        hidden_dims=outcome.hidden_dims,
        learning_rate=outcome.learning_rate,
        seed=outcome.seed,
    )


def create_simulator(config: EngineConfig, *, seed: int | None = None) -> "MonteCarloGameSimulator":
    from .simulation import MonteCarloGameSimulator

    simulation = config.simulation
    return MonteCarloGameSimulator(
        simulation.iterations,
        possessions=simulation.possessions,
        home_court_advantage=simulation.home_court_advantage,
        max_offensive_rebounds=simulation.max_offensive_rebounds,
        seed=seed if seed is not None else simulation.seed,
        agreement_tolerance=simulation.agreement_tolerance,
    )


def create_ev_calculator(config: EngineConfig) -> "ExpectedValueCalculator":
    from .analytics import ExpectedValueCalculator

    return ExpectedValueCalculator(
        min_ev_threshold=config.analytics.min_ev_threshold,
        default_odds=config.analytics.default_odds,
    )


__all__ = [
    "AnalyticsConfig",
    "ConfigurationError",
    "ContextMultiplierConfig",
    "EncoderConfig",
    "EngineConfig",
    "OpponentAdjustmentConfig",
    "OutcomeModelConfig",
    "PipelineConfig",
    "PosteriorConfig",
    "SeasonConfig",
    "SimulationConfig",
    "StoreConfig",
    "SurpriseConfig",
    "create_bayesian_updater",
    "create_ev_calculator",
    "create_outcome_model",
    "create_posterior_store",
    "create_pretrainer",
    "create_season_manager",
    "create_simulator",
    "load_engine_config",
    "validate_engine_config",
]
