"""Inference engine: frozen contrastive encoder, sequential team posteriors,
possession-level simulation and expected-value screening.

The encoder is trained once and frozen.  Afterwards only the outcome model
learns online, and each team's Gaussian posterior is refined by conjugate
updates as games are processed in chronological order.
"""

from .analytics import (
    BettingOdds,
    ExpectedValueCalculator,
    KellyCriterion,
    Opportunity,
    implied_probability,
)
from .bayes import (
    GameObservation,
    SequentialBayesianUpdater,
    SurprisePolicy,
    UpdateResult,
)
from .cache import TTLCache
from .configuration import (
    ConfigurationError,
    EngineConfig,
    load_engine_config,
    validate_engine_config,
)
from .encoder import ContrastivePretrainer, FrozenEncoder
from .errors import (
    FrozenEncoderViolation,
    GameProcessingError,
    InsufficientTrainingData,
    InvalidPosteriorFormat,
    SeasonTransitionFailure,
    SimulationDivergence,
)
from .outcome import OutcomeTransitionModel
from .pipeline import GamePrediction, OnlineLearningPipeline, ProcessingReport
from .schemas import GameContext, GameLabel, TeamPosterior
from .seasons import SeasonTransitionManager
from .simulation import MonteCarloGameSimulator, SimulationResult
from .store import PosteriorStore

__all__ = [
    "BettingOdds",
    "ConfigurationError",
    "ContrastivePretrainer",
    "EngineConfig",
    "ExpectedValueCalculator",
    "FrozenEncoder",
    "FrozenEncoderViolation",
    "GameContext",
    "GameLabel",
    "GameObservation",
    "GamePrediction",
    "GameProcessingError",
    "InsufficientTrainingData",
    "InvalidPosteriorFormat",
    "KellyCriterion",
    "MonteCarloGameSimulator",
    "OnlineLearningPipeline",
    "Opportunity",
    "OutcomeTransitionModel",
    "PosteriorStore",
    "ProcessingReport",
    "SeasonTransitionFailure",
    "SeasonTransitionManager",
    "SequentialBayesianUpdater",
    "SimulationDivergence",
    "SimulationResult",
    "SurprisePolicy",
    "TTLCache",
    "TeamPosterior",
    "UpdateResult",
    "implied_probability",
    "load_engine_config",
    "validate_engine_config",
]
