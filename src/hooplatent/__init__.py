"""
hooplatent: Bayesian team latent representations for basketball prediction.

This package pretrains a contrastive encoder once, keeps a per-team Gaussian
posterior that is updated game by game, simulates matchups possession by
possession, and screens sportsbook prices for expected value.
"""

from importlib.metadata import PackageNotFoundError, version

try:  # pragma: no cover - exercised in packaging workflows
    __version__ = version("hooplatent")
except PackageNotFoundError:  # pragma: no cover - local editable installs
    __version__ = "0.0.0"

_EXPORTS = {
    # Engine components
    "ContrastivePretrainer": ".engine.encoder",
    "FrozenEncoder": ".engine.encoder",
    "PosteriorStore": ".engine.store",
    "SequentialBayesianUpdater": ".engine.bayes",
    "SeasonTransitionManager": ".engine.seasons",
    "OutcomeTransitionModel": ".engine.outcome",
    "MonteCarloGameSimulator": ".engine.simulation",
    "ExpectedValueCalculator": ".engine.analytics",
    "OnlineLearningPipeline": ".engine.pipeline",
    # Data model
    "TeamPosterior": ".engine.schemas",
    "GameLabel": ".engine.schemas",
    "GameContext": ".engine.schemas",
    # Configuration
    "load_engine_config": ".engine.configuration",
    "get_config": ".config",
    # Utility functions
    "get_current_season": ".utils_date",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> object:  # pragma: no cover - thin lazy importer
    from importlib import import_module

    target_module = _EXPORTS.get(name)
    if not target_module:
        raise AttributeError(f"module {__name__} has no attribute {name}")
    module = import_module(target_module, __name__)
    attr = getattr(module, name)
    globals()[name] = attr
    return attr


def __dir__() -> list[str]:  # pragma: no cover - trivial
    return sorted(list(globals().keys()) + __all__)
