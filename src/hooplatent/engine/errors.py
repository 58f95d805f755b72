"""Exception taxonomy for the inference engine."""

from __future__ import annotations


class InvalidPosteriorFormat(ValueError):
    """Stored posterior data is malformed; callers treat the record as absent."""

    def __init__(self, message: str, *, team_id: str | None = None) -> None:
        super().__init__(message)
        self.team_id = team_id


class FrozenEncoderViolation(RuntimeError):
    """Something attempted to mutate or train a frozen encoder."""


class InsufficientTrainingData(ValueError):
    """Pretraining was requested without enough valid samples."""


class SeasonTransitionFailure(RuntimeError):
    """A season boundary could not be evaluated; the adjustment is skipped."""


class SimulationDivergence(RuntimeWarning):
    """Independent simulation runs disagreed beyond the configured tolerance."""


class GameProcessingError(RuntimeError):
    """A game exhausted its retry budget during sequential processing."""

    def __init__(self, game_id: str, attempts: int, cause: BaseException) -> None:
        super().__init__(f"Game {game_id} failed after {attempts} attempt(s): {cause}")
        self.game_id = game_id
        self.attempts = attempts
        self.cause = cause


__all__ = [
    "FrozenEncoderViolation",
    "GameProcessingError",
    "InsufficientTrainingData",
    "InvalidPosteriorFormat",
    "SeasonTransitionFailure",
    "SimulationDivergence",
]
