"""Command line interface for the team latent inference engine."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence, TypeVar

import numpy as np
import polars as pl

from ..config import get_config
from .analytics import BettingOdds
from .configuration import (
    ConfigurationError,
    EngineConfig,
    create_posterior_store,
    create_pretrainer,
    load_engine_config,
    validate_engine_config,
)
from .encoder import FrozenEncoder
from .logging import configure_logging
from .outcome import OutcomeTransitionModel
from .pipeline import OnlineLearningPipeline
from .schemas import (
    FEATURE_DIM,
    OUTCOME_CLASSES,
    GameContext,
    GameLabel,
    outcome_vector_from_counts,
)

logger = logging.getLogger(__name__)

ENCODER_FILENAME = "encoder.pt"
OUTCOME_MODEL_FILENAME = "outcome_model.pt"


@dataclasses.dataclass(slots=True)
class CommandContext:
    """Runtime objects shared across command handlers."""

    config: EngineConfig
    pipeline: OnlineLearningPipeline
    data_dir: Path


RuntimeHandler = Callable[[CommandContext, argparse.Namespace], None]
ConfigHandler = Callable[[EngineConfig, argparse.Namespace], None]
HandlerT = TypeVar("HandlerT", RuntimeHandler, ConfigHandler)


@dataclasses.dataclass(slots=True)
class Subcommand:
    """Container describing a CLI sub-command."""

    name: str
    help: str
    configure: Callable[[argparse.ArgumentParser], None]
    handler: Callable[..., None]
    requires_runtime: bool

    def add_to_parser(
        self,
        subparsers,
        parent: argparse.ArgumentParser,
    ) -> argparse.ArgumentParser:
        parser = subparsers.add_parser(self.name, parents=[parent], help=self.help)
        self.configure(parser)
        parser.set_defaults(
            handler=self.handler,
            command=self.name,
            requires_runtime=self.requires_runtime,
        )
        return parser


class SubcommandApp:
    """Registry that wires handlers into an :class:`argparse` parser."""

    def __init__(self, description: str | None = None) -> None:
        self._commands: list[Subcommand] = []
        self._description = description

    def command(
        self,
        name: str,
        *,
        help: str,
        configure: Callable[[argparse.ArgumentParser], None],
        requires_runtime: bool = True,
    ) -> Callable[[HandlerT], HandlerT]:
        """Register ``handler`` as a sub-command with configuration callback."""

        def _decorator(handler: HandlerT) -> HandlerT:
            self._commands.append(
                Subcommand(
                    name=name,
                    help=help,
                    configure=configure,
                    handler=handler,
                    requires_runtime=requires_runtime,
                )
            )
            return handler

        return _decorator

    @property
    def commands(self) -> Sequence[Subcommand]:
        return tuple(self._commands)

    def build_parser(self) -> argparse.ArgumentParser:
        parent = argparse.ArgumentParser(add_help=False)
        parent.add_argument("--config", dest="config_file")
        parent.add_argument("--environment", dest="config_environment")
        parent.add_argument("--storage")
        parent.add_argument("--data-dir")
        parent.add_argument("--log-level")

        parser = argparse.ArgumentParser(description=self._description)
        subparsers = parser.add_subparsers(dest="command", required=True)
        for command in self._commands:
            command.add_to_parser(subparsers, parent)
        return parser


APP = SubcommandApp(description=__doc__)


# ---------------------------------------------------------------------------
# Input frames
# ---------------------------------------------------------------------------


def _read_frame(path: str | Path) -> pl.DataFrame:
    source = Path(path)
    suffix = source.suffix.lower()
    if suffix in {".parquet", ".pq"}:
        return pl.read_parquet(source)
    if suffix == ".csv":
        return pl.read_csv(source, try_parse_dates=True)
    raise ValueError(f"Unsupported input format for {source}; expected .parquet or .csv")


def _feature_columns(frame: pl.DataFrame) -> List[str]:
    columns = [name for name in frame.columns if name.startswith("feature_")]
    return sorted(columns, key=lambda name: int(name.split("_", 1)[1]))


def feature_matrix(frame: pl.DataFrame, *, width: int = FEATURE_DIM) -> np.ndarray:
    """Ordered ``feature_<i>`` columns as a dense matrix; absent fields are 0."""

    matrix = np.zeros((frame.height, width), dtype=np.float64)
    for name in _feature_columns(frame):
        index = int(name.split("_", 1)[1])
        if index >= width:
            raise ValueError(f"Feature column {name} exceeds the {width}-wide feature vector")
        matrix[:, index] = frame.get_column(name).cast(pl.Float64).fill_null(0.0).to_numpy()
    return matrix


def label_matrix(frame: pl.DataFrame, *, prefix: str = "") -> np.ndarray:
    """Outcome distributions from per-class columns (counts or probabilities)."""

    columns = [f"{prefix}{name}" for name in OUTCOME_CLASSES]
    missing = [name for name in columns if name not in frame.columns]
    if missing:
        raise ValueError(f"Missing outcome columns: {', '.join(missing)}")
    raw = frame.select(columns).cast(pl.Float64).fill_null(0.0).to_numpy()
    return np.asarray([outcome_vector_from_counts(row) for row in raw])


def labels_from_frame(frame: pl.DataFrame) -> List[GameLabel]:
    labels: List[GameLabel] = []
    explicit = "transition_probs_home" in frame.columns
    home = None if explicit else label_matrix(frame, prefix="home_")
    away = None if explicit else label_matrix(frame, prefix="away_")
    for index, row in enumerate(frame.iter_rows(named=True)):
        payload: Dict[str, Any] = dict(row)
        if not explicit:
            payload["transition_probs_home"] = tuple(home[index])
            payload["transition_probs_away"] = tuple(away[index])
        labels.append(GameLabel.from_mapping(payload))
    return labels


# ---------------------------------------------------------------------------
# Runtime construction
# ---------------------------------------------------------------------------


def _load_encoder(data_dir: Path) -> FrozenEncoder | None:
    path = data_dir / ENCODER_FILENAME
    if not path.exists():
        return None
    encoder = FrozenEncoder.load(path)
    logger.info("Loaded frozen encoder %s (%s)", encoder.metadata.version, encoder.weights_hash[:12])
    return encoder


def _load_outcome_model(config: EngineConfig, data_dir: Path) -> OutcomeTransitionModel | None:
    path = data_dir / OUTCOME_MODEL_FILENAME
    if not path.exists():
        return None
    model = OutcomeTransitionModel.load(path)
    if model.latent_dim != config.encoder.latent_dim or model.context_dim != config.outcome_model.context_dim:
        raise SystemExit(
            f"Stored outcome model at {path} does not match the configured dimensions"
        )
    return model


def _build_context(config: EngineConfig, args: argparse.Namespace, data_dir: Path) -> CommandContext:
    store = create_posterior_store(config, storage_path=args.storage)
    pipeline = OnlineLearningPipeline.from_config(
        config,
        store=store,
        encoder=_load_encoder(data_dir),
        outcome_model=_load_outcome_model(config, data_dir),
    )
    return CommandContext(config=config, pipeline=pipeline, data_dir=data_dir)


def _data_dir(args: argparse.Namespace) -> Path:
    return Path(args.data_dir) if args.data_dir else get_config().data_dir


def _print_json(payload: Mapping[str, Any] | Sequence[Any]) -> None:
    print(json.dumps(payload, indent=2, default=str))


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def _configure_validate_parser(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--warnings-as-errors",
        action="store_true",
        help="Fail validation when configuration warnings are encountered.",
    )


def _configure_pretrain_parser(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--features", required=True, help="Parquet/CSV with feature_<i> and outcome columns")
    parser.add_argument("--output", help="Where to write the frozen encoder")
    parser.add_argument("--max-epochs", type=int)
    parser.add_argument("--version", default=None)


def _configure_process_parser(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--games", required=True, help="Parquet/CSV of completed games")


def _configure_predict_parser(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("home")
    parser.add_argument("away")
    parser.add_argument("--odds", help="JSON object of market prices")
    parser.add_argument("--seed", type=int)
    parser.add_argument("--neutral-site", action="store_true")
    parser.add_argument("--postseason", action="store_true")


def _configure_posterior_parser(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("team")
    parser.add_argument("--history", type=int, default=0, help="Also show the last N versions")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@APP.command(
    "validate-config",
    help="Validate engine configuration",
    configure=_configure_validate_parser,
    requires_runtime=False,
)
def _cmd_validate_config(config: EngineConfig, args: argparse.Namespace) -> None:
    try:
        warnings = validate_engine_config(config)
    except ConfigurationError as exc:
        print("Configuration invalid:")
        for line in str(exc).splitlines():
            text = line if line.startswith("-") else f"- {line}"
            print(text)
        raise SystemExit(1) from exc

    print(f"Configuration '{config.environment}' is valid.")
    if warnings:
        print("Warnings:")
        for message in warnings:
            print(f"- {message}")
        if getattr(args, "warnings_as_errors", False):
            raise SystemExit(2)


@APP.command(
    "pretrain",
    help="Pretrain and freeze the contrastive encoder",
    configure=_configure_pretrain_parser,
    requires_runtime=False,
)
def _cmd_pretrain(config: EngineConfig, args: argparse.Namespace) -> None:
    frame = _read_frame(args.features)
    features = feature_matrix(frame, width=config.encoder.input_dim)
    labels = label_matrix(frame)
    game_ids = (
        [str(value) for value in frame.get_column("game_id").to_list()]
        if "game_id" in frame.columns
        else None
    )
    if args.max_epochs is not None:
        config = config.model_copy(
            update={"encoder": config.encoder.model_copy(update={"max_epochs": args.max_epochs})}
        )
    pretrainer = create_pretrainer(config)
    kwargs = {"version": args.version} if args.version else {}
    encoder = pretrainer.fit(features, labels, game_ids, **kwargs)
    target = Path(args.output) if args.output else _data_dir(args) / ENCODER_FILENAME
    encoder.save(target)
    history = pretrainer.history
    _print_json(
        {
            "encoder": str(target),
            "version": encoder.metadata.version,
            "weights_hash": encoder.weights_hash,
            "epochs": history.epochs_run,
            "stop_reason": history.stop_reason,
            "best_validation_loss": history.best_validation_loss,
            "samples_used": history.samples_used,
            "samples_discarded": history.samples_discarded,
        }
    )


@APP.command(
    "process",
    help="Absorb completed games into team posteriors",
    configure=_configure_process_parser,
)
def _cmd_process(context: CommandContext, args: argparse.Namespace) -> None:
    labels = labels_from_frame(_read_frame(args.games))
    pipeline = context.pipeline
    report = pipeline.process_games(labels)
    pipeline.outcome_model.save(context.data_dir / OUTCOME_MODEL_FILENAME)
    _print_json(report.summary())
    if report.failed:
        raise SystemExit(1)


@APP.command(
    "predict",
    help="Simulate a matchup and screen betting odds",
    configure=_configure_predict_parser,
)
def _cmd_predict(context: CommandContext, args: argparse.Namespace) -> None:
    odds = BettingOdds.from_mapping(json.loads(args.odds)) if args.odds else None
    game_context = GameContext(
        is_home=True,
        neutral_site=args.neutral_site,
        postseason=args.postseason,
    )
    seed = args.seed if args.seed is not None else get_config().seed
    prediction = context.pipeline.predict_game(
        args.home, args.away, context=game_context, odds=odds, seed=seed
    )
    simulation = prediction.simulation
    _print_json(
        {
            "home_team": prediction.home_team,
            "away_team": prediction.away_team,
            "home_win_probability": simulation.home_win_probability,
            "away_win_probability": simulation.away_win_probability,
            "tie_probability": simulation.tie_probability,
            "expected_home_score": simulation.expected_home_score,
            "expected_away_score": simulation.expected_away_score,
            "margin_mean": simulation.margin_mean,
            "margin_stdev": simulation.margin_stdev,
            "home_distribution": dict(zip(OUTCOME_CLASSES, prediction.home_distribution)),
            "away_distribution": dict(zip(OUTCOME_CLASSES, prediction.away_distribution)),
            "opportunities": [dataclasses.asdict(item) for item in prediction.opportunities],
        }
    )


@APP.command(
    "posterior",
    help="Show a team's stored posterior",
    configure=_configure_posterior_parser,
)
def _cmd_posterior(context: CommandContext, args: argparse.Namespace) -> None:
    store = context.pipeline.store
    posterior = store.get(args.team)
    if posterior is None:
        print(f"No posterior stored for {args.team}")
        raise SystemExit(1)
    payload: Dict[str, Any] = {"team_id": args.team, **posterior.to_representation()}
    if args.history:
        payload["history"] = [
            {
                "games_processed": item.games_processed,
                "last_updated": item.last_updated.isoformat(),
                "mean_sigma": item.mean_sigma,
            }
            for item in store.history(args.team, limit=args.history)
        ]
    _print_json(payload)


def _build_parser() -> argparse.ArgumentParser:
    return APP.build_parser()


def _dispatch(args: argparse.Namespace) -> None:
    settings = get_config()
    configure_logging(args.log_level or settings.log_level.value)
    base_path = args.config_file
    if base_path is None and Path(settings.engine_config_path).exists():
        base_path = settings.engine_config_path
    config = load_engine_config(base_path=base_path, environment=args.config_environment)
    if not getattr(args, "requires_runtime", True):
        args.handler(config, args)
        return

    try:
        warnings = validate_engine_config(config)
    except ConfigurationError as exc:
        raise SystemExit(str(exc)) from exc

    if warnings:
        for message in warnings:
            print(f"[config-warning] {message}")

    context = _build_context(config, args, _data_dir(args))
    args.handler(context, args)


def main(argv: Sequence[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _dispatch(args)


__all__ = ["main"]


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
