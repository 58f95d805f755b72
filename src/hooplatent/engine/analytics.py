"""Odds conversion and expected-value screening of simulated games."""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, List, Mapping

from .simulation import ProbabilityTriple, SimulationResult

logger = logging.getLogger(__name__)

_EDGE_EPSILON = 1e-9

CONFIDENCE_TIERS: tuple[tuple[float, str], ...] = (
    (0.15, "Very High"),
    (0.10, "High"),
    (0.05, "Medium"),
)


def normalise_american_odds(value: int | float | str) -> int:
    """Coerce American odds into a signed integer.

    Odds feeds sometimes omit the ``+`` sign on positive numbers or expose
    odds as strings.
    """

    if isinstance(value, bool):
        raise TypeError("American odds cannot be boolean")
    if isinstance(value, int):
        price = value
    elif isinstance(value, float):
        price = int(round(value))
    else:
        stripped = value.strip()
        if not stripped:
            raise ValueError("Empty odds value")
        price = int(stripped) if stripped[0] in {"+", "-"} else int(f"+{stripped}")
    if -100 < price < 100:
        raise ValueError(f"American odds must be <= -100 or >= +100, got {price}")
    return price


def implied_probability(value: int | float | str) -> float:
    """Break-even probability implied by an American price."""

    price = normalise_american_odds(value)
    if price < 0:
        return -price / (-price + 100.0)
    return 100.0 / (price + 100.0)


def american_to_profit_multiplier(value: int | float | str) -> float:
    """Net profit for a one-unit stake at American odds."""

    price = normalise_american_odds(value)
    if price > 0:
        return price / 100.0
    return 100.0 / -price


def american_to_decimal(value: int | float | str) -> float:
    return 1.0 + american_to_profit_multiplier(value)


def expected_value(probability: ProbabilityTriple | float, value: int | float | str) -> float:
    """Unit-stake EV: ``p * payout - (1 - p - push) * 1``."""

    triple = probability if isinstance(probability, ProbabilityTriple) else ProbabilityTriple(win=float(probability))
    return triple.win * american_to_profit_multiplier(value) - triple.loss


def confidence_label(edge: float) -> str:
    for threshold, label in CONFIDENCE_TIERS:
        if edge + _EDGE_EPSILON >= threshold:
            return label
    return "Low"


class KellyCriterion:
    """Utility for computing fractional Kelly bet sizes."""

    @staticmethod
    def fraction(win_probability: float, loss_probability: float, price: int) -> float:
        b = american_to_profit_multiplier(price)
        numerator = b * win_probability - loss_probability
        if numerator <= 0:
            return 0.0
        return numerator / b


@dataclasses.dataclass(slots=True)
class BettingOdds:
    """Market prices for one game; American odds, lines as signed decimals.

    ``spread_line`` is the home team's handicap (negative when home is
    favoured).
    """

    home_moneyline: int | None = None
    away_moneyline: int | None = None
    spread_line: float | None = None
    home_spread_odds: int | None = None
    away_spread_odds: int | None = None
    total_line: float | None = None
    over_odds: int | None = None
    under_odds: int | None = None

    _ALIASES = {
        "homeMoneyline": "home_moneyline",
        "awayMoneyline": "away_moneyline",
        "spreadLine": "spread_line",
        "homeSpreadOdds": "home_spread_odds",
        "awaySpreadOdds": "away_spread_odds",
        "totalLine": "total_line",
        "overOdds": "over_odds",
        "underOdds": "under_odds",
    }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "BettingOdds":
        values: dict[str, Any] = {}
        names = {field.name for field in dataclasses.fields(cls)}
        for key, value in payload.items():
            name = cls._ALIASES.get(key, key)
            if name not in names or value is None:
                continue
            if name in {"spread_line", "total_line"}:
                values[name] = float(value)
            else:
                values[name] = normalise_american_odds(value)
        return cls(**values)


@dataclasses.dataclass(slots=True)
class Opportunity:
    market: str
    side: str
    selection: str
    line: float | None
    american_odds: int
    simulated_probability: float
    push_probability: float
    implied_probability: float
    edge: float
    expected_value: float
    confidence: str
    kelly_fraction: float


class ExpectedValueCalculator:
    """Compare simulated probabilities to market prices and rank the edges."""

    def __init__(self, min_ev_threshold: float = 0.05, default_odds: int = -110) -> None:
        if min_ev_threshold <= 0:
            raise ValueError("min_ev_threshold must be greater than zero")
        self.min_ev_threshold = min_ev_threshold
        self.default_odds = normalise_american_odds(default_odds)

    def _candidate(
        self,
        market: str,
        side: str,
        selection: str,
        line: float | None,
        price: int,
        probability: ProbabilityTriple,
    ) -> Opportunity:
        implied = implied_probability(price)
        edge = probability.win - implied
        return Opportunity(
            market=market,
            side=side,
            selection=selection,
            line=line,
            american_odds=price,
            simulated_probability=probability.win,
            push_probability=probability.push,
            implied_probability=implied,
            edge=edge,
            expected_value=expected_value(probability, price),
            confidence=confidence_label(edge),
            kelly_fraction=KellyCriterion.fraction(probability.win, probability.loss, price),
        )

    def evaluate(self, result: SimulationResult, odds: BettingOdds) -> List[Opportunity]:
        """Every priced side of every available market, unfiltered."""

        candidates: List[Opportunity] = []
        if odds.home_moneyline is not None:
            candidates.append(
                self._candidate(
                    "moneyline",
                    "home",
                    result.home_team,
                    None,
                    odds.home_moneyline,
                    ProbabilityTriple(win=result.home_win_probability, push=result.tie_probability),
                )
            )
        if odds.away_moneyline is not None:
            candidates.append(
                self._candidate(
                    "moneyline",
                    "away",
                    result.away_team,
                    None,
                    odds.away_moneyline,
                    ProbabilityTriple(win=result.away_win_probability, push=result.tie_probability),
                )
            )
        if odds.spread_line is not None:
            home_line = odds.spread_line
            candidates.append(
                self._candidate(
                    "spread",
                    "home",
                    result.home_team,
                    home_line,
                    odds.home_spread_odds if odds.home_spread_odds is not None else self.default_odds,
                    result.spread_probability(home_line, side="home"),
                )
            )
            candidates.append(
                self._candidate(
                    "spread",
                    "away",
                    result.away_team,
                    -home_line,
                    odds.away_spread_odds if odds.away_spread_odds is not None else self.default_odds,
                    result.spread_probability(-home_line, side="away"),
                )
            )
        if odds.total_line is not None:
            for side, price in (("over", odds.over_odds), ("under", odds.under_odds)):
                candidates.append(
                    self._candidate(
                        "total",
                        side,
                        side.capitalize(),
                        odds.total_line,
                        price if price is not None else self.default_odds,
                        result.total_probability(side, odds.total_line),
                    )
                )
        return candidates

    def calculate(self, result: SimulationResult, odds: BettingOdds | Mapping[str, Any]) -> List[Opportunity]:
        """Opportunities whose edge clears ``min_ev_threshold``, best first."""

        market = odds if isinstance(odds, BettingOdds) else BettingOdds.from_mapping(odds)
        opportunities = [
            candidate
            for candidate in self.evaluate(result, market)
            if candidate.edge + _EDGE_EPSILON >= self.min_ev_threshold
        ]
        opportunities.sort(key=lambda item: item.edge, reverse=True)
        logger.info(
            "Detected %d positive-EV opportunities for %s vs %s",
            len(opportunities),
            result.home_team,
            result.away_team,
        )
        return opportunities


__all__ = [
    "BettingOdds",
    "ExpectedValueCalculator",
    "KellyCriterion",
    "Opportunity",
    "american_to_decimal",
    "american_to_profit_multiplier",
    "confidence_label",
    "expected_value",
    "implied_probability",
    "normalise_american_odds",
]
