"""Durable team posterior storage with a bounded read cache."""

from __future__ import annotations

import datetime as dt
import json
import logging
import math
import os
import sqlite3
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping

from .cache import TTLCache
from .errors import InvalidPosteriorFormat
from .schemas import (
    LATENT_DIM,
    LegacyPosteriorFormat,
    TeamPosterior,
    migrate_posterior,
    parse_posterior_record,
    utcnow,
)

logger = logging.getLogger(__name__)


class PosteriorStore:
    """Own persistence of :class:`TeamPosterior` objects keyed by team id.

    Reads validate the stored representation and treat anything malformed as
    absent.  Writes happen in a single transaction and invalidate only the
    cache entries of the teams written.
    """

    def __init__(
        self,
        storage_path: str | os.PathLike[str] = "posteriors.sqlite3",
        *,
        cache: TTLCache[str, TeamPosterior] | None = None,
        latent_dim: int = LATENT_DIM,
        initial_uncertainty: float = 1.0,
        min_uncertainty: float = 0.1,
        max_uncertainty: float = 2.0,
        confidence_fn: Callable[[int], float] | None = None,
    ) -> None:
        if not 0 < min_uncertainty < max_uncertainty:
            raise ValueError("min_uncertainty must lie within (0, max_uncertainty)")
        self.storage_path = Path(storage_path)
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        self.cache: TTLCache[str, TeamPosterior] = cache if cache is not None else TTLCache()
        self.latent_dim = latent_dim
        self.initial_uncertainty = initial_uncertainty
        self.min_uncertainty = min_uncertainty
        self.max_uncertainty = max_uncertainty
        self._confidence_fn = confidence_fn
        self._init_db()

    def _init_db(self) -> None:
        with sqlite3.connect(self.storage_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS team_posteriors (
                    team_id TEXT PRIMARY KEY,
                    representation TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS team_posterior_history (
                    row_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    team_id TEXT NOT NULL,
                    representation TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_games (
                    game_id TEXT PRIMARY KEY,
                    processed_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_posterior_history_team "
                "ON team_posterior_history(team_id, row_id)"
            )

    # -- reads ---------------------------------------------------------------

    def _decode(self, team_id: str, raw: str) -> TeamPosterior | None:
        try:
            record = parse_posterior_record(raw)
            posterior = migrate_posterior(
                record,
                team_id=team_id,
                latent_dim=self.latent_dim,
                min_uncertainty=self.min_uncertainty,
                max_uncertainty=self.max_uncertainty,
                confidence_fn=self._confidence_fn,
            )
        except InvalidPosteriorFormat as exc:
            logger.warning("Ignoring invalid stored posterior for %s: %s", team_id, exc)
            return None
        if isinstance(record, LegacyPosteriorFormat):
            logger.info("Migrated legacy posterior for %s to v1 schema", team_id)
        return posterior

    def get(self, team_id: str) -> TeamPosterior | None:
        """Return the stored posterior for ``team_id`` or ``None`` when absent."""

        cached = self.cache.get(team_id)
        if cached is not None:
            return cached
        generation = self.cache.generation(team_id)
        with sqlite3.connect(self.storage_path) as conn:
            row = conn.execute(
                "SELECT representation FROM team_posteriors WHERE team_id = ?",
                (team_id,),
            ).fetchone()
        if row is None:
            return None
        posterior = self._decode(team_id, row[0])
        if posterior is not None:
            self.cache.set_if_generation(team_id, posterior, generation)
        return posterior

    def get_or_initial(self, team_id: str, *, season: str | None = None) -> TeamPosterior:
        """Return the stored posterior or a default-initialised one."""

        posterior = self.get(team_id)
        if posterior is not None:
            return posterior
        logger.debug("No posterior stored for %s; using default initialisation", team_id)
        return TeamPosterior.initial(
            team_id,
            latent_dim=self.latent_dim,
            initial_uncertainty=self.initial_uncertainty,
            season=season,
        )

    def batch_get(self, team_ids: Iterable[str]) -> Dict[str, TeamPosterior]:
        """Fetch several posteriors at once; absent or invalid teams are omitted."""

        requested = list(dict.fromkeys(team_ids))
        found: Dict[str, TeamPosterior] = {}
        missing: List[str] = []
        for team_id in requested:
            cached = self.cache.get(team_id)
            if cached is not None:
                found[team_id] = cached
            else:
                missing.append(team_id)
        if missing:
            generations = {team_id: self.cache.generation(team_id) for team_id in missing}
            placeholders = ", ".join("?" for _ in missing)
            with sqlite3.connect(self.storage_path) as conn:
                rows = conn.execute(
                    f"SELECT team_id, representation FROM team_posteriors WHERE team_id IN ({placeholders})",
                    missing,
                ).fetchall()
            for team_id, raw in rows:
                posterior = self._decode(team_id, raw)
                if posterior is None:
                    continue
                self.cache.set_if_generation(team_id, posterior, generations[team_id])
                found[team_id] = posterior
        return {team_id: found[team_id] for team_id in requested if team_id in found}

    def history(self, team_id: str, limit: int | None = None) -> List[TeamPosterior]:
        """Return superseded and current posteriors for ``team_id``, oldest first."""

        query = (
            "SELECT representation FROM team_posterior_history WHERE team_id = ? "
            "ORDER BY row_id DESC"
        )
        params: list[object] = [team_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        with sqlite3.connect(self.storage_path) as conn:
            rows = conn.execute(query, params).fetchall()
        decoded = [self._decode(team_id, raw) for (raw,) in reversed(rows)]
        return [posterior for posterior in decoded if posterior is not None]

    def team_ids(self) -> List[str]:
        with sqlite3.connect(self.storage_path) as conn:
            rows = conn.execute("SELECT team_id FROM team_posteriors ORDER BY team_id").fetchall()
        return [row[0] for row in rows]

    def is_processed(self, game_id: str) -> bool:
        with sqlite3.connect(self.storage_path) as conn:
            row = conn.execute(
                "SELECT 1 FROM processed_games WHERE game_id = ?", (game_id,)
            ).fetchone()
        return row is not None

    def processed_game_ids(self) -> List[str]:
        with sqlite3.connect(self.storage_path) as conn:
            rows = conn.execute(
                "SELECT game_id FROM processed_games ORDER BY processed_at, game_id"
            ).fetchall()
        return [row[0] for row in rows]

    # -- writes --------------------------------------------------------------

    def _validate_for_write(self, team_id: str, posterior: TeamPosterior) -> None:
        if posterior.team_id != team_id:
            raise ValueError(f"Posterior for {posterior.team_id} cannot be saved under {team_id}")
        if posterior.dim != self.latent_dim:
            raise ValueError(
                f"Posterior for {team_id} has {posterior.dim} dimensions, expected {self.latent_dim}"
            )
        tolerance = 1e-12
        for value in posterior.sigma:
            if (
                not math.isfinite(value)
                or value < self.min_uncertainty - tolerance
                or value > self.max_uncertainty + tolerance
            ):
                raise ValueError(
                    f"Posterior sigma {value} for {team_id} outside "
                    f"[{self.min_uncertainty}, {self.max_uncertainty}]"
                )

    def save(
        self,
        team_id: str,
        posterior: TeamPosterior,
        *,
        processed_game_id: str | None = None,
    ) -> None:
        """Persist a single posterior, superseding the previous one."""

        self.save_many({team_id: posterior}, processed_game_id=processed_game_id)

    def save_many(
        self,
        posteriors: Mapping[str, TeamPosterior],
        *,
        processed_game_id: str | None = None,
    ) -> None:
        """Persist several posteriors (and optionally a processed game) atomically."""

        for team_id, posterior in posteriors.items():
            self._validate_for_write(team_id, posterior)
        now = utcnow().isoformat()
        rows = [
            (team_id, json.dumps(posterior.to_representation()), posterior.last_updated.isoformat())
            for team_id, posterior in posteriors.items()
        ]
        with sqlite3.connect(self.storage_path) as conn:
            conn.executemany(
                """
                INSERT INTO team_posteriors (team_id, representation, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(team_id) DO UPDATE SET
                    representation=excluded.representation,
                    updated_at=excluded.updated_at
                """,
                rows,
            )
            conn.executemany(
                "INSERT INTO team_posterior_history (team_id, representation, updated_at) VALUES (?, ?, ?)",
                rows,
            )
            if processed_game_id is not None:
                conn.execute(
                    "INSERT OR IGNORE INTO processed_games (game_id, processed_at) VALUES (?, ?)",
                    (processed_game_id, now),
                )
        for team_id in posteriors:
            self.cache.invalidate(team_id)
        logger.debug("Persisted %d posterior(s)", len(rows))

    def write_raw(self, team_id: str, representation: Mapping[str, object] | str) -> None:
        """Store an unvalidated representation, as written by older tooling."""

        raw = representation if isinstance(representation, str) else json.dumps(representation)
        with sqlite3.connect(self.storage_path) as conn:
            conn.execute(
                """
                INSERT INTO team_posteriors (team_id, representation, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(team_id) DO UPDATE SET
                    representation=excluded.representation,
                    updated_at=excluded.updated_at
                """,
                (team_id, raw, dt.datetime.now(dt.timezone.utc).isoformat()),
            )
        self.cache.invalidate(team_id)


__all__ = ["PosteriorStore"]
