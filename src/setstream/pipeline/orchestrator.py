"""Pipeline orchestrator: one end-to-end, single-writer run.

Orchestrates the flow:
    load_state
        ↓
    extract_tournaments, extract_matches (+ rolling window)
        ↓
    extract_match_details, extract_tournament_rankings (incremental batches)
        ↓
    write_lake → load_staging → save_state
        ↓
    quality_gate
        ↓
    compute_ratings → detect_upsets → write_ratings
        ↓
    derived_views → export

Steps run in order; the first failure raises PipelineStepError naming the
step and nothing after it runs. State is saved only once the newly fetched
details are in both the lake and staging.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import duckdb
import pandas as pd

from ..config import Settings, ensure_directories
from ..errors import PipelineStepError
from ..ingestion.client import VisClient
from ..ingestion.extract import BatchResult, Extractor, filter_rolling_window
from ..ingestion.state import PipelineState, load_state, merge_state, save_state
from ..quality.gate import QualityReport, run_quality_checks
from ..rating.elo import compute_team_elo, empty_history
from ..rating.upsets import detect_upsets
from ..storage import lake, warehouse

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXPORT_FILE = "team_elo_history.parquet"


@dataclass
class PipelineResult:
    """Results from a pipeline execution."""

    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None
    window_days: int = 0
    backfill: bool = False

    # Counts
    tournaments_extracted: int = 0
    matches_extracted: int = 0
    match_details_fetched: int = 0
    rankings_fetched: int = 0
    elo_history_rows: int = 0
    upsets_found: int = 0

    # Details
    succeeded_match_nos: list[int] = field(default_factory=list)
    succeeded_tournament_nos: list[int] = field(default_factory=list)
    quality_report: QualityReport | None = None
    views_applied: list[str] = field(default_factory=list)
    export_path: Path | None = None
    step_timings: dict[str, float] = field(default_factory=dict)

    # Failure
    failed_step: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.failed_step is None and self.finished_at is not None

    @property
    def duration_seconds(self) -> float:
        if self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return (datetime.now() - self.started_at).total_seconds()

    def summary(self) -> dict[str, Any]:
        return {
            "tournaments": self.tournaments_extracted,
            "matches": self.matches_extracted,
            "match_details": self.match_details_fetched,
            "tournament_rankings": self.rankings_fetched,
            "elo_history_rows": self.elo_history_rows,
            "upsets": self.upsets_found,
            "duration_seconds": round(self.duration_seconds, 2),
        }


class PipelineOrchestrator:
    """Runs the pipeline steps in order against one warehouse connection.

    Usage:
        >>> settings = load_settings("config.yml")
        >>> orchestrator = PipelineOrchestrator(settings)
        >>>
        >>> # Regular run over the rolling window
        >>> result = orchestrator.run()
        >>>
        >>> # Backfill two years
        >>> result = orchestrator.run(backfill_days=730)
    """

    def __init__(
        self,
        settings: Settings,
        client: VisClient | None = None,
        extractor: Extractor | None = None,
    ):
        """Initialize the pipeline orchestrator.

        Args:
            settings: Pipeline settings
            client: VIS client (one is created, and closed after the run, if None)
            extractor: Pre-built extractor (takes precedence over client)
        """
        self.settings = settings
        self._owns_client = extractor is None and client is None
        self.client = client
        self.extractor = extractor
        self._conn: duckdb.DuckDBPyConnection | None = None

    def _get_extractor(self) -> Extractor:
        if self.extractor is None:
            if self.client is None:
                self.client = VisClient(
                    base_url=self.settings.api.base_url,
                    timeout=self.settings.api.timeout_seconds,
                )
            self.extractor = Extractor(self.client, self.settings)
        return self.extractor

    def _step(self, result: PipelineResult, name: str, func: Callable[..., T], *args: Any) -> T:
        logger.info(f"▶ {name}")
        started = time.perf_counter()
        try:
            value = func(*args)
        except Exception as e:
            result.failed_step = name
            result.error = str(e)
            logger.error(f"Step '{name}' failed: {e}")
            raise PipelineStepError(name, e) from e
        finally:
            result.step_timings[name] = time.perf_counter() - started
        logger.info(f"✓ {name} ({result.step_timings[name]:.2f}s)")
        return value

    # =========================================================================
    # RUN
    # =========================================================================

    def run(self, backfill_days: int | None = None) -> PipelineResult:
        """Run the full pipeline.

        Args:
            backfill_days: Extraction window override; None uses
                ``pipeline.rolling_window_days``

        Returns:
            PipelineResult

        Raises:
            PipelineStepError: If any step fails
        """
        settings = self.settings
        window_days = backfill_days or settings.pipeline.rolling_window_days
        result = PipelineResult(window_days=window_days, backfill=backfill_days is not None)

        mode = f"backfill ({window_days} days)" if result.backfill else f"rolling window ({window_days} days)"
        logger.info(f"Starting pipeline run: {mode}")

        try:
            state = self._step(result, "load_state", self._load_state)
            extractor = self._get_extractor()

            # Extract
            tournaments = self._step(result, "extract_tournaments", extractor.extract_tournaments)
            result.tournaments_extracted = len(tournaments)

            matches = self._step(result, "extract_matches", self._extract_matches, extractor, window_days)
            result.matches_extracted = len(matches)

            details: BatchResult = self._step(
                result,
                "extract_match_details",
                extractor.extract_match_details_batch,
                _column_values(matches, "No"),
                state,
            )
            result.match_details_fetched = len(details.succeeded_ids)
            result.succeeded_match_nos = list(details.succeeded_ids)

            rankings: BatchResult = self._step(
                result,
                "extract_tournament_rankings",
                extractor.extract_tournament_rankings_batch,
                _column_values(matches, "NoTournament"),
                state,
            )
            result.rankings_fetched = len(rankings.succeeded_ids)
            result.succeeded_tournament_nos = list(rankings.succeeded_ids)

            extracted = {
                "tournaments": tournaments,
                "matches": matches,
                "match_details": details.frame,
                "tournament_rankings": rankings.frame,
            }

            # Persist
            stored_rankings = self._step(result, "write_lake", self._write_lake, extracted)

            # Rankings staging is rebuilt from every stored ranking
            staging = dict(extracted)
            if stored_rankings is not None:
                staging["tournament_rankings"] = stored_rankings
            conn = self._step(result, "load_staging", self._load_staging, staging)

            self._step(
                result,
                "save_state",
                self._save_state,
                state,
                details.succeeded_ids,
                rankings.succeeded_ids,
            )

            # Validate
            result.quality_report = self._step(
                result, "quality_gate", run_quality_checks, conn, settings
            )

            # Ratings
            history = self._step(result, "compute_ratings", self._compute_ratings, conn)
            result.elo_history_rows = len(history)

            upsets = self._step(
                result, "detect_upsets", detect_upsets, history, settings.elo.upset_threshold
            )
            result.upsets_found = len(upsets)

            self._step(result, "write_ratings", warehouse.write_rating_outputs, conn, history, upsets)

            # Derived outputs
            result.views_applied = self._step(result, "derived_views", self._apply_views, conn)
            result.export_path = self._step(result, "export", self._export, conn, history)

        finally:
            warehouse.close_warehouse(self._conn)
            self._conn = None
            if self._owns_client and self.client is not None:
                self.client.close()
                self.client = None
                self.extractor = None
            result.finished_at = datetime.now()

        logger.info(f"✓ Pipeline complete in {result.duration_seconds:.1f}s: {result.summary()}")
        return result

    # =========================================================================
    # STEP BODIES
    # =========================================================================

    def _load_state(self) -> PipelineState:
        ensure_directories(self.settings)
        return load_state(self.settings.storage.state_path)

    def _extract_matches(self, extractor: Extractor, window_days: int) -> pd.DataFrame:
        matches = extractor.extract_matches()
        if matches.empty:
            return matches
        return filter_rolling_window(matches, "DateLocal", window_days=window_days)

    def _write_lake(self, extracted: dict[str, pd.DataFrame]) -> pd.DataFrame | None:
        """Write every entity; returns the stored rankings (None if none written)."""
        lake_path = self.settings.storage.lake_path
        lake.write_tournaments_to_lake(extracted["tournaments"], lake_path)
        lake.write_matches_to_lake(extracted["matches"], lake_path)
        lake.write_match_details_to_lake(extracted["match_details"], lake_path)
        return lake.write_tournament_rankings_to_lake(
            extracted["tournament_rankings"], lake_path, extracted["tournaments"]
        )

    def _load_staging(self, extracted: dict[str, pd.DataFrame]) -> duckdb.DuckDBPyConnection:
        self._conn = warehouse.connect_warehouse(self.settings.storage.warehouse_path)
        warehouse.load_staging_tables(self._conn, extracted)
        return self._conn

    def _save_state(
        self, state: PipelineState, match_nos: list[int], tournament_nos: list[int]
    ) -> PipelineState:
        merged = merge_state(state, match_nos, tournament_nos)
        return save_state(merged, self.settings.storage.state_path)

    def _compute_ratings(self, conn: duckdb.DuckDBPyConnection) -> pd.DataFrame:
        if not warehouse.table_exists(conn, "stg_matches"):
            logger.warning("stg_matches does not exist, no ratings to compute")
            return empty_history()
        matches = conn.execute("SELECT * FROM stg_matches").fetchdf()
        elo = self.settings.elo
        return compute_team_elo(matches, base_rating=elo.base_rating, k_factor=elo.k_factor)

    def _apply_views(self, conn: duckdb.DuckDBPyConnection) -> list[str]:
        definitions = warehouse.load_view_definitions(self.settings.storage.marts_path)
        runnable = []
        for definition in definitions:
            missing = [t for t in definition.requires if not warehouse.table_exists(conn, t)]
            if missing:
                logger.info(f"Skipping {definition.name}: missing {', '.join(missing)}")
                continue
            runnable.append(definition)
        return warehouse.execute_derived_views(conn, runnable)

    def _export(self, conn: duckdb.DuckDBPyConnection, history: pd.DataFrame) -> Path | None:
        if history.empty:
            logger.warning("No metrics to export")
            return None
        output = self.settings.storage.export_path / EXPORT_FILE
        return warehouse.export_to_parquet(conn, warehouse.ELO_HISTORY_TABLE, output)


def _column_values(frame: pd.DataFrame, column: str) -> list[Any]:
    if frame is None or frame.empty or column not in frame.columns:
        return []
    return frame[column].tolist()
