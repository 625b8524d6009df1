"""Unit tests for pipeline orchestrator.

Tests the PipelineOrchestrator step sequencing against a fake VIS client,
a temporary lake and a file-backed DuckDB warehouse.
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import duckdb
import pytest

from setstream.errors import PipelineStepError, RemoteRequestError
from setstream.ingestion.extract import Extractor
from setstream.ingestion.retry import RetryRateLimiter
from setstream.ingestion.state import load_state
from setstream.pipeline.orchestrator import PipelineOrchestrator, PipelineResult

STEPS = [
    "load_state",
    "extract_tournaments",
    "extract_matches",
    "extract_match_details",
    "extract_tournament_rankings",
    "write_lake",
    "load_staging",
    "save_state",
    "quality_gate",
    "compute_ratings",
    "detect_upsets",
    "write_ratings",
    "derived_views",
    "export",
]


def make_orchestrator(settings, client) -> PipelineOrchestrator:
    """Orchestrator whose retries don't sleep."""
    extractor = Extractor(client, settings, limiter=RetryRateLimiter(sleep=lambda _: None))
    return PipelineOrchestrator(settings, extractor=extractor)


def query(settings, sql):
    conn = duckdb.connect(str(settings.storage.warehouse_path), read_only=True)
    try:
        return conn.execute(sql).fetchall()
    finally:
        conn.close()


class TestPipelineResult:
    """Test PipelineResult dataclass."""

    def test_initial_values(self):
        """Test initial result values."""
        result = PipelineResult()

        assert result.tournaments_extracted == 0
        assert result.match_details_fetched == 0
        assert result.succeeded_match_nos == []
        assert result.failed_step is None
        assert result.finished_at is None
        assert result.success is False

    def test_duration_seconds_completed(self):
        """Test duration calculation for a finished run."""
        start = datetime(2024, 5, 1, 12, 0, 0)
        result = PipelineResult(started_at=start, finished_at=start + timedelta(seconds=90))

        assert result.duration_seconds == 90.0
        assert result.success is True
        assert result.summary()["duration_seconds"] == 90.0

    def test_failed_result_not_success(self):
        result = PipelineResult(finished_at=datetime.now(), failed_step="quality_gate")
        assert result.success is False


class TestPipelineOrchestratorInit:
    """Test orchestrator construction."""

    def test_owns_client_when_none_given(self, settings):
        assert PipelineOrchestrator(settings)._owns_client is True

    def test_does_not_own_given_client(self, settings, fake_client):
        orchestrator = PipelineOrchestrator(settings, client=fake_client)

        assert orchestrator._owns_client is False
        assert orchestrator._get_extractor().client is fake_client


class TestPipelineRun:
    """Test a full run."""

    def test_run_end_to_end(self, settings, fake_client):
        """Test every step runs and the outputs are populated."""
        result = make_orchestrator(settings, fake_client).run()

        assert result.success
        assert list(result.step_timings) == STEPS
        assert result.tournaments_extracted == 2
        assert result.matches_extracted == 4
        assert result.match_details_fetched == 4
        assert result.rankings_fetched == 2
        # Match 4 has no points: 3 rated matches, 2 rows each
        assert result.elo_history_rows == 6
        assert result.upsets_found == 2
        assert result.quality_report.is_success()
        assert len(result.views_applied) == 4
        assert result.export_path == settings.storage.export_path / "team_elo_history.parquet"
        assert result.export_path.exists()

    def test_state_saved(self, settings, fake_client):
        """Test fetched ids are persisted."""
        make_orchestrator(settings, fake_client).run()

        state = load_state(settings.storage.state_path)
        assert state.fetched_match_nos == {1, 2, 3, 4}
        assert state.fetched_tournament_nos == {100, 200}
        assert state.last_run is not None

    def test_warehouse_tables(self, settings, fake_client):
        """Test staging and rating tables are written."""
        make_orchestrator(settings, fake_client).run()

        assert query(settings, "SELECT COUNT(*) FROM stg_matches") == [(4,)]
        assert query(settings, "SELECT COUNT(*) FROM stg_match_details") == [(4,)]
        assert query(settings, "SELECT COUNT(*) FROM stg_tournament_rankings") == [(3,)]
        assert query(settings, "SELECT COUNT(*) FROM team_elo_history") == [(6,)]

    def test_backfill_window(self, settings, fake_client):
        """Test backfill_days overrides the rolling window."""
        result = make_orchestrator(settings, fake_client).run(backfill_days=3)

        assert result.backfill is True
        assert result.window_days == 3
        # All matches are at least 7 days old
        assert result.matches_extracted == 0
        assert result.match_details_fetched == 0

    def test_second_run_skips_fetched_items(self, settings, fake_client):
        """Test already-fetched details and rankings aren't requested again."""
        make_orchestrator(settings, fake_client).run()
        fake_client.calls.clear()

        result = make_orchestrator(settings, fake_client).run()

        assert result.success
        assert fake_client.calls_to("get_match") == []
        assert fake_client.calls_to("get_tournament_ranking") == []
        assert result.match_details_fetched == 0
        assert query(settings, "SELECT COUNT(*) FROM stg_match_details") == [(4,)]
        assert query(settings, "SELECT COUNT(*) FROM team_elo_history") == [(6,)]

    def test_failed_items_not_saved(self, settings, fake_client, permanent_error):
        """Test an item that failed is retried on the next run."""
        fake_client.failures[("get_match", 3)] = permanent_error

        result = make_orchestrator(settings, fake_client).run()

        assert result.success
        assert result.succeeded_match_nos == [1, 2, 4]
        assert load_state(settings.storage.state_path).fetched_match_nos == {1, 2, 4}

        del fake_client.failures[("get_match", 3)]
        fake_client.calls.clear()
        make_orchestrator(settings, fake_client).run()

        assert fake_client.calls_to("get_match") == [3]


class TestPipelineFailures:
    """Test step failure handling."""

    def test_extract_failure_aborts(self, settings, fake_client, permanent_error):
        """Test a failing list extract names the step and stops the run."""
        fake_client.failures[("get_match_list", None)] = permanent_error

        with pytest.raises(PipelineStepError) as exc_info:
            make_orchestrator(settings, fake_client).run()

        assert exc_info.value.step == "extract_matches"
        assert isinstance(exc_info.value.cause, RemoteRequestError)
        assert not settings.storage.state_path.exists()
        assert not settings.storage.warehouse_path.exists()
        assert fake_client.calls_to("get_match") == []

    def test_quality_failure_aborts_after_state_saved(self, settings, make_client, recent_day):
        """Test a critical quality failure stops before ratings are written."""
        day = recent_day.isoformat()
        duplicate = {"No": "1", "NoTournament": "100", "TeamNameA": "X", "TeamNameB": "Y",
                     "MatchPointsA": "2", "MatchPointsB": "0", "DateLocal": day}
        client = make_client(matches=[duplicate, dict(duplicate)])

        with pytest.raises(PipelineStepError) as exc_info:
            make_orchestrator(settings, client).run()

        assert exc_info.value.step == "quality_gate"
        assert settings.storage.state_path.exists()
        assert query(
            settings,
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = 'team_elo_history'",
        ) == [(0,)]

    def test_connection_closed_after_failure(self, settings, fake_client):
        """Test the warehouse can be reopened after a failed run."""
        orchestrator = make_orchestrator(settings, fake_client)

        with patch(
            "setstream.pipeline.orchestrator.warehouse.write_rating_outputs",
            side_effect=RuntimeError("disk full"),
        ):
            with pytest.raises(PipelineStepError, match="write_ratings"):
                orchestrator.run()

        assert orchestrator._conn is None
        assert query(settings, "SELECT COUNT(*) FROM stg_matches") == [(4,)]


class TestClientLifecycle:
    """Test ownership of the VIS client."""

    def test_owned_client_closed(self, settings):
        """Test a client created by the orchestrator is closed after the run."""
        client = MagicMock()
        for method in ("get_tournament_list", "get_match_list"):
            getattr(client, method).return_value = []

        with patch("setstream.pipeline.orchestrator.VisClient", return_value=client) as factory:
            result = PipelineOrchestrator(settings).run()

        factory.assert_called_once_with(
            base_url=settings.api.base_url, timeout=settings.api.timeout_seconds
        )
        client.close.assert_called_once()
        assert result.success
        assert result.export_path is None

    def test_given_client_left_open(self, settings, fake_client):
        fake_client.close = MagicMock()
        make_orchestrator(settings, fake_client).run()
        fake_client.close.assert_not_called()
