"""Pytest configuration and fixtures for all tests."""

from datetime import date, timedelta
from pathlib import Path
from typing import Generator

import duckdb
import pandas as pd
import pytest

from setstream.config import (
    ApiConfig,
    LoggingConfig,
    QualityConfig,
    Settings,
    StoragePaths,
)
from setstream.errors import RemoteRequestError, TransientRemoteError


# ============================================================================
# Settings Fixtures
# ============================================================================

@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every path under tmp_path and no pacing delay."""
    return Settings(
        api=ApiConfig(rate_limit_delay_seconds=0.0, max_retries=2, retry_backoff_base=0.0),
        storage=StoragePaths(
            lake_path=tmp_path / "lake",
            warehouse_path=tmp_path / "warehouse" / "setstream.duckdb",
            state_path=tmp_path / "state" / "pipeline_state.json",
            export_path=tmp_path / "exports",
        ),
        quality=QualityConfig(),
        logging=LoggingConfig(level="DEBUG"),
    )


# ============================================================================
# Warehouse Fixtures
# ============================================================================

@pytest.fixture
def conn() -> Generator[duckdb.DuckDBPyConnection, None, None]:
    """In-memory DuckDB connection."""
    connection = duckdb.connect(":memory:")
    yield connection
    connection.close()


# ============================================================================
# Sample Data
# ============================================================================

@pytest.fixture
def recent_day() -> date:
    """A date well inside the default rolling window."""
    return date.today() - timedelta(days=10)


@pytest.fixture
def sample_tournaments() -> pd.DataFrame:
    """Two tournaments."""
    return pd.DataFrame(
        {
            "No": pd.array([100, 200], dtype="Int64"),
            "Name": ["Beach Open", "World Tour Finals"],
            "Season": ["2024", "2024"],
            "StartDate": [date(2024, 5, 1), date(2024, 8, 1)],
            "EndDate": [date(2024, 5, 5), date(2024, 8, 6)],
            "CountryName": ["Brazil", "Italy"],
            "Gender": ["M", "W"],
            "Type": ["Open", "Finals"],
        }
    )


@pytest.fixture
def sample_matches() -> pd.DataFrame:
    """Three scored matches between X, Y and Z (out of date order)."""
    return pd.DataFrame(
        {
            "No": pd.array([3, 1, 2], dtype="Int64"),
            "NoTournament": pd.array([100, 100, 100], dtype="Int64"),
            "TeamNameA": ["X", "X", "Y"],
            "TeamNameB": ["Z", "Y", "Z"],
            "MatchPointsA": [2.0, 2.0, 2.0],
            "MatchPointsB": [1.0, 0.0, 1.0],
            "DateLocal": [date(2024, 5, 3), date(2024, 5, 1), date(2024, 5, 2)],
            "City": ["Rio", "Rio", "Rio"],
            "CountryName": ["Brazil", "Brazil", "Brazil"],
        }
    )


# ============================================================================
# Fake VIS Client
# ============================================================================

class FakeVisClient:
    """In-memory stand-in for VisClient.

    Serves fixed records and counts calls; ``failures`` maps
    (method, item_id) to an exception raised on every call.
    """

    def __init__(
        self,
        tournaments: list[dict] | None = None,
        matches: list[dict] | None = None,
        details: dict[int, list[dict]] | None = None,
        rankings: dict[int, list[dict]] | None = None,
        failures: dict[tuple[str, int | None], Exception] | None = None,
    ):
        self.tournaments = tournaments or []
        self.matches = matches or []
        self.details = details or {}
        self.rankings = rankings or {}
        self.failures = failures or {}
        self.calls: list[tuple[str, int | None]] = []

    def _record(self, method: str, item_id: int | None = None) -> None:
        self.calls.append((method, item_id))
        if (method, item_id) in self.failures:
            raise self.failures[(method, item_id)]

    def get_tournament_list(self, fields):
        self._record("get_tournament_list")
        return [dict(r) for r in self.tournaments]

    def get_match_list(self, fields):
        self._record("get_match_list")
        return [dict(r) for r in self.matches]

    def get_match(self, match_no, fields):
        self._record("get_match", match_no)
        return [dict(r) for r in self.details.get(match_no, [])]

    def get_tournament_ranking(self, tournament_no, fields):
        self._record("get_tournament_ranking", tournament_no)
        return [dict(r) for r in self.rankings.get(tournament_no, [])]

    def calls_to(self, method: str) -> list[int | None]:
        return [item for name, item in self.calls if name == method]

    def close(self):
        pass


def vis_records(recent_day: date) -> dict:
    """VIS-style string records for a small season: 2 tournaments, 4 matches."""
    d = [(recent_day + timedelta(days=i)).isoformat() for i in range(4)]
    matches = [
        {"No": "1", "NoTournament": "100", "TeamNameA": "X", "TeamNameB": "Y",
         "MatchPointsA": "2", "MatchPointsB": "0", "DateLocal": d[0], "City": "Rio", "CountryName": "Brazil"},
        {"No": "2", "NoTournament": "100", "TeamNameA": "Y", "TeamNameB": "Z",
         "MatchPointsA": "2", "MatchPointsB": "1", "DateLocal": d[1], "City": "Rio", "CountryName": "Brazil"},
        {"No": "3", "NoTournament": "200", "TeamNameA": "X", "TeamNameB": "Z",
         "MatchPointsA": "0", "MatchPointsB": "2", "DateLocal": d[2], "City": "Rome", "CountryName": "Italy"},
        {"No": "4", "NoTournament": "200", "TeamNameA": "Y", "TeamNameB": "X",
         "MatchPointsA": "", "MatchPointsB": "", "DateLocal": d[3], "City": "Rome", "CountryName": "Italy"},
    ]
    return {
        "tournaments": [
            {"No": "100", "Name": "Beach Open", "Season": str(recent_day.year),
             "StartDate": d[0], "EndDate": d[1], "CountryName": "Brazil", "Gender": "M", "Type": "Open"},
            {"No": "200", "Name": "Finals", "Season": str(recent_day.year),
             "StartDate": d[2], "EndDate": d[3], "CountryName": "Italy", "Gender": "M", "Type": "Finals"},
        ],
        "matches": matches,
        "details": {
            int(m["No"]): [{k: m[k] for k in ("No", "NoTournament", "DateLocal", "TeamNameA", "TeamNameB")}
                           | {"Status": "Finished"}]
            for m in matches
        },
        "rankings": {
            100: [{"Rank": "1", "TeamName": "X", "TeamCode": "XX", "NoTeam": "11"},
                  {"Rank": "2", "TeamName": "Y", "TeamCode": "YY", "NoTeam": "12"}],
            200: [{"Rank": "1", "TeamName": "Z", "TeamCode": "ZZ", "NoTeam": "13"}],
        },
    }


@pytest.fixture
def vis_data(recent_day: date) -> dict:
    """Fresh copy of the sample season records."""
    return vis_records(recent_day)


@pytest.fixture
def fake_client(vis_data: dict) -> FakeVisClient:
    """Fake client serving a small consistent season."""
    return FakeVisClient(**vis_data)


@pytest.fixture
def transient_error() -> TransientRemoteError:
    return TransientRemoteError("HTTP 503", status_code=503)


@pytest.fixture
def permanent_error() -> RemoteRequestError:
    return RemoteRequestError("HTTP 404", status_code=404)


@pytest.fixture
def make_client():
    """FakeVisClient constructor, for tests that need custom records."""
    return FakeVisClient
