"""Team Elo ratings computed as a fold over chronologically sorted matches.

``elo_step`` is a pure function of (ratings, match); ``compute_team_elo``
folds it over the matches ordered by (DateLocal, No) so the trajectory
doesn't depend on input order.
"""

import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from datetime import date, datetime
from typing import Any, Optional

import pandas as pd

logger = logging.getLogger(__name__)

DEFAULT_BASE_RATING = 1500.0
DEFAULT_K_FACTOR = 20.0

HISTORY_COLUMNS = {
    "MatchNo": "match_no",
    "DateLocal": "date_local",
    "TeamName": "team_name",
    "Opponent": "opponent",
    "EloBefore": "elo_before",
    "EloAfter": "elo_after",
    "ExpectedScore": "expected_score",
    "ActualScore": "actual_score",
    "WinFlag": "win_flag",
}

HISTORY_DTYPES = {
    "MatchNo": "Int64",
    "DateLocal": "object",
    "TeamName": "object",
    "Opponent": "object",
    "EloBefore": "float64",
    "EloAfter": "float64",
    "ExpectedScore": "float64",
    "ActualScore": "float64",
    "WinFlag": "boolean",
}


@dataclass(frozen=True)
class EloHistoryRecord:
    """One team's side of one rated match."""

    match_no: Optional[int]
    date_local: Optional[date]
    team_name: str
    opponent: str
    elo_before: float
    elo_after: float
    expected_score: float
    actual_score: float
    win_flag: Optional[bool]  # None on a tie

    def to_row(self) -> dict[str, Any]:
        values = asdict(self)
        return {column: values[attr] for column, attr in HISTORY_COLUMNS.items()}


def expected_score(rating_a: float, rating_b: float) -> float:
    """Probability that A beats B."""
    return 1 / (1 + 10 ** ((rating_b - rating_a) / 400))


def update_rating(rating: float, expected: float, actual: float, k_factor: float) -> float:
    return rating + k_factor * (actual - expected)


def _missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return bool(pd.isna(value))


def _as_date(value: Any) -> Optional[date]:
    if _missing(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = pd.to_datetime(value, errors="coerce")
    return None if pd.isna(parsed) else parsed.date()


def elo_step(
    ratings: Mapping[str, float],
    match: Mapping[str, Any],
    k_factor: float = DEFAULT_K_FACTOR,
    base_rating: float = DEFAULT_BASE_RATING,
) -> tuple[dict[str, float], list[EloHistoryRecord]]:
    """Rate one match.

    Args:
        ratings: Current rating per team (not modified)
        match: Row with No, DateLocal, TeamNameA, TeamNameB, MatchPointsA, MatchPointsB
        k_factor: Rating sensitivity
        base_rating: Rating of a team not yet in ``ratings``

    Returns:
        (new ratings, two history records), or the same ratings and no
        records if the match can't be rated (missing team, missing or
        non-numeric points)
    """
    team_a, team_b = match.get("TeamNameA"), match.get("TeamNameB")
    points_a, points_b = match.get("MatchPointsA"), match.get("MatchPointsB")
    match_no = match.get("No")

    if _missing(team_a) or _missing(team_b):
        logger.debug(f"Match {match_no}: missing team name, skipping Elo update")
        return dict(ratings), []
    if _missing(points_a) or _missing(points_b):
        logger.debug(f"Match {match_no}: missing scores, skipping Elo update")
        return dict(ratings), []

    team_a, team_b = str(team_a), str(team_b)
    points_a = pd.to_numeric(points_a, errors="coerce")
    points_b = pd.to_numeric(points_b, errors="coerce")
    if pd.isna(points_a) or pd.isna(points_b):
        logger.debug(f"Match {match_no}: non-numeric scores, skipping Elo update")
        return dict(ratings), []

    rating_a = ratings.get(team_a, base_rating)
    rating_b = ratings.get(team_b, base_rating)

    exp_a = expected_score(rating_a, rating_b)
    exp_b = 1 - exp_a

    points_a, points_b = float(points_a), float(points_b)
    if points_a > points_b:
        actual_a, actual_b, win_a, win_b = 1.0, 0.0, True, False
    elif points_b > points_a:
        actual_a, actual_b, win_a, win_b = 0.0, 1.0, False, True
    else:
        actual_a, actual_b, win_a, win_b = 0.5, 0.5, None, None

    new_a = update_rating(rating_a, exp_a, actual_a, k_factor)
    new_b = update_rating(rating_b, exp_b, actual_b, k_factor)

    match_no = None if _missing(match_no) else int(match_no)
    match_date = _as_date(match.get("DateLocal"))

    records = [
        EloHistoryRecord(match_no, match_date, team_a, team_b, rating_a, new_a, exp_a, actual_a, win_a),
        EloHistoryRecord(match_no, match_date, team_b, team_a, rating_b, new_b, exp_b, actual_b, win_b),
    ]
    return {**ratings, team_a: new_a, team_b: new_b}, records


def empty_history() -> pd.DataFrame:
    return pd.DataFrame({c: pd.Series(dtype=t) for c, t in HISTORY_DTYPES.items()})


def sort_matches(matches: pd.DataFrame) -> pd.DataFrame:
    """Matches ordered by (DateLocal, No), stable; undated rows last."""
    keyed = matches.assign(
        _sort_date=pd.to_datetime(matches["DateLocal"], errors="coerce"),
        _sort_no=pd.to_numeric(matches["No"], errors="coerce"),
    )
    keyed = keyed.sort_values(["_sort_date", "_sort_no"], kind="mergesort", na_position="last")
    return keyed.drop(columns=["_sort_date", "_sort_no"]).reset_index(drop=True)


def compute_team_elo(
    matches: Optional[pd.DataFrame],
    base_rating: float = DEFAULT_BASE_RATING,
    k_factor: float = DEFAULT_K_FACTOR,
) -> pd.DataFrame:
    """Compute the Elo history of every team.

    Args:
        matches: Rows with No, DateLocal, TeamNameA, TeamNameB, MatchPointsA, MatchPointsB
        base_rating: Starting rating of every team
        k_factor: Rating sensitivity

    Returns:
        team_elo_history frame, two rows per rated match in chronological order
    """
    logger.info("Computing Elo ratings for teams...")

    if matches is None or matches.empty:
        logger.warning("No matches provided for Elo calculation")
        return empty_history()

    required = ["No", "DateLocal", "TeamNameA", "TeamNameB", "MatchPointsA", "MatchPointsB"]
    ordered = sort_matches(matches.reindex(columns=list(dict.fromkeys([*matches.columns, *required]))))

    teams = pd.concat([ordered["TeamNameA"], ordered["TeamNameB"]]).dropna().astype(str).unique()
    ratings: dict[str, float] = {team: base_rating for team in teams if team.strip()}

    records: list[EloHistoryRecord] = []
    for match in ordered[required].to_dict("records"):
        ratings, step_records = elo_step(ratings, match, k_factor, base_rating)
        records.extend(step_records)

    if not records:
        logger.warning("No Elo history generated")
        return empty_history()

    history = pd.DataFrame([r.to_row() for r in records]).astype(HISTORY_DTYPES)
    logger.info(
        f"team_elo_history: {len(history)} rows for {len(records) // 2} rated matches, "
        f"{len(ratings)} teams"
    )
    return history
