"""Team Elo ratings and upset detection."""

from .elo import EloHistoryRecord, compute_team_elo, elo_step, expected_score
from .upsets import detect_upsets

__all__ = [
    "EloHistoryRecord",
    "compute_team_elo",
    "elo_step",
    "expected_score",
    "detect_upsets",
]
