"""Underdog wins derived from the Elo history."""

import logging
from typing import Optional

import pandas as pd

logger = logging.getLogger(__name__)

DEFAULT_UPSET_THRESHOLD = 0.5

UPSET_DTYPES = {
    "MatchNo": "Int64",
    "DateLocal": "object",
    "Winner": "object",
    "Loser": "object",
    "WinnerEloBefore": "float64",
    "WinnerEloAfter": "float64",
    "ExpectedWinProb": "float64",
    "SurpriseIndex": "float64",
}


def empty_upsets() -> pd.DataFrame:
    return pd.DataFrame({c: pd.Series(dtype=t) for c, t in UPSET_DTYPES.items()})


def detect_upsets(
    history: Optional[pd.DataFrame], threshold: float = DEFAULT_UPSET_THRESHOLD
) -> pd.DataFrame:
    """Winning history rows whose win was unlikely.

    ``SurpriseIndex = 1 - ExpectedScore``; a win is an upset when the index
    exceeds ``threshold``. Ties (WinFlag missing) are never upsets.

    Args:
        history: team_elo_history frame
        threshold: Minimum surprise (exclusive)

    Returns:
        Upsets sorted by SurpriseIndex descending (stable)
    """
    logger.info("Computing upsets...")

    if history is None or history.empty:
        logger.warning("No Elo history provided for upset calculation")
        return empty_upsets()

    wins = history[history["WinFlag"].astype("boolean").fillna(False).astype(bool)]
    surprise = 1 - wins["ExpectedScore"].astype(float)

    upsets = pd.DataFrame(
        {
            "MatchNo": wins["MatchNo"],
            "DateLocal": wins["DateLocal"],
            "Winner": wins["TeamName"],
            "Loser": wins["Opponent"],
            "WinnerEloBefore": wins["EloBefore"],
            "WinnerEloAfter": wins["EloAfter"],
            "ExpectedWinProb": wins["ExpectedScore"],
            "SurpriseIndex": surprise,
        }
    )
    upsets = upsets[upsets["SurpriseIndex"] > threshold]
    upsets = upsets.sort_values("SurpriseIndex", ascending=False, kind="mergesort")
    upsets = upsets.reset_index(drop=True).astype(UPSET_DTYPES)

    logger.info(f"upsets: {len(upsets)} of {len(wins)} wins above surprise {threshold}")
    return upsets
