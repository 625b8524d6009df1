"""Entity extraction from the VIS service.

List extracts (tournaments, matches) fail the run if the remote keeps
failing; batch extracts (match details, tournament rankings) absorb per-item
failures and report which items actually returned data so the state only
grows by ids that were really fetched.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Optional

import pandas as pd

from ..config import Settings
from ..errors import ExhaustedRetries, ItemExtractionFailure, RemoteRequestError, TransientRemoteError
from .client import VisClient
from .retry import RateLimiter, RetryRateLimiter
from .state import PipelineState

logger = logging.getLogger(__name__)

MATCH_PROGRESS_EVERY = 10
TOURNAMENT_PROGRESS_EVERY = 5

ID_COLUMNS = ("No", "NoTournament")
POINT_COLUMNS = ("MatchPointsA", "MatchPointsB")


@dataclass
class BatchResult:
    """Combined rows of a batch extract plus the ids that returned data."""

    frame: pd.DataFrame = field(default_factory=pd.DataFrame)
    succeeded_ids: list[int] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return self.frame.empty


class Extractor:
    """Extracts VIS entities through a shared rate limiter.

    Usage:
        >>> with VisClient(settings.api.base_url) as client:
        ...     extractor = Extractor(client, settings)
        ...     matches = extractor.extract_matches()
        ...     details = extractor.extract_match_details_batch(matches["No"], state)
    """

    def __init__(
        self,
        client: VisClient,
        settings: Settings,
        limiter: RetryRateLimiter | None = None,
    ):
        """Initialize extractor.

        Args:
            client: VIS client
            settings: Pipeline settings (api section is used)
            limiter: Retry/pacing wrapper (one is created if None)
        """
        self.client = client
        self.settings = settings
        self.limiter = limiter or RetryRateLimiter(
            RateLimiter(min_interval=settings.api.rate_limit_delay_seconds)
        )

    def _call(
        self,
        operation: Callable[[], list[dict[str, str]]],
        description: str,
        on_error: Callable[[BaseException, int], Any] | None = None,
    ) -> pd.DataFrame:
        api = self.settings.api
        records = self.limiter.execute(
            operation,
            max_retries=api.max_retries,
            backoff_base=api.retry_backoff_base,
            min_interval=api.rate_limit_delay_seconds,
            on_error=on_error,
            retry_on=(TransientRemoteError,),
            description=description,
        )
        return pd.DataFrame.from_records(records) if records else pd.DataFrame()

    # =========================================================================
    # LIST EXTRACTS
    # =========================================================================

    def extract_tournaments(self, fields: list[str] | None = None) -> pd.DataFrame:
        """Extract the tournament list.

        Args:
            fields: VIS attributes to request (default from settings)

        Returns:
            Cleaned tournaments frame (may be empty)

        Raises:
            ExhaustedRetries: If the remote kept failing
            RemoteRequestError: On a non-retryable response
        """
        fields = fields or self.settings.api.fields.tournament
        logger.info("Extracting tournament list...")

        frame = self._call(lambda: self.client.get_tournament_list(fields), "tournament list")
        if frame.empty:
            logger.warning("No tournaments extracted!")
            return frame

        for column in ("StartDate", "EndDate"):
            _parse_date_column(frame, column)
        _cast_id_columns(frame)

        log_frame_summary(frame, "tournaments")
        return frame

    def extract_matches(self, fields: list[str] | None = None) -> pd.DataFrame:
        """Extract the match list.

        Args:
            fields: VIS attributes to request (default from settings)

        Returns:
            Cleaned matches frame (may be empty)
        """
        fields = fields or self.settings.api.fields.match
        logger.info("Extracting match list...")

        frame = self._call(lambda: self.client.get_match_list(fields), "match list")
        if frame.empty:
            logger.warning("No matches extracted!")
            return frame

        _parse_date_column(frame, "DateLocal")
        _cast_id_columns(frame)
        _cast_point_columns(frame)

        log_frame_summary(frame, "matches")
        return frame

    # =========================================================================
    # SINGLE ITEMS
    # =========================================================================

    def extract_match_detail(self, match_no: int) -> pd.DataFrame:
        """Extract the detail rows of one match.

        Rows lacking ``No`` are stamped with ``match_no``.
        """
        fields = self.settings.api.fields.match_detail
        logger.debug(f"Extracting match detail: No={match_no}")

        def _warn(error: BaseException, attempt: int) -> None:
            logger.warning(f"Match {match_no} detail fetch failed (attempt {attempt}): {error}")

        frame = self._call(
            lambda: self.client.get_match(match_no, fields),
            f"match {match_no} detail",
            on_error=_warn,
        )
        if frame.empty:
            return frame

        _fill_key(frame, "No", match_no)
        _parse_date_column(frame, "DateLocal")
        _cast_id_columns(frame)
        _cast_point_columns(frame)
        return frame

    def extract_tournament_ranking(self, tournament_no: int) -> pd.DataFrame:
        """Extract the final ranking of one tournament.

        Rows lacking ``NoTournament`` are stamped with ``tournament_no``.
        """
        fields = self.settings.api.fields.tournament_ranking
        logger.debug(f"Extracting tournament ranking: No={tournament_no}")

        def _warn(error: BaseException, attempt: int) -> None:
            logger.warning(
                f"Tournament {tournament_no} ranking fetch failed (attempt {attempt}): {error}"
            )

        frame = self._call(
            lambda: self.client.get_tournament_ranking(tournament_no, fields),
            f"tournament {tournament_no} ranking",
            on_error=_warn,
        )
        if frame.empty:
            return frame

        _fill_key(frame, "NoTournament", tournament_no)
        _cast_id_columns(frame)
        return frame

    # =========================================================================
    # BATCHES
    # =========================================================================

    def extract_match_details_batch(
        self, match_nos: Iterable[Any], state: PipelineState
    ) -> BatchResult:
        """Fetch details for every match not yet in ``state``.

        Args:
            match_nos: Candidate match numbers (duplicates and missing values ignored)
            state: Current pipeline state

        Returns:
            BatchResult with the combined detail rows and the match numbers
            that returned data
        """
        return self._run_batch(
            kind="match",
            label="match details",
            requested=match_nos,
            already_fetched=state.fetched_match_nos,
            fetch=self.extract_match_detail,
            progress_every=MATCH_PROGRESS_EVERY,
        )

    def extract_tournament_rankings_batch(
        self, tournament_nos: Iterable[Any], state: PipelineState
    ) -> BatchResult:
        """Fetch rankings for every tournament not yet in ``state``."""
        return self._run_batch(
            kind="tournament",
            label="tournament rankings",
            requested=tournament_nos,
            already_fetched=state.fetched_tournament_nos,
            fetch=self.extract_tournament_ranking,
            progress_every=TOURNAMENT_PROGRESS_EVERY,
        )

    def _run_batch(
        self,
        kind: str,
        label: str,
        requested: Iterable[Any],
        already_fetched: set[int],
        fetch: Callable[[int], pd.DataFrame],
        progress_every: int,
    ) -> BatchResult:
        ids_to_fetch = [i for i in unique_ids(requested) if i not in already_fetched]

        if not ids_to_fetch:
            logger.info(f"No new {label} to fetch")
            return BatchResult()

        total = len(ids_to_fetch)
        logger.info(f"Fetching {label} for {total} new {kind}(s)...")

        frames: list[pd.DataFrame] = []
        succeeded: list[int] = []

        for position, item_id in enumerate(ids_to_fetch, start=1):
            if position % progress_every == 0:
                logger.info(f"Progress: {position}/{total} {label} fetched")

            try:
                frame = fetch(item_id)
            except (ExhaustedRetries, RemoteRequestError) as e:
                failure = ItemExtractionFailure(kind, item_id, e)
                logger.error(str(failure))
                continue

            if frame.empty:
                logger.debug(f"No data returned for {kind} {item_id}")
                continue

            frames.append(frame)
            succeeded.append(item_id)

        combined = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()
        logger.info(f"Fetched {label}: {len(succeeded)}/{total} succeeded")
        log_frame_summary(combined, label.replace(" ", "_"))

        return BatchResult(frame=combined, succeeded_ids=succeeded)


def unique_ids(values: Optional[Iterable[Any]]) -> list[int]:
    """Deduplicate ids preserving first-seen order, dropping missing values."""
    if values is None:
        return []
    seen: set[int] = set()
    ids: list[int] = []
    for value in values:
        if value is None or pd.isna(value):
            continue
        item_id = int(value)
        if item_id not in seen:
            seen.add(item_id)
            ids.append(item_id)
    return ids


def filter_rolling_window(
    frame: Optional[pd.DataFrame],
    date_column: str = "DateLocal",
    *,
    window_days: int,
    today: date | None = None,
) -> pd.DataFrame:
    """Keep rows whose date falls within the last ``window_days`` days.

    Args:
        frame: Input rows (None or empty returns an empty frame)
        date_column: Column holding the row date
        window_days: Window length in days
        today: Reference date (default today)

    Returns:
        Rows with ``date >= today - window_days``; rows without a date are dropped
    """
    if frame is None or frame.empty:
        return pd.DataFrame() if frame is None else frame.copy()

    if date_column not in frame.columns:
        raise ValueError(f"Cannot apply rolling window: column {date_column!r} not found")

    cutoff = pd.Timestamp((today or date.today()) - timedelta(days=window_days))
    dates = pd.to_datetime(frame[date_column], errors="coerce")

    filtered = frame[dates.notna() & (dates >= cutoff)].reset_index(drop=True)

    before, after = len(frame), len(filtered)
    logger.info(
        f"Rolling window filter ({window_days} days): {before} -> {after} rows "
        f"(removed {before - after})"
    )
    return filtered


def log_frame_summary(frame: Optional[pd.DataFrame], name: str) -> None:
    """Log row/column counts of an extracted frame."""
    if frame is None or frame.empty:
        logger.info(f"{name}: no rows")
        return
    logger.info(f"{name}: {len(frame)} rows, {len(frame.columns)} columns")


# =============================================================================
# CLEANING HELPERS (in place)
# =============================================================================


def _parse_date_column(frame: pd.DataFrame, column: str) -> None:
    if column not in frame.columns:
        return
    raw = frame[column]
    parsed = pd.to_datetime(raw, errors="coerce")
    unparseable = int((parsed.isna() & raw.notna() & (raw.astype(str).str.strip() != "")).sum())
    if unparseable:
        logger.warning(f"{unparseable} value(s) in {column} could not be parsed as dates")
    frame[column] = parsed.dt.date.astype(object).where(parsed.notna(), None)


def _cast_id_columns(frame: pd.DataFrame) -> None:
    for column in ID_COLUMNS:
        if column in frame.columns:
            frame[column] = pd.to_numeric(frame[column], errors="coerce").astype("Int64")


def _cast_point_columns(frame: pd.DataFrame) -> None:
    for column in POINT_COLUMNS:
        if column in frame.columns:
            frame[column] = pd.to_numeric(frame[column], errors="coerce").astype(float)


def _fill_key(frame: pd.DataFrame, column: str, value: int) -> None:
    if column not in frame.columns:
        frame[column] = value
    else:
        frame[column] = frame[column].where(
            frame[column].notna() & (frame[column].astype(str).str.strip() != ""), value
        )
