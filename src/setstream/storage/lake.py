"""Parquet lake I/O.

Layout::

    <lake_path>/tournaments/Season=<yyyy|unknown>/part-0.parquet
    <lake_path>/matches/year=<yyyy|unknown>/part-0.parquet
    <lake_path>/match_details/year=<yyyy|unknown>/part-0.parquet   (or match_details.parquet)
    <lake_path>/tournament_rankings/Season=<yyyy|unknown>/part-0.parquet

Partitioned writes replace only the partitions present in the written frame.
Match details and rankings are fetched incrementally, so their writers merge
new rows with the stored ones first. Partition columns are always read back
as strings.
"""

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional

import pandas as pd
import pyarrow as pa
import pyarrow.dataset as ds
import pyarrow.parquet as pq

from ..config import LAKE_ENTITIES
from ..errors import StorageFailure

logger = logging.getLogger(__name__)

UNKNOWN_PARTITION = "unknown"


def write_to_lake(
    frame: Optional[pd.DataFrame],
    lake_path: str | Path,
    entity: str,
    partition_cols: list[str] | None = None,
) -> None:
    """Write a frame to the lake.

    Args:
        frame: Rows to write (None or empty is a no-op)
        lake_path: Lake root
        entity: Entity directory name
        partition_cols: Hive partition columns; None writes a single file

    Raises:
        StorageFailure: If the write fails
    """
    if frame is None or frame.empty:
        logger.info(f"No data to write for {entity}")
        return

    lake_path = Path(lake_path)
    entity_path = lake_path / entity
    logger.info(f"Writing {len(frame)} rows to lake: {entity}")

    try:
        if partition_cols:
            _write_partitioned(frame, entity_path, partition_cols)
            logger.info(f"Wrote {entity} partitioned by: {', '.join(partition_cols)}")
        else:
            _write_single_file(frame, lake_path, entity)
            logger.info(f"Wrote {entity} to {entity_path / f'{entity}.parquet'}")
    except (pa.ArrowException, OSError) as e:
        logger.error(f"Failed to write {entity} to lake: {e}")
        raise StorageFailure(f"Failed to write {entity} to lake: {e}") from e


def _write_partitioned(frame: pd.DataFrame, entity_path: Path, partition_cols: list[str]) -> None:
    missing = [c for c in partition_cols if c not in frame.columns]
    if missing:
        raise StorageFailure(f"Partition column(s) not in frame: {missing}")

    entity_path.mkdir(parents=True, exist_ok=True)

    # A previous unpartitioned write leaves files at the entity root
    for stray in entity_path.glob("*.parquet"):
        logger.info(f"Removing unpartitioned file before partitioned write: {stray}")
        stray.unlink()

    data = frame.copy()
    for column in partition_cols:
        data[column] = data[column].astype("string").fillna(UNKNOWN_PARTITION).astype(str)

    table = pa.Table.from_pandas(data, preserve_index=False)
    ds.write_dataset(
        table,
        base_dir=str(entity_path),
        format="parquet",
        partitioning=partition_cols,
        partitioning_flavor="hive",
        existing_data_behavior="delete_matching",
        basename_template="part-{i}.parquet",
    )


def _write_single_file(frame: pd.DataFrame, lake_path: Path, entity: str) -> None:
    lake_path.mkdir(parents=True, exist_ok=True)
    entity_path = lake_path / entity

    staging_dir = Path(tempfile.mkdtemp(prefix=f".{entity}.", dir=lake_path))
    try:
        table = pa.Table.from_pandas(frame, preserve_index=False)
        pq.write_table(table, staging_dir / f"{entity}.parquet")

        if entity_path.exists():
            retired = Path(tempfile.mkdtemp(prefix=f".{entity}.old.", dir=lake_path))
            retired.rmdir()
            entity_path.rename(retired)
            staging_dir.rename(entity_path)
            shutil.rmtree(retired, ignore_errors=True)
        else:
            staging_dir.rename(entity_path)
    finally:
        if staging_dir.exists():
            shutil.rmtree(staging_dir, ignore_errors=True)


def read_from_lake(lake_path: str | Path, entity: str) -> Optional[pd.DataFrame]:
    """Read an entity from the lake.

    Args:
        lake_path: Lake root
        entity: Entity directory name

    Returns:
        All rows as one frame, or None if the entity directory doesn't exist

    Raises:
        StorageFailure: If the files can't be read
    """
    entity_path = Path(lake_path) / entity

    if not entity_path.exists():
        logger.warning(f"Lake path does not exist: {entity_path}")
        return None

    logger.info(f"Reading from lake: {entity}")

    keys = _partition_keys(entity_path)
    partitioning = None
    if keys:
        partitioning = ds.partitioning(
            pa.schema([(key, pa.string()) for key in keys]), flavor="hive"
        )

    try:
        dataset = ds.dataset(str(entity_path), format="parquet", partitioning=partitioning)
        frame = dataset.to_table().to_pandas()
    except (pa.ArrowException, OSError) as e:
        raise StorageFailure(f"Failed to read {entity} from lake: {e}") from e

    logger.info(f"{entity}: {len(frame)} rows read from lake")
    return frame


def _partition_keys(entity_path: Path) -> list[str]:
    """Hive partition keys (in directory depth order) under an entity path."""
    keys: list[str] = []
    for parquet_file in entity_path.rglob("*.parquet"):
        relative = parquet_file.relative_to(entity_path).parts[:-1]
        if any(part.startswith((".", "_")) for part in relative):
            continue
        for part in relative:
            key, sep, _ = part.partition("=")
            if sep and key not in keys:
                keys.append(key)
    return keys


def read_all_from_lake(lake_path: str | Path) -> dict[str, Optional[pd.DataFrame]]:
    """Read every lake entity."""
    return {entity: read_from_lake(lake_path, entity) for entity in LAKE_ENTITIES}


# =============================================================================
# ENTITY WRITERS
# =============================================================================


def year_labels(values: pd.Series) -> pd.Series:
    """Year of each date as a string, ``"unknown"`` where missing."""
    years = pd.to_datetime(values, errors="coerce").dt.year
    return years.map(lambda y: str(int(y)) if pd.notna(y) else UNKNOWN_PARTITION)


def with_season(tournaments: pd.DataFrame) -> pd.DataFrame:
    """Copy of ``tournaments`` with a string ``Season`` for every row.

    Season comes from the VIS value when present, else the StartDate year,
    else ``"unknown"``.
    """
    data = tournaments.copy()
    derived = (
        year_labels(data["StartDate"])
        if "StartDate" in data.columns
        else pd.Series(UNKNOWN_PARTITION, index=data.index)
    )

    if "Season" in data.columns:
        season = data["Season"].astype("string").str.strip()
        season = season.mask(season.fillna("") == "")
        data["Season"] = season.fillna(derived).astype(str)
    else:
        data["Season"] = derived
    return data


def write_tournaments_to_lake(tournaments: Optional[pd.DataFrame], lake_path: str | Path) -> None:
    """Write tournaments partitioned by Season."""
    if tournaments is None or tournaments.empty:
        write_to_lake(tournaments, lake_path, "tournaments")
        return
    write_to_lake(with_season(tournaments), lake_path, "tournaments", partition_cols=["Season"])


def write_matches_to_lake(matches: Optional[pd.DataFrame], lake_path: str | Path) -> None:
    """Write matches partitioned by the year of DateLocal."""
    if matches is None or matches.empty:
        write_to_lake(matches, lake_path, "matches")
        return

    data = matches.copy()
    if "DateLocal" in data.columns:
        data["year"] = year_labels(data["DateLocal"])
    else:
        data["year"] = UNKNOWN_PARTITION
    write_to_lake(data, lake_path, "matches", partition_cols=["year"])


def merge_with_lake(
    frame: pd.DataFrame,
    lake_path: str | Path,
    entity: str,
    key: str,
    drop_columns: tuple[str, ...] = (),
) -> pd.DataFrame:
    """New rows plus the stored rows of ``entity`` whose key isn't among them.

    Incrementally fetched entities only carry the current run's items, so
    they are merged with what the lake already holds before a write.

    Args:
        frame: New rows (must contain ``key``)
        lake_path: Lake root
        entity: Entity directory name
        key: Column identifying an item; stored rows with a new key are replaced
        drop_columns: Derived columns removed from stored rows before merging
    """
    existing = read_from_lake(lake_path, entity)
    if existing is None or existing.empty or key not in existing.columns:
        return frame

    existing = existing.drop(columns=[c for c in drop_columns if c in existing.columns])
    new_keys = set(pd.to_numeric(frame[key], errors="coerce").dropna().astype(int))
    stored_keys = pd.to_numeric(existing[key], errors="coerce")
    kept = existing[~stored_keys.isin(new_keys)]

    logger.info(f"{entity}: merging {len(frame)} new rows with {len(kept)} stored rows")
    if kept.empty:
        return frame

    merged = pd.concat([kept, frame], ignore_index=True)
    if key in ("No", "NoTournament"):
        merged[key] = pd.to_numeric(merged[key], errors="coerce").astype("Int64")
    return merged


def write_match_details_to_lake(
    details: Optional[pd.DataFrame], lake_path: str | Path
) -> Optional[pd.DataFrame]:
    """Write match details, partitioned by year only when DateLocal is present.

    New details are merged with the stored ones.

    Returns:
        The full set of stored details, or None if nothing was written
    """
    if details is None or details.empty:
        write_to_lake(details, lake_path, "match_details")
        return None

    if "No" in details.columns:
        details = merge_with_lake(details, lake_path, "match_details", "No", drop_columns=("year",))

    if "DateLocal" not in details.columns:
        write_to_lake(details, lake_path, "match_details")
        return details

    data = details.copy()
    data["year"] = year_labels(data["DateLocal"])
    write_to_lake(data, lake_path, "match_details", partition_cols=["year"])
    return details


def write_tournament_rankings_to_lake(
    rankings: Optional[pd.DataFrame],
    lake_path: str | Path,
    tournaments: Optional[pd.DataFrame] = None,
) -> Optional[pd.DataFrame]:
    """Write tournament rankings partitioned by the Season of their tournament.

    New rankings are merged with the stored ones.

    Returns:
        The full set of stored rankings (with Season), or None if nothing was written
    """
    if rankings is None or rankings.empty:
        write_to_lake(rankings, lake_path, "tournament_rankings")
        return None

    data = rankings.copy()
    can_join = (
        "Season" not in data.columns
        and "NoTournament" in data.columns
        and tournaments is not None
        and not tournaments.empty
        and "No" in tournaments.columns
    )
    if can_join:
        seasons = with_season(tournaments)[["No", "Season"]].drop_duplicates("No")
        seasons = seasons.rename(columns={"No": "NoTournament"})
        seasons["NoTournament"] = pd.to_numeric(seasons["NoTournament"], errors="coerce").astype("Int64")
        data["NoTournament"] = pd.to_numeric(data["NoTournament"], errors="coerce").astype("Int64")
        data = data.merge(seasons, on="NoTournament", how="left")

    if "Season" not in data.columns:
        data["Season"] = UNKNOWN_PARTITION

    if "NoTournament" in data.columns:
        data = merge_with_lake(data, lake_path, "tournament_rankings", "NoTournament")

    write_to_lake(data, lake_path, "tournament_rankings", partition_cols=["Season"])
    return data
