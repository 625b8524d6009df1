"""DuckDB warehouse: staging tables, rating outputs, derived views, exports.

The pipeline holds a single read-write connection per run. Every write that
touches more than one statement runs in an explicit transaction and is
rolled back on failure, leaving tables as they were before the call.
"""

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import duckdb
import pandas as pd

from ..errors import StorageFailure

logger = logging.getLogger(__name__)

DEFAULT_MARTS_DIR = Path(__file__).resolve().parent.parent / "sql" / "marts"

# (lake entity, staging table, primary key); None = recreated each run
STAGING_TABLES: tuple[tuple[str, str, Optional[list[str]]], ...] = (
    ("tournaments", "stg_tournaments", ["No"]),
    ("matches", "stg_matches", ["No"]),
    ("match_details", "stg_match_details", ["No"]),
    ("tournament_rankings", "stg_tournament_rankings", None),
)

ELO_HISTORY_TABLE = "team_elo_history"
UPSETS_TABLE = "upsets"

_REQUIRES = re.compile(r"^\s*--\s*requires:\s*(.+)$", re.IGNORECASE | re.MULTILINE)


def quote_identifier(name: str) -> str:
    """Double-quote an SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


# =============================================================================
# CONNECTIONS
# =============================================================================


def connect_warehouse(path: str | Path, read_only: bool = False) -> duckdb.DuckDBPyConnection:
    """Open a DuckDB connection.

    Args:
        path: Database file (``":memory:"`` for an in-memory database)
        read_only: Open read-only (readers such as the CLI)

    Returns:
        DuckDB connection
    """
    path_str = str(path)
    if path_str != ":memory:":
        Path(path_str).parent.mkdir(parents=True, exist_ok=True)

    conn = duckdb.connect(path_str, read_only=read_only)
    logger.debug(f"DuckDB connection opened: {path_str} (read_only={read_only})")
    return conn


def close_warehouse(conn: Optional[duckdb.DuckDBPyConnection]) -> None:
    """Close a connection; safe to call with None or twice."""
    if conn is None:
        return
    conn.close()
    logger.debug("DuckDB connection closed")


def table_exists(conn: duckdb.DuckDBPyConnection, name: str) -> bool:
    """Whether a table or view called ``name`` exists in the main schema."""
    row = conn.execute(
        "SELECT COUNT(*) FROM information_schema.tables "
        "WHERE table_schema = 'main' AND table_name = ?",
        [name],
    ).fetchone()
    return bool(row and row[0])


def table_columns(conn: duckdb.DuckDBPyConnection, name: str) -> list[str]:
    """Column names of a table, in order."""
    rows = conn.execute(
        "SELECT column_name FROM information_schema.columns "
        "WHERE table_schema = 'main' AND table_name = ? ORDER BY ordinal_position",
        [name],
    ).fetchall()
    return [r[0] for r in rows]


def row_count(conn: duckdb.DuckDBPyConnection, name: str) -> int:
    return conn.execute(f"SELECT COUNT(*) FROM {quote_identifier(name)}").fetchone()[0]


# =============================================================================
# TABLE WRITES
# =============================================================================


def create_table(
    conn: duckdb.DuckDBPyConnection,
    name: str,
    frame: Optional[pd.DataFrame],
    primary_key: list[str] | None = None,
) -> None:
    """Drop and recreate a table from a frame.

    Args:
        conn: DuckDB connection
        name: Table name (e.g., "stg_tournaments")
        frame: Rows (None or empty is a no-op)
        primary_key: Columns to index as ``idx_<name>_pk``

    Raises:
        StorageFailure: If the table couldn't be created
    """
    if frame is None or frame.empty:
        logger.warning(f"No data provided for {name}")
        return

    logger.info(f"Creating table: {name}")
    source = f"__{name}_source"
    table = quote_identifier(name)

    conn.register(source, frame)
    try:
        conn.begin()
        conn.execute(f"DROP TABLE IF EXISTS {table}")
        conn.execute(f"CREATE TABLE {table} AS SELECT * FROM {quote_identifier(source)}")
        conn.commit()
    except Exception as e:
        conn.rollback()
        logger.error(f"Failed to create {name}: {e}")
        raise StorageFailure(f"Failed to create {name}: {e}") from e
    finally:
        conn.unregister(source)

    if primary_key:
        _create_key_index(conn, name, primary_key)

    logger.info(f"{name}: {row_count(conn, name)} rows")


def _create_key_index(conn: duckdb.DuckDBPyConnection, name: str, primary_key: list[str]) -> None:
    index = quote_identifier(f"idx_{name}_pk")
    columns = ", ".join(quote_identifier(c) for c in primary_key)
    try:
        conn.execute(f"CREATE INDEX {index} ON {quote_identifier(name)} ({columns})")
        logger.debug(f"Created index on {name} ({', '.join(primary_key)})")
    except duckdb.Error as e:
        logger.warning(f"Failed to create index on {name}: {e}")


def upsert_table(
    conn: duckdb.DuckDBPyConnection,
    name: str,
    frame: Optional[pd.DataFrame],
    primary_key: list[str],
) -> None:
    """Insert new rows and replace rows whose key already exists.

    Runs in one transaction: the frame is staged into a scratch temp table,
    target rows with a matching key tuple (NULL matches NULL) are deleted,
    and every scratch row is inserted by column name. Applying the same frame
    twice leaves the same content as applying it once.

    Args:
        conn: DuckDB connection
        name: Target table
        frame: New rows (None or empty is a no-op)
        primary_key: Key columns

    Raises:
        StorageFailure: On any error (the table is left unchanged)
    """
    if frame is None or frame.empty:
        logger.info(f"No new data to upsert into {name}")
        return

    if not table_exists(conn, name):
        logger.info(f"{name} does not exist, creating...")
        create_table(conn, name, frame, primary_key)
        return

    if not primary_key:
        raise StorageFailure(f"Upsert into {name} requires a primary key")

    logger.info(f"Upserting {len(frame)} rows into {name}")

    source = f"__{name}_source"
    scratch = quote_identifier(f"{name}__scratch")
    table = quote_identifier(name)
    # NULL keys match NULL keys
    key_match = " AND ".join(
        f"{table}.{quote_identifier(c)} IS NOT DISTINCT FROM s.{quote_identifier(c)}"
        for c in primary_key
    )

    conn.register(source, frame)
    try:
        conn.begin()
        conn.execute(
            f"CREATE OR REPLACE TEMP TABLE {scratch} AS SELECT * FROM {quote_identifier(source)}"
        )
        deleted = conn.execute(
            f"DELETE FROM {table} WHERE EXISTS (SELECT 1 FROM {scratch} s WHERE {key_match})"
        ).fetchone()[0]
        inserted = conn.execute(f"INSERT INTO {table} BY NAME SELECT * FROM {scratch}").fetchone()[0]
        conn.execute(f"DROP TABLE {scratch}")
        conn.commit()
    except Exception as e:
        conn.rollback()
        logger.error(f"Failed to upsert into {name}: {e}")
        raise StorageFailure(f"Failed to upsert into {name}: {e}") from e
    finally:
        conn.unregister(source)

    logger.info(f"{name}: replaced {deleted} row(s), inserted {inserted} row(s)")


def load_staging_tables(
    conn: duckdb.DuckDBPyConnection, lake_data: dict[str, Optional[pd.DataFrame]]
) -> None:
    """Load extracted entities into the staging tables.

    Keyed tables are upserted on ``No``; ``stg_tournament_rankings`` is
    recreated from the given rows.

    Args:
        conn: DuckDB connection
        lake_data: Entity name -> frame (missing or None entities are skipped)
    """
    logger.info("Loading staging tables...")

    for entity, table, primary_key in STAGING_TABLES:
        frame = lake_data.get(entity)
        if frame is None:
            continue
        if primary_key:
            upsert_table(conn, table, frame, primary_key)
        else:
            create_table(conn, table, frame)

    logger.info("Staging tables loaded")


def write_rating_outputs(
    conn: duckdb.DuckDBPyConnection, history: pd.DataFrame, upsets: pd.DataFrame
) -> None:
    """Replace ``team_elo_history`` and ``upsets`` in one transaction.

    Raises:
        StorageFailure: If either table couldn't be written (neither changes)
    """
    logger.info(f"Writing {len(history)} Elo history rows and {len(upsets)} upsets")

    outputs = ((ELO_HISTORY_TABLE, history), (UPSETS_TABLE, upsets))
    for table, frame in outputs:
        conn.register(f"__{table}_source", frame)
    try:
        conn.begin()
        for table, _ in outputs:
            conn.execute(
                f"CREATE OR REPLACE TABLE {quote_identifier(table)} AS "
                f"SELECT * FROM {quote_identifier(f'__{table}_source')}"
            )
        conn.commit()
    except Exception as e:
        conn.rollback()
        logger.error(f"Failed to write rating outputs: {e}")
        raise StorageFailure(f"Failed to write rating outputs: {e}") from e
    finally:
        for table, _ in outputs:
            conn.unregister(f"__{table}_source")

    logger.info("Rating outputs written")


# =============================================================================
# DERIVED VIEWS
# =============================================================================


@dataclass(frozen=True)
class ViewDefinition:
    """A named SQL statement producing a derived view."""

    name: str
    sql: str
    requires: tuple[str, ...] = field(default_factory=tuple)


def load_view_definitions(directory: str | Path | None = None) -> list[ViewDefinition]:
    """Read ``*.sql`` view definitions in file name order.

    A ``-- requires: a, b`` comment line lists the tables a definition reads.

    Args:
        directory: Definitions directory (default: packaged sql/marts)

    Raises:
        StorageFailure: If the directory doesn't exist
    """
    directory = Path(directory) if directory else DEFAULT_MARTS_DIR
    if not directory.is_dir():
        raise StorageFailure(f"View definitions directory not found: {directory}")

    definitions = []
    for sql_file in sorted(directory.glob("*.sql")):
        sql = sql_file.read_text(encoding="utf-8")
        requires: list[str] = []
        for match in _REQUIRES.finditer(sql):
            requires.extend(t.strip() for t in match.group(1).split(",") if t.strip())
        definitions.append(ViewDefinition(sql_file.stem, sql, tuple(requires)))

    logger.info(f"Found {len(definitions)} view definition(s) in {directory}")
    return definitions


def execute_derived_views(
    conn: duckdb.DuckDBPyConnection,
    definitions: Iterable[ViewDefinition | tuple[str, str]],
) -> list[str]:
    """Apply view definitions in order.

    Args:
        conn: DuckDB connection
        definitions: ViewDefinitions or (name, sql) pairs

    Returns:
        Names of the applied definitions

    Raises:
        StorageFailure: On the first failing definition (later ones are not run)
    """
    applied = []
    for definition in definitions:
        name, sql = (
            (definition.name, definition.sql)
            if isinstance(definition, ViewDefinition)
            else definition
        )
        logger.info(f"Executing view definition: {name}")
        try:
            conn.execute(sql)
        except duckdb.Error as e:
            logger.error(f"Failed to execute {name}: {e}")
            raise StorageFailure(f"View definition '{name}' failed: {e}") from e
        applied.append(name)

    logger.info(f"Applied {len(applied)} view definition(s)")
    return applied


# =============================================================================
# READS AND EXPORTS
# =============================================================================

CURRENT_RATINGS_SQL = f"""
SELECT
    TeamName,
    EloAfter AS CurrentElo,
    DateLocal AS LastMatchDate,
    MatchNo AS LastMatchNo
FROM (
    SELECT
        TeamName,
        EloAfter,
        DateLocal,
        MatchNo,
        ROW_NUMBER() OVER (
            PARTITION BY TeamName ORDER BY DateLocal DESC, MatchNo DESC
        ) AS rn
    FROM {ELO_HISTORY_TABLE}
)
WHERE rn = 1
ORDER BY CurrentElo DESC, TeamName
"""


def get_current_ratings(conn: duckdb.DuckDBPyConnection, limit: int | None = None) -> pd.DataFrame:
    """Latest ``EloAfter`` per team, highest first.

    Returns an empty frame if ratings haven't been written yet.
    """
    if not table_exists(conn, ELO_HISTORY_TABLE):
        logger.warning(f"{ELO_HISTORY_TABLE} table does not exist")
        return pd.DataFrame(columns=["TeamName", "CurrentElo", "LastMatchDate", "LastMatchNo"])

    sql = CURRENT_RATINGS_SQL
    if limit is not None:
        sql += f"LIMIT {int(limit)}"
    return conn.execute(sql).fetchdf()


def export_to_parquet(
    conn: duckdb.DuckDBPyConnection, table: str, output_path: str | Path
) -> Path:
    """Export a table or view to a Parquet file with DuckDB ``COPY``.

    Raises:
        StorageFailure: If the export fails
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"Exporting {table} to {output_path}")

    target = str(output_path).replace("'", "''")
    try:
        conn.execute(
            f"COPY (SELECT * FROM {quote_identifier(table)}) TO '{target}' (FORMAT PARQUET)"
        )
    except duckdb.Error as e:
        logger.error(f"Export failed: {e}")
        raise StorageFailure(f"Failed to export {table}: {e}") from e

    logger.info(f"Export complete: {output_path}")
    return output_path
