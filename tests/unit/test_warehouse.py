"""Tests for the DuckDB warehouse layer."""

from datetime import date

import duckdb
import pandas as pd
import pytest

from setstream.errors import StorageFailure
from setstream.storage.warehouse import (
    ViewDefinition,
    close_warehouse,
    connect_warehouse,
    create_table,
    execute_derived_views,
    export_to_parquet,
    get_current_ratings,
    load_staging_tables,
    load_view_definitions,
    row_count,
    table_columns,
    table_exists,
    upsert_table,
    write_rating_outputs,
)


def history_frame() -> pd.DataFrame:
    """Elo history: X plays twice, Y once."""
    return pd.DataFrame(
        {
            "MatchNo": [1, 1, 2, 2],
            "DateLocal": [date(2024, 5, 1), date(2024, 5, 1), date(2024, 5, 2), date(2024, 5, 2)],
            "TeamName": ["X", "Y", "X", "Z"],
            "Opponent": ["Y", "X", "Z", "X"],
            "EloBefore": [1500.0, 1500.0, 1510.0, 1500.0],
            "EloAfter": [1510.0, 1490.0, 1520.0, 1490.0],
            "ExpectedScore": [0.5, 0.5, 0.514, 0.486],
            "ActualScore": [1.0, 0.0, 1.0, 0.0],
            "WinFlag": [True, False, True, False],
        }
    )


def upsets_frame() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "MatchNo": [2],
            "DateLocal": [date(2024, 5, 2)],
            "Winner": ["X"],
            "Loser": ["Z"],
            "WinnerEloBefore": [1510.0],
            "WinnerEloAfter": [1520.0],
            "ExpectedWinProb": [0.2],
            "SurpriseIndex": [0.8],
        }
    )


class TestConnections:
    """Tests for opening and closing connections."""

    def test_creates_parent_directory(self, tmp_path):
        """Test the database's parent directory is created."""
        path = tmp_path / "nested" / "wh.duckdb"

        conn = connect_warehouse(path)
        close_warehouse(conn)

        assert path.exists()

    def test_close_none(self):
        """Test closing None is a no-op."""
        close_warehouse(None)

    def test_close_twice(self):
        """Test closing a closed connection is harmless."""
        conn = connect_warehouse(":memory:")
        close_warehouse(conn)
        close_warehouse(conn)

    def test_read_only(self, tmp_path):
        """Test a read-only connection can't write."""
        path = tmp_path / "wh.duckdb"
        writer = connect_warehouse(path)
        writer.execute("CREATE TABLE t (a INTEGER)")
        close_warehouse(writer)

        reader = connect_warehouse(path, read_only=True)
        try:
            with pytest.raises(duckdb.Error):
                reader.execute("INSERT INTO t VALUES (1)")
        finally:
            close_warehouse(reader)


class TestCreateTable:
    """Tests for create_table."""

    def test_create(self, conn, sample_matches):
        """Test a table is created with the frame's rows and columns."""
        create_table(conn, "stg_matches", sample_matches, primary_key=["No"])

        assert table_exists(conn, "stg_matches")
        assert row_count(conn, "stg_matches") == 3
        assert table_columns(conn, "stg_matches")[:2] == ["No", "NoTournament"]

    def test_recreate_replaces(self, conn, sample_matches):
        """Test creating twice replaces the content."""
        create_table(conn, "stg_matches", sample_matches)
        create_table(conn, "stg_matches", sample_matches.head(1))

        assert row_count(conn, "stg_matches") == 1

    def test_empty_is_noop(self, conn):
        """Test an empty frame creates nothing."""
        create_table(conn, "stg_matches", pd.DataFrame())
        assert not table_exists(conn, "stg_matches")


class TestUpsertTable:
    """Tests for upsert_table."""

    def test_creates_when_missing(self, conn, sample_matches):
        """Test upserting into a missing table creates it."""
        upsert_table(conn, "stg_matches", sample_matches, ["No"])
        assert row_count(conn, "stg_matches") == 3

    def test_replaces_existing_keys(self, conn, sample_matches):
        """Test rows with existing keys are replaced, new keys inserted."""
        upsert_table(conn, "stg_matches", sample_matches, ["No"])

        update = sample_matches[sample_matches["No"] == 1].copy()
        update["City"] = "Paris"
        new_row = sample_matches[sample_matches["No"] == 2].copy()
        new_row["No"] = pd.array([4], dtype="Int64")
        upsert_table(conn, "stg_matches", pd.concat([update, new_row]), ["No"])

        rows = dict(conn.execute("SELECT No, City FROM stg_matches ORDER BY No").fetchall())
        assert rows == {1: "Paris", 2: "Rio", 3: "Rio", 4: "Rio"}

    def test_idempotent(self, conn, sample_matches):
        """Test upserting the same frame twice equals upserting once."""
        upsert_table(conn, "stg_matches", sample_matches, ["No"])
        once = conn.execute("SELECT * FROM stg_matches ORDER BY No").fetchdf()

        upsert_table(conn, "stg_matches", sample_matches, ["No"])
        twice = conn.execute("SELECT * FROM stg_matches ORDER BY No").fetchdf()

        pd.testing.assert_frame_equal(once, twice)

    def test_null_key_rows_not_duplicated(self, conn):
        """Test repeated upserts of a row with a null key keep a single copy."""
        frame = pd.DataFrame(
            {"No": pd.array([1, None], dtype="Int64"), "City": ["Rio", "Rome"]}
        )

        for _ in range(3):
            upsert_table(conn, "stg_matches", frame, ["No"])

        assert row_count(conn, "stg_matches") == 2
        null_rows = conn.execute("SELECT City FROM stg_matches WHERE No IS NULL").fetchall()
        assert null_rows == [("Rome",)]

    def test_columns_matched_by_name(self, conn, sample_matches):
        """Test a frame with reordered columns lands in the right columns."""
        upsert_table(conn, "stg_matches", sample_matches, ["No"])

        reordered = sample_matches[list(reversed(sample_matches.columns))].head(1).copy()
        reordered["TeamNameA"] = "Q"
        upsert_table(conn, "stg_matches", reordered, ["No"])

        name = conn.execute("SELECT TeamNameA FROM stg_matches WHERE No = 3").fetchone()[0]
        assert name == "Q"

    def test_failure_rolls_back(self, conn, sample_matches):
        """Test an unknown column fails and leaves the table unchanged."""
        upsert_table(conn, "stg_matches", sample_matches, ["No"])

        bad = sample_matches.head(1).copy()
        bad["NotAColumn"] = 1
        with pytest.raises(StorageFailure, match="stg_matches"):
            upsert_table(conn, "stg_matches", bad, ["No"])

        assert row_count(conn, "stg_matches") == 3

    def test_empty_is_noop(self, conn, sample_matches):
        upsert_table(conn, "stg_matches", sample_matches, ["No"])
        upsert_table(conn, "stg_matches", pd.DataFrame(), ["No"])
        assert row_count(conn, "stg_matches") == 3


class TestLoadStagingTables:
    """Tests for load_staging_tables."""

    def test_loads_all_entities(self, conn, sample_tournaments, sample_matches):
        """Test each entity goes to its staging table."""
        rankings = pd.DataFrame({"NoTournament": [100], "Rank": ["1"], "TeamName": ["X"]})

        load_staging_tables(
            conn,
            {
                "tournaments": sample_tournaments,
                "matches": sample_matches,
                "match_details": None,
                "tournament_rankings": rankings,
            },
        )

        assert row_count(conn, "stg_tournaments") == 2
        assert row_count(conn, "stg_matches") == 3
        assert row_count(conn, "stg_tournament_rankings") == 1
        assert not table_exists(conn, "stg_match_details")

    def test_incremental_load_accumulates(self, conn, sample_matches):
        """Test a second load adds new matches and keeps old ones."""
        load_staging_tables(conn, {"matches": sample_matches.head(2)})
        load_staging_tables(conn, {"matches": sample_matches.tail(2)})

        assert row_count(conn, "stg_matches") == 3


class TestRatingOutputs:
    """Tests for write_rating_outputs and get_current_ratings."""

    def test_write_and_read_current(self, conn):
        """Test the latest EloAfter per team is returned, highest first."""
        write_rating_outputs(conn, history_frame(), upsets_frame())

        current = get_current_ratings(conn)

        assert list(current["TeamName"]) == ["X", "Y", "Z"]
        assert list(current["CurrentElo"]) == [1520.0, 1490.0, 1490.0]
        assert list(current["LastMatchNo"]) == [2, 1, 2]
        assert row_count(conn, "upsets") == 1

    def test_limit(self, conn):
        write_rating_outputs(conn, history_frame(), upsets_frame())
        assert len(get_current_ratings(conn, limit=1)) == 1

    def test_replaces_previous(self, conn):
        """Test a second write replaces both tables."""
        write_rating_outputs(conn, history_frame(), upsets_frame())
        write_rating_outputs(conn, history_frame().head(2), upsets_frame().head(0))

        assert row_count(conn, "team_elo_history") == 2
        assert row_count(conn, "upsets") == 0

    def test_no_history_table(self, conn):
        """Test an empty frame with the expected columns before any run."""
        current = get_current_ratings(conn)

        assert current.empty
        assert list(current.columns) == ["TeamName", "CurrentElo", "LastMatchDate", "LastMatchNo"]


class TestViewDefinitions:
    """Tests for load_view_definitions and execute_derived_views."""

    def test_load_sorted_with_requires(self, tmp_path):
        """Test files are read in name order with their requires lists."""
        (tmp_path / "b_view.sql").write_text("-- requires: t1, t2\nCREATE VIEW b AS SELECT 1")
        (tmp_path / "a_view.sql").write_text("CREATE VIEW a AS SELECT 1")

        definitions = load_view_definitions(tmp_path)

        assert [d.name for d in definitions] == ["a_view", "b_view"]
        assert definitions[0].requires == ()
        assert definitions[1].requires == ("t1", "t2")

    def test_packaged_definitions(self):
        """Test the packaged mart definitions declare their inputs."""
        definitions = load_view_definitions()

        names = [d.name for d in definitions]
        assert "mart_team_elo_history" in names
        assert all(d.requires for d in definitions)

    def test_missing_directory(self, tmp_path):
        with pytest.raises(StorageFailure, match="not found"):
            load_view_definitions(tmp_path / "nope")

    def test_execute_in_order(self, conn):
        """Test later definitions can use earlier ones."""
        applied = execute_derived_views(
            conn,
            [
                ("base", "CREATE OR REPLACE VIEW base AS SELECT 1 AS n"),
                ViewDefinition("top", "CREATE OR REPLACE VIEW top AS SELECT n + 1 AS n FROM base"),
            ],
        )

        assert applied == ["base", "top"]
        assert conn.execute("SELECT n FROM top").fetchone()[0] == 2

    def test_failure_names_definition(self, conn):
        """Test a failing definition raises naming it and stops."""
        with pytest.raises(StorageFailure, match="'broken'"):
            execute_derived_views(
                conn,
                [
                    ("broken", "CREATE VIEW broken AS SELECT * FROM no_such_table"),
                    ("after", "CREATE VIEW after_view AS SELECT 1"),
                ],
            )

        assert not table_exists(conn, "after_view")

    def test_packaged_marts_run(self, conn, sample_tournaments, sample_matches):
        """Test every packaged mart applies against populated inputs."""
        rankings = pd.DataFrame(
            {"NoTournament": pd.array([100], dtype="Int64"), "Rank": ["1"],
             "TeamName": ["X"], "TeamCode": ["XX"], "NoTeam": ["11"]}
        )
        load_staging_tables(
            conn,
            {"tournaments": sample_tournaments, "matches": sample_matches,
             "tournament_rankings": rankings},
        )
        write_rating_outputs(conn, history_frame(), upsets_frame())

        applied = execute_derived_views(conn, load_view_definitions())

        assert len(applied) == 4
        for name in applied:
            conn.execute(f"SELECT * FROM {name}").fetchall()


class TestExport:
    """Tests for export_to_parquet."""

    def test_export(self, conn, tmp_path):
        """Test the export file holds the table's rows."""
        write_rating_outputs(conn, history_frame(), upsets_frame())

        path = export_to_parquet(conn, "team_elo_history", tmp_path / "out" / "history.parquet")

        assert path.exists()
        assert pd.read_parquet(path).shape[0] == 4

    def test_export_missing_table(self, conn, tmp_path):
        with pytest.raises(StorageFailure):
            export_to_parquet(conn, "nope", tmp_path / "x.parquet")
