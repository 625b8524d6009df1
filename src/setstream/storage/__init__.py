"""Parquet lake and DuckDB warehouse."""

from .lake import read_all_from_lake, read_from_lake, write_to_lake
from .warehouse import (
    ViewDefinition,
    connect_warehouse,
    close_warehouse,
    create_table,
    execute_derived_views,
    export_to_parquet,
    get_current_ratings,
    load_staging_tables,
    load_view_definitions,
    upsert_table,
    write_rating_outputs,
)

__all__ = [
    "write_to_lake",
    "read_from_lake",
    "read_all_from_lake",
    "connect_warehouse",
    "close_warehouse",
    "create_table",
    "upsert_table",
    "load_staging_tables",
    "write_rating_outputs",
    "ViewDefinition",
    "load_view_definitions",
    "execute_derived_views",
    "get_current_ratings",
    "export_to_parquet",
]
