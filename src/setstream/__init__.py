"""SetStream: incremental FIVB volleyball ingestion, warehouse and Elo ratings."""

__version__ = "0.1.0"
