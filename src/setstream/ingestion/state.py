"""Durable record of which detail items have already been fetched.

The state file is the only thing preventing a rerun from fetching (and later
double counting) every match detail and tournament ranking again, so it is
written atomically and never silently reset.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_serializer

from ..errors import StateCorruption

logger = logging.getLogger(__name__)

STATE_SCHEMA_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineState(BaseModel):
    """Identifiers fetched across all previous runs."""

    schema_version: Literal[1] = STATE_SCHEMA_VERSION
    last_run: Optional[datetime] = None
    fetched_match_nos: set[int] = Field(default_factory=set)
    fetched_tournament_nos: set[int] = Field(default_factory=set)
    created_at: datetime = Field(default_factory=_utcnow)

    @field_serializer("fetched_match_nos", "fetched_tournament_nos")
    def _sorted_ids(self, ids: set[int]) -> list[int]:
        return sorted(ids)


def load_state(path: str | Path) -> PipelineState:
    """Load pipeline state, or start fresh if no state file exists.

    Args:
        path: Path to the state JSON file

    Returns:
        Loaded (or fresh) PipelineState

    Raises:
        StateCorruption: If the file exists but is unreadable, fails
            validation, or has an unknown schema_version
    """
    path = Path(path)

    if not path.exists():
        logger.info(f"No state file at {path}, starting fresh")
        return PipelineState()

    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise StateCorruption(f"Cannot read state file {path}: {e}") from e

    if not isinstance(document, dict):
        raise StateCorruption(f"State file {path} is not a JSON object")

    version = document.get("schema_version")
    if version != STATE_SCHEMA_VERSION:
        raise StateCorruption(
            f"State file {path} has unsupported schema_version {version!r} "
            f"(expected {STATE_SCHEMA_VERSION})"
        )

    try:
        state = PipelineState.model_validate(document)
    except ValidationError as e:
        raise StateCorruption(f"State file {path} failed validation:\n{e}") from e

    logger.info(
        f"Loaded state: last_run={state.last_run}, "
        f"{len(state.fetched_match_nos)} matches, "
        f"{len(state.fetched_tournament_nos)} tournaments already fetched"
    )
    return state


def save_state(state: PipelineState, path: str | Path) -> PipelineState:
    """Stamp ``last_run`` and atomically write the state document.

    The document goes to a temp file in the target directory which is fsynced
    and then renamed over the target, so readers see either the old or the
    new document.

    Args:
        state: State to persist
        path: Target path

    Returns:
        The state as written (with last_run set)
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    saved = state.model_copy(update={"last_run": _utcnow()})
    payload = saved.model_dump_json(indent=2)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise

    logger.info(
        f"Saved state to {path}: {len(saved.fetched_match_nos)} matches, "
        f"{len(saved.fetched_tournament_nos)} tournaments"
    )
    return saved


def merge_state(
    state: PipelineState,
    new_match_nos: list[int] | set[int] | None = None,
    new_tournament_nos: list[int] | set[int] | None = None,
) -> PipelineState:
    """Return a new state with the given ids added (set union)."""
    return state.model_copy(
        update={
            "fetched_match_nos": state.fetched_match_nos | set(new_match_nos or ()),
            "fetched_tournament_nos": state.fetched_tournament_nos | set(new_tournament_nos or ()),
        }
    )
