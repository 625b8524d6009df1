"""Exception taxonomy for the SetStream pipeline.

Item-level failures are absorbed at the batch boundary; everything else
propagates up to the orchestrator, which aborts the remaining steps.
"""

from typing import Any


class SetStreamError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(SetStreamError):
    """Settings file is missing required values or fails validation."""


class TransientRemoteError(SetStreamError):
    """Network failure or retryable HTTP status (5xx, 429) from the VIS service."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteRequestError(SetStreamError):
    """Non-retryable response from the VIS service (4xx, malformed payload)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ExhaustedRetries(SetStreamError):
    """A remote call kept failing after the configured number of attempts."""

    def __init__(self, last_error: BaseException, attempts: int):
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.last_error = last_error
        self.attempts = attempts


class ItemExtractionFailure(SetStreamError):
    """A single detail or ranking fetch failed permanently."""

    def __init__(self, kind: str, item_id: int, cause: BaseException):
        super().__init__(f"Failed to fetch {kind} {item_id}: {cause}")
        self.kind = kind
        self.item_id = item_id
        self.cause = cause


class StorageFailure(SetStreamError):
    """Lake or warehouse write failed."""


class StateCorruption(SetStreamError):
    """The pipeline state file exists but cannot be trusted.

    Requires operator intervention; falling back to an empty state would
    re-fetch and double count every detail record.
    """


class CriticalQualityFailure(SetStreamError):
    """One or more quality checks failed with fail_on_critical enabled."""

    def __init__(self, failed_checks: list[str], report: Any = None):
        super().__init__(
            f"{len(failed_checks)} critical quality check(s) failed: "
            + ", ".join(failed_checks)
        )
        self.failed_checks = failed_checks
        self.report = report


class PipelineStepError(SetStreamError):
    """Raised by the orchestrator when a step fails; names the step."""

    def __init__(self, step: str, cause: BaseException):
        super().__init__(f"Step '{step}' failed: {cause}")
        self.step = step
        self.cause = cause
