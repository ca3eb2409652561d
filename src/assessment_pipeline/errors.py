"""Exception hierarchy for the assessment pipeline.

Every error carries a ``diagnostics`` dict with structured context
(session, round, attempt counts) so callers can log or surface it
without parsing messages.
"""

from __future__ import annotations

from typing import Any


class AssessmentError(Exception):
    """Base class for all assessment pipeline failures.

    Attributes:
        diagnostics: Structured information about the failure.
    """

    def __init__(self, message: str, *, diagnostics: dict[str, Any] | None = None) -> None:
        """Initialize with a message and optional structured diagnostics.

        Args:
            message: Human-readable error description.
            diagnostics: Structured context for debugging.
        """
        super().__init__(message)
        self.diagnostics: dict[str, Any] = dict(diagnostics or {})


# ---------------------------------------------------------------------------
# Remote boundary
# ---------------------------------------------------------------------------


class GatewayError(AssessmentError):
    """A remote evaluation gateway call failed (transport, timeout, non-2xx).

    Attributes:
        status_code: HTTP status of the failed call, if one was received.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        diagnostics: dict[str, Any] | None = None,
    ) -> None:
        """Initialize with a message, optional status code and diagnostics."""
        super().__init__(message, diagnostics=diagnostics)
        self.status_code = status_code


class GatewayInvariantViolation(GatewayError):
    """The gateway answered, but the response is malformed or incomplete.

    Treated exactly like a failed call: a score is never guessed.
    """


class SessionCreationFailed(AssessmentError):
    """The remote session could not be created."""


# ---------------------------------------------------------------------------
# Round lifecycle
# ---------------------------------------------------------------------------


class StartFailed(AssessmentError):
    """Starting a round failed remotely; the round stays ``NOT_STARTED``.

    The session is left untouched at the same round, so the caller may
    simply try again.
    """

    retryable = True


class SubmitFailed(AssessmentError):
    """A mid-round checkpoint could not be delivered.

    Final submits never raise this: after the bounded retries are exhausted
    they degrade to an ``EXPIRED`` round with a zero score instead.
    """


class SubmissionIncomplete(AssessmentError):
    """A user-initiated submit does not meet the round's minimum interactions.

    Attributes:
        required: Minimum count the round requires.
        actual: Count found in the working data.
    """

    def __init__(
        self,
        message: str,
        *,
        required: int,
        actual: int,
        diagnostics: dict[str, Any] | None = None,
    ) -> None:
        """Initialize with the required and actual interaction counts."""
        super().__init__(message, diagnostics=diagnostics)
        self.required = required
        self.actual = actual


class RoundStateError(AssessmentError):
    """An operation was attempted in a round state that does not allow it."""


class SessionStateError(AssessmentError):
    """An operation was attempted in a session state that does not allow it."""
