"""Screen projection: pure mapping from core state to a presentation screen.

The orchestrator and round state machine hold no notion of "current
screen". A presentation layer calls ``project_screen`` whenever it
re-renders; nothing in the core imports this module.
"""

from __future__ import annotations

from enum import StrEnum

from assessment_pipeline.models import (
    RoundState,
    Session,
    SessionDecision,
    SessionState,
)


class Screen(StrEnum):
    """Presentation screens of an assessment."""

    OVERVIEW = "overview"
    ROUND_INTRO = "round_intro"
    ROUND_IN_PROGRESS = "round_in_progress"
    SUBMITTING = "submitting"
    ROUND_RESULT = "round_result"
    RETRY_OFFER = "retry_offer"
    ASSESSMENT_COMPLETE = "assessment_complete"
    DID_NOT_ADVANCE = "did_not_advance"
    ABANDONED = "abandoned"


def project_screen(session: Session | None, round_state: RoundState | None = None) -> Screen:
    """Return the screen matching the session and current round state.

    Args:
        session: The session, or ``None`` before one is created.
        round_state: State of the current round machine, if one exists.

    Returns:
        The screen to show.
    """
    if session is None or (session.state is SessionState.CREATED and round_state is None):
        return Screen.OVERVIEW
    if session.state is SessionState.ABANDONED:
        return Screen.ABANDONED
    if session.state is SessionState.COMPLETED:
        return Screen.DID_NOT_ADVANCE if session.did_not_advance else Screen.ASSESSMENT_COMPLETE
    if session.last_decision is SessionDecision.RETRY_AVAILABLE:
        return Screen.RETRY_OFFER
    if round_state is RoundState.ACTIVE:
        return Screen.ROUND_IN_PROGRESS
    if round_state is RoundState.SUBMITTING:
        return Screen.SUBMITTING
    if round_state in (RoundState.EVALUATED, RoundState.EXPIRED):
        return Screen.ROUND_RESULT
    return Screen.ROUND_INTRO


def format_countdown(seconds: int) -> str:
    """Render whole seconds as ``HH:MM:SS``; negative input renders as zero."""
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
