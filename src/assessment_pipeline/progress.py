"""Progress aggregation over a session's recorded round results.

Pure functions: nothing here mutates the session or talks to the gateway.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from assessment_pipeline.models import RoundSummary, Scorecard, SessionState

if TYPE_CHECKING:
    from assessment_pipeline.models import Session
    from assessment_pipeline.registry import PipelineRegistry


def completion_percent(session: Session) -> float:
    """Share of the pipeline's rounds that have any recorded result, 0-100."""
    attempted = sum(1 for kind in session.round_sequence if kind in session.results)
    return 100.0 * attempted / len(session.round_sequence)


def overall_score(session: Session) -> float | None:
    """Arithmetic mean of the latest score of every attempted round.

    Rounds never attempted are excluded rather than counted as zero.

    Returns:
        The mean score, or ``None`` if no round has a result yet.
    """
    if not session.results:
        return None
    scores = [result.score for result in session.results.values()]
    return sum(scores) / len(scores)


def is_pipeline_complete(session: Session) -> bool:
    """Whether no further rounds will be played in this pipeline.

    True when the last round is evaluated and passed, or when a
    failure-terminal round ended the pipeline early.
    """
    if session.did_not_advance:
        return True
    if not session.is_last_round:
        return False
    last = session.results.get(session.round_sequence[-1])
    return last is not None and last.passed


def build_scorecard(
    session: Session, registry: PipelineRegistry | None = None
) -> Scorecard:
    """Aggregate a session into an immutable ``Scorecard``.

    Args:
        session: Session to summarise.
        registry: Source of round display names; raw kind values are used
            when omitted.

    Returns:
        One ``RoundSummary`` per pipeline round plus the session totals.
    """
    summaries: list[RoundSummary] = []
    for kind in session.round_sequence:
        display_name = (
            registry.metadata_for(kind).display_name if registry else kind.value
        )
        result = session.results.get(kind)
        attempts = sum(1 for r in session.result_history if r.round_kind == kind)
        summaries.append(
            RoundSummary(
                round_kind=kind,
                display_name=display_name,
                score=result.score if result else None,
                passed=result.passed if result else None,
                attempts=attempts,
                forced=result.forced if result else False,
            )
        )
    return Scorecard(
        session_id=session.session_id,
        pipeline_type=session.pipeline_type,
        state=session.state,
        completion_percent=completion_percent(session),
        overall_score=overall_score(session),
        rounds=summaries,
        did_not_advance=session.did_not_advance,
        terminated_by=session.terminated_by,
        pipeline_complete=(
            session.state is not SessionState.ABANDONED and is_pipeline_complete(session)
        ),
    )
