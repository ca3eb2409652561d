"""Core data models for the assessment pipeline.

Defines shared Pydantic models, enums, and configuration types used across
the round handlers, the round state machine, the session orchestrator, and
the evaluation gateway. Everything exchanged with the remote evaluator is
either one of these models or an opaque ``dict`` passed through untouched.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


class PipelineType(StrEnum):
    """Employer-type pipeline selected before the assessment starts."""

    OBJECTIVE = "objective_pipeline"
    HYBRID = "hybrid_pipeline"
    ANALYTICAL = "analytical_pipeline"


class RoundKind(StrEnum):
    """Identifier for each timed round an assessment can contain."""

    CODING = "coding"
    LIVE_CODING = "live_coding"
    SYSTEM_DESIGN = "system_design"
    APTITUDE = "aptitude"
    CORE_COMPETENCY = "core_competency"
    TECHNICAL_INTERVIEW = "technical_interview"
    HR_INTERVIEW = "hr_interview"
    QUANTITATIVE = "quantitative"
    SQL = "sql"
    CASE_STUDY = "case_study"
    DOMAIN_INTERVIEW = "domain_interview"


class RoundFamily(StrEnum):
    """Handler family a round kind is served by.

    Several round kinds share one handler family: an aptitude test and a
    quantitative test differ only in content, not in protocol.
    """

    OBJECTIVE_TEST = "objective_test"
    FREE_TEXT = "free_text"
    CODE_SUBMISSION = "code_submission"
    COLLABORATIVE_CHAT = "collaborative_chat"
    STRUCTURED_DIAGRAM = "structured_diagram"


class RoundState(StrEnum):
    """Lifecycle state of a single round."""

    NOT_STARTED = "not_started"
    ACTIVE = "active"
    SUBMITTING = "submitting"
    EVALUATED = "evaluated"
    EXPIRED = "expired"


TERMINAL_ROUND_STATES: frozenset[RoundState] = frozenset(
    {RoundState.EVALUATED, RoundState.EXPIRED}
)


class SessionState(StrEnum):
    """Lifecycle state of an assessment session."""

    CREATED = "created"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class FailurePolicy(StrEnum):
    """What happens to the pipeline when a round is failed."""

    RETRY = "retry"
    TERMINATE = "terminate"


class SessionDecision(StrEnum):
    """Gating decision taken after a round result is folded into a session."""

    ADVANCE = "advance"
    COMPLETE = "complete"
    RETRY_AVAILABLE = "retry_available"
    TERMINATE = "terminate"


class OutcomeStatus(StrEnum):
    """Status values reported to the session history collaborator."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


# ---------------------------------------------------------------------------
# Round configuration
# ---------------------------------------------------------------------------


class RoundSettings(BaseModel):
    """Per-round-kind configuration supplied from outside the core.

    Attributes:
        default_duration_seconds: Fallback duration used only when the
            gateway omits ``duration_seconds`` on round start.
        pass_threshold: Minimum score (0-100) for the round to count as passed.
        failure_policy: Overrides the handler-declared failure policy when set.
        min_interactions: Minimum transcript messages for a user-initiated
            final submit of a conversational round.
        min_words: Minimum words in the written response of a free-text round.
    """

    model_config = ConfigDict(frozen=True)

    default_duration_seconds: int = 1800
    pass_threshold: float = 60.0
    failure_policy: FailurePolicy | None = None
    min_interactions: int = 0
    min_words: int = 0

    @field_validator("default_duration_seconds")
    @classmethod
    def _duration_must_be_positive(cls, v: int) -> int:
        """Validate that the fallback duration is at least one second."""
        if v < 1:
            msg = "default_duration_seconds must be >= 1"
            raise ValueError(msg)
        return v

    @field_validator("pass_threshold")
    @classmethod
    def _threshold_in_range(cls, v: float) -> float:
        """Validate that the threshold lies on the 0-100 score scale."""
        if not 0.0 <= v <= 100.0:
            msg = f"pass_threshold must be within [0, 100], got {v}"
            raise ValueError(msg)
        return v

    @field_validator("min_interactions", "min_words")
    @classmethod
    def _must_be_non_negative(cls, v: int) -> int:
        """Validate that minimum counts are not negative."""
        if v < 0:
            msg = "Value must be >= 0"
            raise ValueError(msg)
        return v


def default_round_settings() -> dict[RoundKind, RoundSettings]:
    """Build the default settings table for every round kind.

    Durations and thresholds are the values the assessment screens have
    been running with; minimum interaction counts gate the conversational
    and written rounds.

    Returns:
        Mapping from every ``RoundKind`` to its default ``RoundSettings``.
    """
    return {
        RoundKind.CODING: RoundSettings(default_duration_seconds=3600),
        RoundKind.LIVE_CODING: RoundSettings(default_duration_seconds=3600),
        RoundKind.SYSTEM_DESIGN: RoundSettings(default_duration_seconds=2700),
        RoundKind.APTITUDE: RoundSettings(default_duration_seconds=1800),
        RoundKind.CORE_COMPETENCY: RoundSettings(default_duration_seconds=3600),
        RoundKind.TECHNICAL_INTERVIEW: RoundSettings(
            default_duration_seconds=2700, min_interactions=3
        ),
        RoundKind.HR_INTERVIEW: RoundSettings(default_duration_seconds=720),
        RoundKind.QUANTITATIVE: RoundSettings(
            default_duration_seconds=2700, pass_threshold=65.0
        ),
        RoundKind.SQL: RoundSettings(default_duration_seconds=3600),
        RoundKind.CASE_STUDY: RoundSettings(
            default_duration_seconds=2700, min_words=50
        ),
        RoundKind.DOMAIN_INTERVIEW: RoundSettings(
            default_duration_seconds=2400, min_interactions=5
        ),
    }


class GatewaySettings(BaseModel):
    """Connection settings for the remote evaluation gateway.

    Attributes:
        base_url: Root URL of the evaluation backend.
        timeout_seconds: Per-request timeout for remote calls.
        headers: Extra headers sent with every request.
    """

    model_config = ConfigDict(frozen=True)

    base_url: str = "http://localhost:8000"
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    headers: dict[str, str] = Field(default_factory=dict)


class OrchestratorConfig(BaseModel):
    """Session orchestrator configuration.

    Attributes:
        rounds: Per-round-kind settings. Partial overrides are merged onto
            ``default_round_settings()`` field by field.
        max_retry_attempts: Retries allowed per round after a failed attempt.
        submit_max_attempts: Remote submit attempts before a round expires.
        outcome_max_attempts: Attempts for a background outcome write.
        backoff_base_seconds: Base delay of the exponential backoff.
        timer_tick_seconds: Sampling interval of the round countdown.
        auto_advance: Begin the next round as soon as a round is passed.
        gateway: Evaluation gateway connection settings.
        log_level: Logging level string.
        log_file: Optional log file path.
    """

    model_config = ConfigDict(frozen=True)

    rounds: dict[RoundKind, RoundSettings] = Field(
        default_factory=default_round_settings
    )
    max_retry_attempts: int = 1
    submit_max_attempts: int = 2
    outcome_max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    timer_tick_seconds: float = 1.0
    auto_advance: bool = True
    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    log_level: str = "INFO"
    log_file: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _merge_round_overrides(cls, data: Any) -> Any:
        """Merge partial per-round overrides onto the default settings table."""
        if not isinstance(data, dict) or "rounds" not in data:
            return data
        overrides = data["rounds"] or {}
        merged: dict[RoundKind, RoundSettings] = default_round_settings()
        for raw_kind, raw_settings in overrides.items():
            kind = RoundKind(raw_kind)
            if isinstance(raw_settings, RoundSettings):
                merged[kind] = raw_settings
                continue
            base = merged[kind].model_dump()
            base.update(raw_settings or {})
            merged[kind] = RoundSettings(**base)
        return {**data, "rounds": merged}

    @field_validator("submit_max_attempts", "outcome_max_attempts")
    @classmethod
    def _attempts_must_be_positive(cls, v: int) -> int:
        """Validate that every remote call gets at least one attempt."""
        if v < 1:
            msg = "Value must be >= 1"
            raise ValueError(msg)
        return v

    @field_validator("max_retry_attempts")
    @classmethod
    def _retries_must_be_non_negative(cls, v: int) -> int:
        """Validate that the retry allowance is not negative."""
        if v < 0:
            msg = "max_retry_attempts must be >= 0"
            raise ValueError(msg)
        return v

    @field_validator("timer_tick_seconds")
    @classmethod
    def _tick_at_most_one_second(cls, v: float) -> float:
        """Validate that the countdown is sampled at least once per second."""
        if not 0.0 < v <= 1.0:
            msg = f"timer_tick_seconds must be within (0, 1], got {v}"
            raise ValueError(msg)
        return v

    def settings_for(self, kind: RoundKind) -> RoundSettings:
        """Return the settings of *kind*, falling back to generic defaults."""
        return self.rounds.get(kind, RoundSettings())


# ---------------------------------------------------------------------------
# Round payloads (tagged union on ``family``)
# ---------------------------------------------------------------------------


class Question(BaseModel):
    """One question of an objective or free-text round.

    Immutable once fetched; answers are keyed by ``id`` in working data.

    Attributes:
        id: Question identifier.
        prompt: Question text.
        options: Answer options for multiple-choice questions.
        category: Optional grouping (e.g. ``logical``, ``verbal``).
        time_limit_seconds: Optional per-question time guidance.
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("id", "question_id"))
    prompt: str = Field(
        default="", validation_alias=AliasChoices("prompt", "question", "text")
    )
    options: list[str] = Field(default_factory=list)
    category: str | None = None
    time_limit_seconds: int | None = None


class Problem(BaseModel):
    """One problem of a code-submission round.

    Attributes:
        id: Problem identifier.
        prompt: Problem statement.
        starter_code: Initial code buffer for the problem.
        language: Suggested language.
        constraints: Free-form constraint lines shown to the candidate.
        difficulty: Optional difficulty label.
    """

    model_config = ConfigDict(frozen=True, extra="allow", populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("id", "question_id", "problem_id"))
    prompt: str = Field(
        default="",
        validation_alias=AliasChoices("prompt", "description", "question", "title"),
    )
    starter_code: str = ""
    language: str = "python"
    constraints: list[str] = Field(default_factory=list)
    difficulty: str | None = None


class ObjectiveTestPayload(BaseModel):
    """Questions of an objective test round."""

    model_config = ConfigDict(frozen=True, extra="allow")

    family: Literal["objective_test"] = "objective_test"
    questions: list[Question] = Field(default_factory=list)


class FreeTextPayload(BaseModel):
    """Prompt (and optional question list) of a free-text round.

    A case study carries a single ``prompt``; an HR interview carries one
    question per expected response artifact.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    family: Literal["free_text"] = "free_text"
    prompt: str = ""
    questions: list[Question] = Field(default_factory=list)


class CodeProblemPayload(BaseModel):
    """Problems of a code-submission round."""

    model_config = ConfigDict(frozen=True, extra="allow")

    family: Literal["code_submission"] = "code_submission"
    problems: list[Problem] = Field(
        default_factory=list,
        validation_alias=AliasChoices("problems", "questions"),
    )
    schema_ddl: str | None = None


class ConversationPayload(BaseModel):
    """Opening state of a conversational round."""

    model_config = ConfigDict(frozen=True, extra="allow")

    family: Literal["collaborative_chat"] = "collaborative_chat"
    initial_message: str | None = None
    problem: dict[str, Any] | None = None
    language: str = "python"


class DiagramPayload(BaseModel):
    """Opening state of a collaborative diagram round."""

    model_config = ConfigDict(frozen=True, extra="allow")

    family: Literal["structured_diagram"] = "structured_diagram"
    initial_message: str | None = None
    problem: dict[str, Any] | None = None
    current_phase: str = "requirements"


RoundPayload = Annotated[
    ObjectiveTestPayload
    | FreeTextPayload
    | CodeProblemPayload
    | ConversationPayload
    | DiagramPayload,
    Field(discriminator="family"),
]


# ---------------------------------------------------------------------------
# Gateway exchange records
# ---------------------------------------------------------------------------


class RoundStart(BaseModel):
    """What the gateway returns when a round is started.

    Attributes:
        round_id: Remote identifier of the started round.
        kind: Round kind that was started.
        duration_seconds: Server-issued duration (``None`` if omitted).
        payload: Kind-specific round content.
    """

    model_config = ConfigDict(frozen=True)

    round_id: str
    kind: RoundKind
    duration_seconds: int | None = None
    payload: RoundPayload

    @field_validator("round_id")
    @classmethod
    def _round_id_nonempty(cls, v: str) -> str:
        """Validate that the remote round identifier is present."""
        if not v.strip():
            msg = "round_id must be a non-empty string"
            raise ValueError(msg)
        return v

    @field_validator("duration_seconds")
    @classmethod
    def _duration_positive(cls, v: int | None) -> int | None:
        """Validate that a server-issued duration is positive."""
        if v is not None and v < 1:
            msg = f"duration_seconds must be >= 1, got {v}"
            raise ValueError(msg)
        return v


class RoundEvaluation(BaseModel):
    """Verdict returned by the gateway for a final submit or a finalize call.

    Attributes:
        score: Score on the 0-100 scale.
        passed: The evaluator's own verdict, if it sent one (informational).
        detail: The complete response body, forwarded to reporting.
    """

    model_config = ConfigDict(frozen=True)

    score: float = Field(ge=0.0, le=100.0)
    passed: bool | None = None
    detail: dict[str, Any] = Field(default_factory=dict)


class CheckpointReply(BaseModel):
    """Response to a mid-round checkpoint (chat turn, judged problem).

    Attributes:
        kind: Round kind the checkpoint belongs to.
        payload: Opaque remote response body.
    """

    model_config = ConfigDict(frozen=True)

    kind: RoundKind
    payload: dict[str, Any] = Field(default_factory=dict)


class RoundResult(BaseModel):
    """Immutable outcome of one round attempt.

    Attributes:
        round_kind: The round this result belongs to.
        score: Score on the 0-100 scale.
        passed: Whether ``score`` reached the round's pass threshold.
        raw_evaluation_payload: Opaque evaluator response, forwarded to reporting.
        completed_at: When the result was produced (UTC).
        attempt: Zero-based attempt number that produced the result.
        forced: True when the submit was forced by timer expiry.
        expired: True when the result is synthetic because submission failed.
    """

    model_config = ConfigDict(frozen=True)

    round_kind: RoundKind
    score: float = Field(ge=0.0, le=100.0)
    passed: bool
    raw_evaluation_payload: dict[str, Any] = Field(default_factory=dict)
    completed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    attempt: int = 0
    forced: bool = False
    expired: bool = False


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class Session(BaseModel):
    """One assessment attempt by one candidate.

    The only mutable model in the package: the orchestrator updates it as
    the candidate progresses. ``results`` keeps one entry per round kind in
    completion order; a retried round overwrites its entry in place, and
    every attempt is kept in ``result_history``.

    Attributes:
        session_id: Remote session identifier.
        candidate_id: Opaque candidate identifier.
        pipeline_type: Pipeline selected for this session.
        round_sequence: Ordered round kinds, fixed at creation.
        current_round_index: Index into ``round_sequence``.
        results: Latest result per round kind, in completion order.
        result_history: Every result produced, including retried attempts.
        state: Session lifecycle state.
        did_not_advance: True when a failed round ended the pipeline early.
        terminated_by: Round kind whose failure ended the pipeline.
        last_decision: Most recent gating decision.
        created_at: Creation timestamp (UTC).
        completed_at: Completion or abandonment timestamp (UTC).
    """

    session_id: str
    candidate_id: str
    pipeline_type: PipelineType
    round_sequence: tuple[RoundKind, ...]
    current_round_index: int = 0
    results: dict[RoundKind, RoundResult] = Field(default_factory=dict)
    result_history: list[RoundResult] = Field(default_factory=list)
    state: SessionState = SessionState.CREATED
    did_not_advance: bool = False
    terminated_by: RoundKind | None = None
    last_decision: SessionDecision | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @field_validator("round_sequence")
    @classmethod
    def _sequence_nonempty(cls, v: tuple[RoundKind, ...]) -> tuple[RoundKind, ...]:
        """Validate that a session has at least one round."""
        if len(v) < 1:
            msg = "round_sequence must contain at least 1 round"
            raise ValueError(msg)
        return v

    @property
    def current_round_kind(self) -> RoundKind:
        """Round kind at ``current_round_index``."""
        return self.round_sequence[self.current_round_index]

    @property
    def is_last_round(self) -> bool:
        """Whether the current round is the final round of the pipeline."""
        return self.current_round_index == len(self.round_sequence) - 1

    @property
    def is_terminal(self) -> bool:
        """Whether the session has reached Completed or Abandoned."""
        return self.state in (SessionState.COMPLETED, SessionState.ABANDONED)


# ---------------------------------------------------------------------------
# Scorecard
# ---------------------------------------------------------------------------


class RoundSummary(BaseModel):
    """Per-round line of a scorecard."""

    model_config = ConfigDict(frozen=True)

    round_kind: RoundKind
    display_name: str
    score: float | None = None
    passed: bool | None = None
    attempts: int = 0
    forced: bool = False


class Scorecard(BaseModel):
    """Aggregated view of a session's progress.

    Attributes:
        session_id: Session the scorecard describes.
        pipeline_type: Pipeline of the session.
        state: Session state at the time of aggregation.
        completion_percent: Share of rounds with a recorded result.
        overall_score: Mean score over attempted rounds (``None`` if none).
        rounds: One summary per round of the pipeline, in pipeline order.
        did_not_advance: True when the pipeline ended on a failed round.
        terminated_by: Round kind whose failure ended the pipeline.
        pipeline_complete: Whether no further rounds will be played.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str
    pipeline_type: PipelineType
    state: SessionState
    completion_percent: float
    overall_score: float | None
    rounds: list[RoundSummary]
    did_not_advance: bool = False
    terminated_by: RoundKind | None = None
    pipeline_complete: bool = False
