"""Session orchestrator: sequencing, gating and termination of a pipeline.

``SessionOrchestrator`` owns one ``Session``. It resolves the round
sequence from the ``PipelineRegistry``, drives one ``RoundStateMachine``
at a time, folds every terminal ``RoundResult`` into the session and
decides whether the candidate advances, may retry, or is done.

Failure policy is read from the round's handler (optionally overridden by
configuration); the orchestrator never hard-codes it per round kind.

Session outcome reports (``in_progress``, ``completed``, ``abandoned``)
are best-effort background tasks: they retry with exponential backoff,
log on exhaustion, and never touch session state.

Also provides ``apply_env_overrides`` and ``configure_logging`` for the
``ASSESSMENT_*`` environment variables and the package logger.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

from assessment_pipeline.errors import (
    GatewayError,
    SessionCreationFailed,
    SessionStateError,
    StartFailed,
)
from assessment_pipeline.gateway import retry_with_backoff
from assessment_pipeline.handlers import build_handler
from assessment_pipeline.models import (
    FailurePolicy,
    GatewaySettings,
    OrchestratorConfig,
    OutcomeStatus,
    PipelineType,
    RoundKind,
    RoundResult,
    RoundStart,
    RoundState,
    Scorecard,
    Session,
    SessionDecision,
    SessionState,
)
from assessment_pipeline.progress import build_scorecard, completion_percent, overall_score
from assessment_pipeline.registry import PipelineRegistry
from assessment_pipeline.rounds import RoundStateMachine

if TYPE_CHECKING:
    from collections.abc import Callable

    from assessment_pipeline.gateway import EvaluationGateway
    from assessment_pipeline.models import CheckpointReply
    from assessment_pipeline.timer import RoundTimer

logger = logging.getLogger(__name__)


class SessionOrchestrator:
    """Drives one candidate through one pipeline.

    Attributes:
        config: Orchestrator configuration.
        registry: Pipeline and round metadata lookups.
        session: The session, once created.
        current_round: State machine of the round being played, if any.
        last_start_error: The ``StartFailed`` raised by an automatic advance,
            kept so the caller can offer to start the round again.
    """

    def __init__(
        self,
        gateway: EvaluationGateway,
        *,
        config: OrchestratorConfig | None = None,
        registry: PipelineRegistry | None = None,
        timer_factory: Callable[[], RoundTimer] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            gateway: Remote evaluation gateway.
            config: Orchestrator configuration; defaults to ``OrchestratorConfig()``.
            registry: Pipeline registry; defaults to the packaged declarations.
            timer_factory: Builds the countdown of each round; used by tests
                to inject a fake clock.
        """
        self._gateway = gateway
        self.config = config or OrchestratorConfig()
        self.registry = registry or PipelineRegistry()
        self._timer_factory = timer_factory
        self.session: Session | None = None
        self.current_round: RoundStateMachine | None = None
        self.last_start_error: StartFailed | None = None
        self._outcome_tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def create_session(
        self, pipeline_type: PipelineType | str, candidate_id: str
    ) -> Session:
        """Create the remote session and resolve its round sequence.

        Args:
            pipeline_type: A ``PipelineType`` or a registry alias such as
                ``"service"``.
            candidate_id: Opaque candidate identifier.

        Returns:
            The new session, in ``CREATED`` state at round index 0.

        Raises:
            SessionStateError: If this orchestrator already holds a session.
            SessionCreationFailed: If the remote session could not be created.
        """
        if self.session is not None:
            msg = f"Orchestrator already drives session {self.session.session_id}"
            raise SessionStateError(msg)
        resolved = (
            pipeline_type
            if isinstance(pipeline_type, PipelineType)
            else self.registry.resolve_pipeline(pipeline_type)
        )
        sequence = self.registry.sequence_for(resolved)
        try:
            session_id = await self._gateway.create_session(candidate_id, resolved)
        except GatewayError as exc:
            msg = f"Could not create {resolved} session: {exc}"
            raise SessionCreationFailed(
                msg, diagnostics={"candidate_id": candidate_id, **exc.diagnostics}
            ) from exc

        self.session = Session(
            session_id=session_id,
            candidate_id=candidate_id,
            pipeline_type=resolved,
            round_sequence=sequence,
        )
        logger.info(
            "Session %s created: pipeline=%s rounds=%s",
            session_id,
            resolved,
            [k.value for k in sequence],
        )
        return self.session

    def _require_session(self) -> Session:
        if self.session is None:
            msg = "No session; call create_session() first"
            raise SessionStateError(msg)
        return self.session

    def _require_round(self) -> RoundStateMachine:
        if self.current_round is None:
            msg = "No round has been begun"
            raise SessionStateError(msg)
        return self.current_round

    def _build_round(self, kind: RoundKind) -> RoundStateMachine:
        session = self._require_session()
        return RoundStateMachine(
            session_id=session.session_id,
            kind=kind,
            handler=build_handler(self.registry.family_of(kind)),
            gateway=self._gateway,
            settings=self.config.settings_for(kind),
            config=self.config,
            on_terminal=self.on_round_evaluated,
            timer=self._timer_factory() if self._timer_factory else None,
        )

    async def begin_current_round(self) -> RoundStart:
        """Start the round at the session's current index.

        A round left in ``NOT_STARTED`` by a failed start (or reset for a
        retry) is reused; otherwise a fresh state machine is built.

        Returns:
            The gateway's ``RoundStart`` record.

        Raises:
            SessionStateError: If the session is terminal, another round is
                still running, or the current round awaits a retry decision.
            StartFailed: If the remote start failed; call again to retry.
        """
        session = self._require_session()
        if session.is_terminal:
            msg = f"Session {session.session_id} is {session.state}"
            raise SessionStateError(msg)

        kind = session.current_round_kind
        machine = self.current_round
        if machine is not None and machine.state in (RoundState.ACTIVE, RoundState.SUBMITTING):
            msg = f"Round {machine.kind} is still {machine.state}"
            raise SessionStateError(msg, diagnostics={"session_id": session.session_id})
        if machine is not None and machine.kind == kind and machine.is_terminal:
            msg = f"Round {kind} is over; retry_current_round() or decline_retry()"
            raise SessionStateError(msg, diagnostics={"session_id": session.session_id})
        if machine is None or machine.kind != kind:
            if machine is not None:
                machine.discard()
            machine = self._build_round(kind)
            self.current_round = machine

        started = await machine.start()
        self.last_start_error = None
        if session.state is SessionState.CREATED:
            session.state = SessionState.IN_PROGRESS
            self._schedule_outcome(OutcomeStatus.IN_PROGRESS)
        return started

    def record_progress(self, partial: dict[str, Any]) -> dict[str, Any]:
        """Merge partial work into the current round (see ``RoundStateMachine``)."""
        return self._require_round().record_progress(partial)

    async def submit_current_round(
        self, *, final: bool = True
    ) -> RoundResult | CheckpointReply:
        """Submit the current round, or send a checkpoint when ``final`` is false."""
        return await self._require_round().submit(final=final)

    # ------------------------------------------------------------------
    # Gating
    # ------------------------------------------------------------------

    def _failure_policy(self, kind: RoundKind) -> FailurePolicy:
        machine = self.current_round
        if machine is not None and machine.kind == kind:
            return machine.handler.effective_failure_policy(machine.settings)
        handler = build_handler(self.registry.family_of(kind))
        return handler.effective_failure_policy(self.config.settings_for(kind))

    def _attempts_used(self, kind: RoundKind) -> int:
        machine = self.current_round
        if machine is not None and machine.kind == kind:
            return machine.attempt_count
        return 0

    async def on_round_evaluated(self, result: RoundResult) -> SessionDecision | None:
        """Fold a terminal round result into the session and gate on it.

        ``result.passed`` was derived by the round state machine from the
        round kind's configured threshold.

        Args:
            result: Terminal result of the current round.

        Returns:
            The decision taken, or ``None`` when the result is stale (the
            session is already terminal or has moved to another round).
        """
        session = self._require_session()
        kind = result.round_kind
        if session.is_terminal or kind != session.current_round_kind:
            logger.warning(
                "Ignoring result for %s (session %s, current round %s)",
                kind,
                session.state,
                session.current_round_kind,
            )
            return None

        session.results[kind] = result
        session.result_history.append(result)

        if result.passed and not session.is_last_round:
            session.current_round_index += 1
            decision = SessionDecision.ADVANCE
        elif result.passed:
            decision = SessionDecision.COMPLETE
        elif (
            self._failure_policy(kind) is FailurePolicy.RETRY
            and self._attempts_used(kind) < self.config.max_retry_attempts
        ):
            decision = SessionDecision.RETRY_AVAILABLE
        else:
            decision = SessionDecision.TERMINATE

        session.last_decision = decision
        logger.info(
            "Session %s: round %s score=%.1f passed=%s -> %s (completion %.0f%%)",
            session.session_id,
            kind,
            result.score,
            result.passed,
            decision,
            completion_percent(session),
        )

        if decision is SessionDecision.COMPLETE:
            self._finish(SessionState.COMPLETED)
        elif decision is SessionDecision.TERMINATE:
            self._terminate(kind)
        elif decision is SessionDecision.ADVANCE and self.config.auto_advance:
            try:
                await self.begin_current_round()
            except StartFailed as exc:
                self.last_start_error = exc
                logger.warning(
                    "Automatic start of %s failed; waiting for a manual start: %s",
                    session.current_round_kind,
                    exc,
                )
        return decision

    def _terminate(self, kind: RoundKind) -> None:
        session = self._require_session()
        session.did_not_advance = True
        session.terminated_by = kind
        session.last_decision = SessionDecision.TERMINATE
        self._finish(SessionState.COMPLETED)

    def _finish(self, state: SessionState) -> None:
        session = self._require_session()
        session.state = state
        session.completed_at = datetime.now(UTC)
        status = (
            OutcomeStatus.ABANDONED if state is SessionState.ABANDONED else OutcomeStatus.COMPLETED
        )
        self._schedule_outcome(status)

    async def retry_current_round(self) -> RoundStart:
        """Discard the failed attempt's work and start the round again.

        Raises:
            SessionStateError: If the last decision did not offer a retry.
            StartFailed: If the restart failed; ``begin_current_round()``
                starts the reset round again.
        """
        session = self._require_session()
        machine = self.current_round
        if session.last_decision is not SessionDecision.RETRY_AVAILABLE or machine is None:
            msg = f"No retry available for session {session.session_id}"
            raise SessionStateError(msg, diagnostics={"decision": session.last_decision})
        machine.reset()
        session.last_decision = None
        logger.info("Retrying round %s (attempt %d)", machine.kind, machine.attempt_count)
        return await self.begin_current_round()

    def decline_retry(self) -> SessionDecision:
        """Turn an offered retry into pipeline termination.

        Raises:
            SessionStateError: If the last decision did not offer a retry.
        """
        session = self._require_session()
        if session.last_decision is not SessionDecision.RETRY_AVAILABLE:
            msg = f"No retry offered for session {session.session_id}"
            raise SessionStateError(msg)
        self._terminate(session.current_round_kind)
        return SessionDecision.TERMINATE

    def abandon(self, reason: str = "") -> None:
        """Mark the session abandoned on an outside signal.

        The running round is discarded; late gateway responses are dropped.
        A no-op for a session that is already terminal.
        """
        session = self._require_session()
        if session.is_terminal:
            return
        if self.current_round is not None:
            self.current_round.discard()
        logger.info("Session %s abandoned: %s", session.session_id, reason or "no reason given")
        self._finish(SessionState.ABANDONED)

    def scorecard(self) -> Scorecard:
        """Aggregate the session into a ``Scorecard``."""
        return build_scorecard(self._require_session(), self.registry)

    # ------------------------------------------------------------------
    # Outcome history (best effort, background)
    # ------------------------------------------------------------------

    def _schedule_outcome(self, status: OutcomeStatus) -> None:
        session = self._require_session()
        task = asyncio.get_running_loop().create_task(
            self._write_outcome(session.session_id, status, overall_score(session))
        )
        self._outcome_tasks.add(task)
        task.add_done_callback(self._outcome_tasks.discard)

    async def _write_outcome(
        self, session_id: str, status: OutcomeStatus, score: float | None
    ) -> None:
        try:
            await retry_with_backoff(
                lambda: self._gateway.record_session_outcome(session_id, status, score),
                max_attempts=self.config.outcome_max_attempts,
                base_delay=self.config.backoff_base_seconds,
                label=f"outcome write ({status})",
            )
        except GatewayError as exc:
            logger.error("Outcome %s for session %s was not recorded: %s", status, session_id, exc)

    async def drain(self) -> None:
        """Wait for every outstanding outcome report to finish."""
        while self._outcome_tasks:
            await asyncio.gather(*list(self._outcome_tasks), return_exceptions=True)


# ---------------------------------------------------------------------------
# Environment variable support
# ---------------------------------------------------------------------------

_ENV_FIELD_MAP: dict[str, str] = {
    "ASSESSMENT_LOG_LEVEL": "log_level",
    "ASSESSMENT_GATEWAY_URL": "gateway",
    "ASSESSMENT_MAX_RETRY_ATTEMPTS": "max_retry_attempts",
}
"""Maps environment variable names to OrchestratorConfig field names."""


def apply_env_overrides(config: OrchestratorConfig) -> OrchestratorConfig:
    """Apply ``ASSESSMENT_*`` env var overrides to a config.

    Environment variables override **default** field values only; a field
    whose value differs from the ``OrchestratorConfig`` default is left
    alone. Invalid values are ignored.

    Args:
        config: The configuration to apply overrides to.

    Returns:
        A new ``OrchestratorConfig`` with env var overrides applied.
    """
    defaults = OrchestratorConfig()
    overrides: dict[str, Any] = {}

    for env_var, field_name in _ENV_FIELD_MAP.items():
        env_value = os.environ.get(env_var)
        if env_value is None:
            continue
        current = getattr(config, field_name)
        default = getattr(defaults, field_name)
        if field_name == "gateway":
            current, default = current.base_url, default.base_url
        if current != default:
            continue
        parsed = _parse_env_value(field_name, env_value, config)
        if parsed is not None:
            overrides[field_name] = parsed

    if not overrides:
        return config
    return config.model_copy(update=overrides)


def _parse_env_value(field_name: str, raw: str, config: OrchestratorConfig) -> Any:
    """Parse a raw env var string for *field_name*, or ``None`` if invalid."""
    if field_name == "log_level":
        return raw if raw.strip() else None

    if field_name == "gateway":
        if not raw.startswith(("http://", "https://")):
            return None
        return GatewaySettings(
            base_url=raw,
            timeout_seconds=config.gateway.timeout_seconds,
            headers=dict(config.gateway.headers),
        )

    if field_name == "max_retry_attempts":
        try:
            value = int(raw)
        except ValueError:
            return None
        if value < 0:
            return None
        return value

    return None


# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(config: OrchestratorConfig) -> None:
    """Configure the ``assessment_pipeline`` logger.

    Installs a console handler and, when ``config.log_file`` is set, a
    file handler. Idempotent: repeated calls do not duplicate handlers.

    Args:
        config: Configuration providing ``log_level`` and optional ``log_file``.
    """
    pkg_logger = logging.getLogger("assessment_pipeline")
    pkg_logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    if not any(
        type(h) is logging.StreamHandler for h in pkg_logger.handlers
    ):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_LOG_FORMAT))
        pkg_logger.addHandler(console)

    if config.log_file is not None:
        target = str(Path(config.log_file).resolve())
        has_file = any(
            isinstance(h, logging.FileHandler) and h.baseFilename == target
            for h in pkg_logger.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(config.log_file)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            pkg_logger.addHandler(file_handler)
