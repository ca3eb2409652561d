"""Round state machine: lifecycle, timer and submission protocol of one round.

States::

    NOT_STARTED -> ACTIVE -> SUBMITTING -> EVALUATED
                                        \\-> EXPIRED

A checkpoint (``submit(final=False)``) goes ``ACTIVE -> SUBMITTING ->
ACTIVE``. Every transition out of ``ACTIVE`` happens synchronously, before
the first ``await``, so a user submit and a timer-forced submit racing on
the same event loop can never both win: the loser observes a state that is
no longer ``ACTIVE`` and becomes a no-op.

All round-kind behaviour comes from the injected ``RoundHandler``; this
module never branches on ``RoundKind``.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
import logging
from typing import TYPE_CHECKING, Any

from assessment_pipeline.errors import (
    GatewayError,
    GatewayInvariantViolation,
    RoundStateError,
    StartFailed,
    SubmitFailed,
)
from assessment_pipeline.gateway import retry_with_backoff
from assessment_pipeline.models import (
    TERMINAL_ROUND_STATES,
    CheckpointReply,
    RoundEvaluation,
    RoundKind,
    RoundResult,
    RoundSettings,
    RoundStart,
    RoundState,
)
from assessment_pipeline.timer import RoundTimer

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from assessment_pipeline.gateway import EvaluationGateway
    from assessment_pipeline.handlers import RoundHandler
    from assessment_pipeline.models import OrchestratorConfig

    TerminalCallback = Callable[[RoundResult], Awaitable[Any]]

logger = logging.getLogger(__name__)


class RoundStateMachine:
    """Lifecycle of a single round, wrapping one ``RoundHandler``.

    Attributes:
        session_id: Session the round belongs to.
        kind: Round kind being played.
        handler: Protocol adapter of the round's family.
        settings: Duration fallback, threshold and minimums of the round.
        state: Current lifecycle state.
        round_id: Remote round identifier, set on start.
        payload: Kind-specific round content, set on start.
        working_data: Candidate's accumulated work.
        attempt_count: Retries consumed so far (0 on the first attempt).
        duration_seconds: Duration the timer was armed with.
        deadline: Absolute UTC deadline of the running attempt.
        result: Terminal result, once ``EVALUATED`` or ``EXPIRED``.
        timer: Countdown driving the forced submit.
    """

    def __init__(
        self,
        *,
        session_id: str,
        kind: RoundKind,
        handler: RoundHandler,
        gateway: EvaluationGateway,
        settings: RoundSettings,
        config: OrchestratorConfig,
        on_terminal: TerminalCallback | None = None,
        timer: RoundTimer | None = None,
    ) -> None:
        """Create a round in ``NOT_STARTED``.

        Args:
            session_id: Session the round belongs to.
            kind: Round kind to play.
            handler: Protocol adapter of the round's family.
            gateway: Remote evaluation gateway.
            settings: Per-round settings.
            config: Orchestrator configuration (retry bounds, backoff, tick).
            on_terminal: Awaited once with the terminal ``RoundResult``.
            timer: Countdown to use; a ``RoundTimer`` ticking at
                ``config.timer_tick_seconds`` by default.
        """
        self.session_id = session_id
        self.kind = kind
        self.handler = handler
        self.settings = settings
        self._gateway = gateway
        self._config = config
        self._on_terminal = on_terminal
        self.timer = timer or RoundTimer(tick_seconds=config.timer_tick_seconds)

        self.state = RoundState.NOT_STARTED
        self.round_id: str | None = None
        self.payload: Any = None
        self.working_data: dict[str, Any] = {}
        self.attempt_count = 0
        self.duration_seconds: int | None = None
        self.deadline: datetime | None = None
        self.result: RoundResult | None = None

        self._starting = False
        self._time_up = False
        self._discarded = False
        self._inflight: asyncio.Task[Any] | None = None
        self._inflight_final = False
        self._sync_tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        """Whether the round has reached ``EVALUATED`` or ``EXPIRED``."""
        return self.state in TERMINAL_ROUND_STATES

    @property
    def time_up(self) -> bool:
        """Whether the timer has expired during the current attempt."""
        return self._time_up

    def remaining_seconds(self) -> int:
        """Whole seconds left on the countdown; 0 unless the round is running."""
        if self.state not in (RoundState.ACTIVE, RoundState.SUBMITTING):
            return 0
        return self.timer.remaining()

    def _diagnostics(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "round_kind": self.kind.value,
            "round_id": self.round_id,
            "attempt": self.attempt_count,
            "state": self.state.value,
        }

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self) -> RoundStart:
        """Start the round remotely and arm the timer.

        Returns:
            The gateway's ``RoundStart`` record.

        Raises:
            RoundStateError: If the round is not ``NOT_STARTED`` or a start is
                already in flight.
            StartFailed: If the remote start errored; the round stays
                ``NOT_STARTED`` and may be started again.
        """
        if self.state is not RoundState.NOT_STARTED or self._starting:
            msg = f"Cannot start round {self.kind} in state {self.state}"
            raise RoundStateError(msg, diagnostics=self._diagnostics())

        self._starting = True
        try:
            started = await self._gateway.start_round(
                self.session_id, self.kind, self.handler.family
            )
        except GatewayError as exc:
            logger.warning("Start of round %s failed: %s", self.kind, exc)
            msg = f"Could not start round {self.kind}: {exc}"
            raise StartFailed(msg, diagnostics={**self._diagnostics(), **exc.diagnostics}) from exc
        finally:
            self._starting = False

        if self._discarded:
            logger.debug("Dropping start response for discarded round %s", self.kind)
            return started

        duration = started.duration_seconds or self.settings.default_duration_seconds
        if started.duration_seconds is None:
            logger.info(
                "Gateway sent no duration for %s; using configured %ds", self.kind, duration
            )
        self.round_id = started.round_id
        self.payload = started.payload
        self.working_data = self.handler.initial_working_data(started.payload)
        self.duration_seconds = duration
        self.deadline = datetime.now(UTC) + timedelta(seconds=duration)
        self.result = None
        self._time_up = False
        self.state = RoundState.ACTIVE
        self.timer.start(duration, self._on_timer_expired)
        logger.info(
            "Round %s started (round_id=%s, duration=%ds, attempt=%d)",
            self.kind,
            self.round_id,
            duration,
            self.attempt_count,
        )
        return started

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def record_progress(self, partial: dict[str, Any]) -> dict[str, Any]:
        """Merge partial work into the working data.

        Families declaring incremental sync also push a snapshot to the
        gateway in the background; a failed sync is logged and never blocks.

        Args:
            partial: Family-specific partial work.

        Returns:
            The merged working data.

        Raises:
            RoundStateError: If the round is not ``ACTIVE``.
        """
        if self.state is not RoundState.ACTIVE:
            msg = f"Cannot record progress for round {self.kind} in state {self.state}"
            raise RoundStateError(msg, diagnostics=self._diagnostics())
        self.working_data = self.handler.merge_progress(
            self.payload, self.working_data, partial
        )
        if self.handler.incremental_sync:
            self._schedule_sync(self.handler.sync_snapshot(self.working_data))
        return self.working_data

    def _schedule_sync(self, snapshot: dict[str, Any]) -> None:
        task = asyncio.get_running_loop().create_task(self._sync(snapshot))
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_tasks.discard)

    async def _sync(self, snapshot: dict[str, Any]) -> None:
        assert self.round_id is not None
        try:
            await self._gateway.sync_progress(self.kind, self.round_id, snapshot)
        except GatewayError as exc:
            logger.warning("Progress sync for %s failed (ignored): %s", self.kind, exc)

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def submit(self, *, final: bool = True) -> RoundResult | CheckpointReply:
        """Submit the round, or send a mid-round checkpoint.

        While a submit of the same finality is in flight, a second call
        issues no remote request and returns the pending outcome. Once the
        round is terminal, a final submit returns the existing result.

        Args:
            final: ``True`` to end the round; ``False`` for a checkpoint.

        Returns:
            The terminal ``RoundResult`` for a final submit, or the
            ``CheckpointReply`` for a checkpoint.

        Raises:
            RoundStateError: If the round is not running, the family has no
                checkpoints, time is up for a checkpoint, or a submit of the
                other finality is in flight.
            SubmissionIncomplete: If a user-initiated final submit misses
                the round's minimum interactions.
            SubmitFailed: If a checkpoint could not be delivered.
        """
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            if self._inflight_final != final:
                msg = f"A {'final submit' if self._inflight_final else 'checkpoint'} is in flight"
                raise RoundStateError(msg, diagnostics=self._diagnostics())
            logger.warning("Duplicate submit for round %s; awaiting pending outcome", self.kind)
            return await asyncio.shield(inflight)

        if self.is_terminal and final:
            assert self.result is not None
            return self.result
        if self.state is not RoundState.ACTIVE:
            msg = f"Cannot submit round {self.kind} in state {self.state}"
            raise RoundStateError(msg, diagnostics=self._diagnostics())

        if not final:
            return await self._begin_checkpoint()
        self.handler.check_ready(self.payload, self.working_data, self.settings)
        return await self._begin_final(forced=False)

    async def _begin_checkpoint(self) -> CheckpointReply:
        if not self.handler.supports_checkpoint:
            msg = f"Round {self.kind} does not accept checkpoints"
            raise RoundStateError(msg, diagnostics=self._diagnostics())
        if self._time_up:
            msg = f"Time is up for round {self.kind}; only the final submit remains"
            raise RoundStateError(msg, diagnostics=self._diagnostics())
        body = self.handler.build_checkpoint(self.payload, self.working_data)
        self.state = RoundState.SUBMITTING
        task = asyncio.get_running_loop().create_task(self._run_checkpoint(body))
        self._inflight = task
        self._inflight_final = False
        return await asyncio.shield(task)

    async def _run_checkpoint(self, body: dict[str, Any]) -> CheckpointReply:
        assert self.round_id is not None
        try:
            reply = await self._gateway.checkpoint_round(self.kind, self.round_id, body)
        except GatewayError as exc:
            if self.state is RoundState.SUBMITTING:
                self.state = RoundState.ACTIVE
            logger.warning("Checkpoint for %s failed: %s", self.kind, exc)
            msg = f"Could not deliver checkpoint for round {self.kind}: {exc}"
            raise SubmitFailed(msg, diagnostics={**self._diagnostics(), **exc.diagnostics}) from exc
        if not self._discarded and self.state is RoundState.SUBMITTING:
            self.working_data = self.handler.apply_checkpoint_reply(
                self.payload, self.working_data, body, reply
            )
            self.state = RoundState.ACTIVE
        return CheckpointReply(kind=self.kind, payload=reply)

    async def _begin_final(self, *, forced: bool) -> RoundResult:
        submission = self.handler.build_submission(self.payload, self.working_data)
        self.state = RoundState.SUBMITTING
        if not forced:
            self.timer.cancel()
        task = asyncio.get_running_loop().create_task(self._run_final(submission, forced=forced))
        self._inflight = task
        self._inflight_final = True
        logger.info("Submitting round %s (forced=%s)", self.kind, forced)
        return await asyncio.shield(task)

    async def _submit_once(self, submission: dict[str, Any]) -> RoundEvaluation | None:
        assert self.round_id is not None
        evaluation = await self._gateway.submit_round(self.kind, self.round_id, submission)
        if evaluation is None and not self.handler.requires_complete:
            msg = f"Submit response for {self.kind} carries no score"
            raise GatewayInvariantViolation(msg, diagnostics=self._diagnostics())
        return evaluation

    async def _complete_once(self) -> RoundEvaluation:
        assert self.round_id is not None
        return await self._gateway.complete_round(self.kind, self.round_id)

    async def _run_final(self, submission: dict[str, Any], *, forced: bool) -> RoundResult:
        retry_options = {
            "max_attempts": self._config.submit_max_attempts,
            "base_delay": self._config.backoff_base_seconds,
        }
        try:
            evaluation = await retry_with_backoff(
                lambda: self._submit_once(submission),
                label=f"{self.kind} submit",
                **retry_options,
            )
            if self.handler.requires_complete:
                evaluation = await retry_with_backoff(
                    self._complete_once, label=f"{self.kind} complete", **retry_options
                )
        except GatewayError as exc:
            logger.error(
                "Submit of round %s failed after %d attempts; marking expired: %s",
                self.kind,
                self._config.submit_max_attempts,
                exc,
            )
            result = RoundResult(
                round_kind=self.kind,
                score=0.0,
                passed=False,
                raw_evaluation_payload={"error": str(exc), **exc.diagnostics},
                attempt=self.attempt_count,
                forced=forced,
                expired=True,
            )
            self.state = RoundState.EXPIRED
        else:
            assert evaluation is not None
            passed = evaluation.score >= self.settings.pass_threshold
            result = RoundResult(
                round_kind=self.kind,
                score=evaluation.score,
                passed=passed,
                raw_evaluation_payload=evaluation.detail,
                attempt=self.attempt_count,
                forced=forced,
            )
            self.state = RoundState.EVALUATED
            logger.info(
                "Round %s evaluated: score=%.1f threshold=%.1f passed=%s",
                self.kind,
                evaluation.score,
                self.settings.pass_threshold,
                passed,
            )
        self.result = result

        if self._discarded:
            logger.debug("Dropping result of discarded round %s", self.kind)
        elif self._on_terminal is not None:
            await self._on_terminal(result)
        return result

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def _on_timer_expired(self) -> None:
        """Force the final submit once time runs out.

        An in-flight checkpoint is allowed to settle first. If a final
        submit is already running the expiry is a no-op.
        """
        self._time_up = True
        logger.info("Time is up for round %s", self.kind)
        while (
            self._inflight is not None
            and not self._inflight.done()
            and not self._inflight_final
        ):
            await asyncio.wait({self._inflight})
        if self._discarded or self.state is not RoundState.ACTIVE:
            return
        await self._begin_final(forced=True)

    # ------------------------------------------------------------------
    # Retry and teardown
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Return a terminal round to ``NOT_STARTED`` for another attempt.

        Discards the working data and increments ``attempt_count`` by one.

        Raises:
            RoundStateError: If the round is not terminal.
        """
        if not self.is_terminal:
            msg = f"Cannot reset round {self.kind} in state {self.state}"
            raise RoundStateError(msg, diagnostics=self._diagnostics())
        self.timer.cancel()
        self.state = RoundState.NOT_STARTED
        self.working_data = {}
        self.attempt_count += 1
        self.round_id = None
        self.payload = None
        self.duration_seconds = None
        self.deadline = None
        self.result = None
        self._time_up = False
        self._inflight = None

    def discard(self) -> None:
        """Detach the round: stop the timer and drop any late responses.

        In-flight remote calls are not cancelled; their responses are
        ignored once they arrive.
        """
        self._discarded = True
        self.timer.cancel()
        for task in list(self._sync_tasks):
            task.cancel()
