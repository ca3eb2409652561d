"""Shared fixtures for the assessment_pipeline test suite."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

from assessment_pipeline.models import (
    OrchestratorConfig,
    PipelineType,
    RoundEvaluation,
    RoundFamily,
    RoundKind,
    RoundResult,
    RoundStart,
    Session,
)
from assessment_pipeline.registry import _REGISTRY_FILE, PipelineRegistry
from assessment_pipeline.timer import RoundTimer
import pytest
import yaml

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------

FAST_TICK = 0.01
"""Timer tick used with the fake clock so expiry is noticed within milliseconds."""


def make_config(**overrides: Any) -> OrchestratorConfig:
    """Build an OrchestratorConfig without backoff delays.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed OrchestratorConfig instance.
    """
    defaults: dict[str, Any] = {"backoff_base_seconds": 0.0}
    defaults.update(overrides)
    return OrchestratorConfig(**defaults)


def payload_for(kind: RoundKind, family: RoundFamily) -> dict[str, Any]:
    """Return a realistic start payload for a round of *kind*."""
    if family is RoundFamily.OBJECTIVE_TEST:
        return {
            "questions": [
                {"id": "q1", "prompt": "What is 7 * 8?", "options": ["54", "56", "58"]},
                {"id": "q2", "prompt": "Next in 2, 4, 8, ...?", "options": ["12", "16"]},
            ]
        }
    if family is RoundFamily.FREE_TEXT and kind is RoundKind.HR_INTERVIEW:
        return {
            "questions": [
                {"question_id": "h1", "question": "Tell us about yourself."},
                {"question_id": "h2", "question": "Why this role?"},
            ]
        }
    if family is RoundFamily.FREE_TEXT:
        return {"prompt": "Churn rose 12% last quarter. Diagnose the cause."}
    if family is RoundFamily.CODE_SUBMISSION:
        return {
            "problems": [
                {"id": "p1", "title": "Two sum", "starter_code": "def solve(nums, k):\n"},
                {"id": "p2", "title": "Reverse list", "starter_code": "def rev(xs):\n"},
            ]
        }
    if family is RoundFamily.STRUCTURED_DIAGRAM:
        return {"initial_message": "Design a URL shortener.", "current_phase": "requirements"}
    return {"initial_message": "Hi! Walk me through your approach."}


def make_round_start(
    kind: RoundKind = RoundKind.APTITUDE,
    family: RoundFamily = RoundFamily.OBJECTIVE_TEST,
    *,
    round_id: str = "round-1",
    duration_seconds: int | None = 1800,
    **payload: Any,
) -> RoundStart:
    """Build a valid RoundStart for *kind* with a family-appropriate payload."""
    content = payload or payload_for(kind, family)
    return RoundStart.model_validate(
        {
            "round_id": round_id,
            "kind": kind,
            "duration_seconds": duration_seconds,
            "payload": {"family": family.value, **content},
        }
    )


def make_evaluation(score: float = 80.0, **detail: Any) -> RoundEvaluation:
    """Build a RoundEvaluation with *score* and optional detail fields."""
    return RoundEvaluation(score=score, detail={"score": score, **detail})


def make_result(**overrides: Any) -> RoundResult:
    """Build a valid RoundResult with sensible defaults.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed RoundResult instance.
    """
    defaults: dict[str, Any] = {
        "round_kind": RoundKind.APTITUDE,
        "score": 72.0,
        "passed": True,
    }
    defaults.update(overrides)
    return RoundResult(**defaults)


def make_session(**overrides: Any) -> Session:
    """Build a valid Session on the hybrid pipeline.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed Session instance.
    """
    defaults: dict[str, Any] = {
        "session_id": "sess-1",
        "candidate_id": "cand-1",
        "pipeline_type": PipelineType.HYBRID,
        "round_sequence": (
            RoundKind.APTITUDE,
            RoundKind.CORE_COMPETENCY,
            RoundKind.TECHNICAL_INTERVIEW,
            RoundKind.HR_INTERVIEW,
        ),
    }
    defaults.update(overrides)
    return Session(**defaults)


def make_registry(tmp_path: Path, pipelines: dict[str, list[str]]) -> PipelineRegistry:
    """Build a PipelineRegistry whose pipelines are replaced by *pipelines*.

    Round metadata and aliases are taken from the packaged declarations.
    """
    with _REGISTRY_FILE.open(encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    data["pipelines"] = pipelines
    path = tmp_path / "pipelines.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return PipelineRegistry(path)


async def settle(seconds: float = 0.05) -> None:
    """Yield to the event loop long enough for fast-ticking timers to react."""
    await asyncio.sleep(seconds)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ManualTimer:
    """RoundTimer double whose expiry is fired explicitly with ``fire()``.

    Follows the RoundTimer contract: a cancelled timer never fires, and a
    fired timer cannot be cancelled.
    """

    def __init__(self) -> None:
        self.duration: float | None = None
        self.callback: Any = None
        self.armed = False
        self.fired = False
        self.cancel_calls = 0

    def start(self, duration_seconds: float, on_expire: Any) -> None:
        if self.armed:
            msg = "Timer is already armed; cancel it before re-arming"
            raise RuntimeError(msg)
        self.duration = duration_seconds
        self.callback = on_expire
        self.armed = True
        self.fired = False

    def cancel(self) -> bool:
        self.cancel_calls += 1
        was_armed = self.armed
        self.armed = False
        return was_armed

    def remaining(self) -> int:
        return int(self.duration or 0) if self.armed else 0

    async def fire(self) -> None:
        if not self.armed:
            return
        self.armed = False
        self.fired = True
        await self.callback()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_clock() -> FakeClock:
    """Return a fake monotonic clock starting at t=1000."""
    return FakeClock()


@pytest.fixture()
def timer_factory(fake_clock: FakeClock) -> Any:
    """Return a factory of RoundTimers driven by ``fake_clock``."""

    def _factory() -> RoundTimer:
        return RoundTimer(tick_seconds=FAST_TICK, clock=fake_clock)

    return _factory


@pytest.fixture()
def mock_gateway() -> AsyncMock:
    """Return a gateway double built by ``make_gateway``."""
    return make_gateway()


def make_gateway() -> AsyncMock:
    """Build an AsyncMock simulating an EvaluationGateway.

    ``start_round`` answers with a family-appropriate payload and a
    1800-second duration; ``submit_round`` and ``complete_round`` score 80;
    checkpoints receive an interviewer reply.
    """
    gateway = AsyncMock()
    gateway.create_session = AsyncMock(return_value="sess-1")

    counter = {"n": 0}

    async def _start(session_id: str, kind: RoundKind, family: RoundFamily) -> RoundStart:
        counter["n"] += 1
        return make_round_start(kind, family, round_id=f"{kind.value}-{counter['n']}")

    gateway.start_round = AsyncMock(side_effect=_start)
    gateway.submit_round = AsyncMock(return_value=make_evaluation(80.0))
    gateway.complete_round = AsyncMock(return_value=make_evaluation(80.0))
    gateway.checkpoint_round = AsyncMock(
        return_value={"interviewer_response": "Good. What is the complexity?"}
    )
    gateway.sync_progress = AsyncMock(return_value=None)
    gateway.record_session_outcome = AsyncMock(return_value=None)
    return gateway
