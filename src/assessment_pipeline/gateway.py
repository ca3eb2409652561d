"""Evaluation gateway: the remote boundary of the assessment core.

Defines the ``EvaluationGateway`` protocol the orchestrator consumes, the
``retry_with_backoff`` helper used for every bounded remote retry, and
``HttpEvaluationGateway``, an ``httpx`` implementation speaking the
assessment backend's REST layout.

Responses are validated into ``RoundStart`` and ``RoundEvaluation``
models. Anything malformed (non-JSON bodies, a missing ``round_id`` or
score, a score outside 0-100) becomes ``GatewayInvariantViolation`` so the
caller fails closed instead of guessing.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from assessment_pipeline.errors import GatewayError, GatewayInvariantViolation
from assessment_pipeline.models import (
    GatewaySettings,
    OutcomeStatus,
    PipelineType,
    RoundEvaluation,
    RoundFamily,
    RoundKind,
    RoundStart,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class EvaluationGateway(Protocol):
    """Remote evaluation service consumed by the orchestrator."""

    async def create_session(  # noqa: D102
        self, candidate_id: str, pipeline_type: PipelineType
    ) -> str: ...

    async def start_round(  # noqa: D102
        self, session_id: str, kind: RoundKind, family: RoundFamily
    ) -> RoundStart: ...

    async def submit_round(  # noqa: D102
        self, kind: RoundKind, round_id: str, working_data: dict[str, Any]
    ) -> RoundEvaluation | None: ...

    async def checkpoint_round(  # noqa: D102
        self, kind: RoundKind, round_id: str, data: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def complete_round(  # noqa: D102
        self, kind: RoundKind, round_id: str
    ) -> RoundEvaluation: ...

    async def sync_progress(  # noqa: D102
        self, kind: RoundKind, round_id: str, data: dict[str, Any]
    ) -> None: ...

    async def record_session_outcome(  # noqa: D102
        self, session_id: str, status: OutcomeStatus, overall_score: float | None
    ) -> None: ...


# ---------------------------------------------------------------------------
# Retry with backoff
# ---------------------------------------------------------------------------


async def retry_with_backoff(
    call: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay: float = 1.0,
    label: str = "gateway call",
) -> T:
    """Run *call* until it succeeds or *max_attempts* are used up.

    Only ``GatewayError`` (including ``GatewayInvariantViolation``) is
    retried. Delays between attempts follow ``base_delay * 2**i``
    (1 s, 2 s, 4 s, ... with the default base).

    Args:
        call: Zero-argument coroutine factory issuing the remote call.
        max_attempts: Total attempts, including the first.
        base_delay: Delay before the first retry, in seconds.
        label: Description used in log messages.

    Returns:
        The result of the first successful attempt.

    Raises:
        GatewayError: The last error once all attempts are exhausted.
        ValueError: If *max_attempts* is less than 1.
    """
    if max_attempts < 1:
        msg = "retry_with_backoff requires max_attempts >= 1"
        raise ValueError(msg)
    last_error: GatewayError | None = None
    for attempt in range(max_attempts):
        try:
            return await call()
        except GatewayError as exc:
            last_error = exc
            if attempt < max_attempts - 1:
                delay = base_delay * 2**attempt
                logger.warning(
                    "%s attempt %d/%d failed (%s); retrying in %.1fs",
                    label,
                    attempt + 1,
                    max_attempts,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
    assert last_error is not None
    raise last_error


# ---------------------------------------------------------------------------
# HTTP implementation
# ---------------------------------------------------------------------------


class _RoundRoute(BaseModel):
    """URL layout of one round kind on the assessment backend.

    ``submit`` is ``None`` for rounds that are only scored by ``complete``;
    their work reaches the backend through checkpoints and syncs.
    """

    model_config = ConfigDict(frozen=True)

    prefix: str
    segment: str
    submit: str | None = "submit"
    checkpoint: str | None = None
    sync: str | None = None


_PIPELINE_PREFIXES: dict[PipelineType, str] = {
    PipelineType.OBJECTIVE: "/assessments",
    PipelineType.HYBRID: "/service/assessments",
    PipelineType.ANALYTICAL: "/analyst/assessments",
}

_ROUND_ROUTES: dict[RoundKind, _RoundRoute] = {
    # coding_round/{id}/submit judges one problem; complete scores the round
    RoundKind.CODING: _RoundRoute(
        prefix="/assessments", segment="coding_round", submit=None, checkpoint="submit"
    ),
    RoundKind.LIVE_CODING: _RoundRoute(
        prefix="/assessments",
        segment="live_coding",
        submit=None,
        checkpoint="chat",
        sync="code",
    ),
    RoundKind.SYSTEM_DESIGN: _RoundRoute(
        prefix="/assessments",
        segment="system_design",
        submit=None,
        checkpoint="chat",
        sync="diagram",
    ),
    RoundKind.APTITUDE: _RoundRoute(prefix="/service/assessments", segment="aptitude_test"),
    RoundKind.CORE_COMPETENCY: _RoundRoute(
        prefix="/service/assessments", segment="core_competency"
    ),
    RoundKind.TECHNICAL_INTERVIEW: _RoundRoute(
        prefix="/service/assessments",
        segment="technical_interview",
        submit=None,
        checkpoint="chat",
        sync="code",
    ),
    RoundKind.HR_INTERVIEW: _RoundRoute(prefix="/service/assessments", segment="hr_interview"),
    RoundKind.QUANTITATIVE: _RoundRoute(
        prefix="/analyst/assessments", segment="quantitative_test"
    ),
    RoundKind.SQL: _RoundRoute(
        prefix="/analyst/assessments",
        segment="sql_test",
        submit=None,
        checkpoint="submit_query",
    ),
    RoundKind.CASE_STUDY: _RoundRoute(prefix="/analyst/assessments", segment="case_study"),
    RoundKind.DOMAIN_INTERVIEW: _RoundRoute(
        prefix="/analyst/assessments", segment="domain_interview", submit=None, checkpoint="chat"
    ),
}


def _route(kind: RoundKind) -> _RoundRoute:
    return _ROUND_ROUTES[kind]


def parse_round_start(
    kind: RoundKind, family: RoundFamily, body: dict[str, Any]
) -> RoundStart:
    """Validate a round-start response body into a ``RoundStart``.

    Accepts the duration as ``duration_seconds`` or ``time_limit_minutes``;
    everything except ``round_id`` and the duration becomes the payload,
    tagged with *family*.

    Raises:
        GatewayInvariantViolation: If the body is missing required fields
            or fails validation.
    """
    content = dict(body)
    round_id = content.pop("round_id", None)
    duration = content.pop("duration_seconds", None)
    minutes = content.pop("time_limit_minutes", None)
    try:
        if duration is None and minutes is not None:
            duration = int(round(float(minutes) * 60))
        return RoundStart.model_validate(
            {
                "round_id": round_id,
                "kind": kind,
                "duration_seconds": duration,
                "payload": {**content, "family": family.value},
            }
        )
    except (ValidationError, TypeError, ValueError, OverflowError) as exc:
        msg = f"Malformed start response for {kind}: {exc}"
        raise GatewayInvariantViolation(msg, diagnostics={"kind": kind.value}) from exc


def parse_evaluation(kind: RoundKind, body: dict[str, Any]) -> RoundEvaluation:
    """Validate a submit or complete response body into a ``RoundEvaluation``.

    Accepts the score as ``score`` or ``overall_score``.

    Raises:
        GatewayInvariantViolation: If no score is present or it is out of range.
    """
    score = _score_of(body)
    if score is None:
        msg = f"Evaluation response for {kind} carries no score"
        raise GatewayInvariantViolation(msg, diagnostics={"kind": kind.value})
    try:
        return RoundEvaluation(score=score, passed=body.get("passed"), detail=body)
    except ValidationError as exc:
        msg = f"Malformed evaluation response for {kind}: {exc}"
        raise GatewayInvariantViolation(msg, diagnostics={"kind": kind.value}) from exc


def _score_of(body: dict[str, Any]) -> Any:
    return body.get("score", body.get("overall_score"))


class HttpEvaluationGateway:
    """``EvaluationGateway`` over HTTP/JSON using ``httpx.AsyncClient``.

    Use as an async context manager, or call ``aclose()`` when done. An
    externally supplied client is not closed by this gateway.
    """

    def __init__(
        self,
        settings: GatewaySettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            settings: Base URL, timeout and headers; defaults to ``GatewaySettings()``.
            client: Pre-built client (e.g. with a mock transport).
        """
        self._settings = settings or GatewaySettings()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self._settings.base_url,
            timeout=httpx.Timeout(self._settings.timeout_seconds),
            headers={"Content-Type": "application/json", **self._settings.headers},
        )

    async def __aenter__(self) -> HttpEvaluationGateway:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying client if this gateway created it."""
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self, method: str, path: str, body: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Issue one request and return its JSON object body.

        Raises:
            GatewayError: On transport errors, timeouts and non-2xx statuses.
            GatewayInvariantViolation: If the body is not a JSON object.
        """
        diagnostics = {"method": method, "path": path}
        try:
            response = await self._client.request(method, path, json=body)
        except httpx.TimeoutException as exc:
            msg = f"{method} {path} timed out"
            raise GatewayError(msg, diagnostics=diagnostics) from exc
        except httpx.HTTPError as exc:
            msg = f"{method} {path} failed: {exc}"
            raise GatewayError(msg, diagnostics=diagnostics) from exc

        if response.is_error:
            detail = _error_detail(response)
            msg = f"{method} {path} returned {response.status_code}: {detail}"
            raise GatewayError(msg, status_code=response.status_code, diagnostics=diagnostics)

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            msg = f"{method} {path} returned a non-JSON body"
            raise GatewayInvariantViolation(msg, diagnostics=diagnostics) from exc
        if not isinstance(data, dict):
            msg = f"{method} {path} returned {type(data).__name__}, expected an object"
            raise GatewayInvariantViolation(msg, diagnostics=diagnostics)
        return data

    async def create_session(self, candidate_id: str, pipeline_type: PipelineType) -> str:
        path = f"{_PIPELINE_PREFIXES[pipeline_type]}/create"
        body = await self._request("POST", path, {"candidate_id": candidate_id})
        session_id = body.get("assessment_id") or body.get("session_id")
        if not session_id:
            msg = "Session create response carries no assessment_id"
            raise GatewayInvariantViolation(msg, diagnostics={"path": path})
        return str(session_id)

    async def start_round(
        self, session_id: str, kind: RoundKind, family: RoundFamily
    ) -> RoundStart:
        route = _route(kind)
        body = await self._request("POST", f"{route.prefix}/{session_id}/{route.segment}/start")
        return parse_round_start(kind, family, body)

    async def submit_round(
        self, kind: RoundKind, round_id: str, working_data: dict[str, Any]
    ) -> RoundEvaluation | None:
        """Submit the round's work.

        Rounds without a submit endpoint send nothing and return ``None``;
        ``complete_round`` scores them. ``None`` is also returned when the
        response is a bare acknowledgement without a score.
        """
        route = _route(kind)
        if route.submit is None:
            return None
        body = await self._request(
            "POST", f"{route.prefix}/{route.segment}/{round_id}/{route.submit}", working_data
        )
        if _score_of(body) is None:
            return None
        return parse_evaluation(kind, body)

    async def checkpoint_round(
        self, kind: RoundKind, round_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        route = _route(kind)
        if route.checkpoint is None:
            msg = f"Round kind {kind} has no checkpoint endpoint"
            raise GatewayError(msg, diagnostics={"kind": kind.value})
        return await self._request(
            "POST", f"{route.prefix}/{route.segment}/{round_id}/{route.checkpoint}", data
        )

    async def complete_round(self, kind: RoundKind, round_id: str) -> RoundEvaluation:
        route = _route(kind)
        body = await self._request("POST", f"{route.prefix}/{route.segment}/{round_id}/complete")
        return parse_evaluation(kind, body)

    async def sync_progress(
        self, kind: RoundKind, round_id: str, data: dict[str, Any]
    ) -> None:
        route = _route(kind)
        if route.sync is None:
            return
        await self._request("POST", f"{route.prefix}/{route.segment}/{round_id}/{route.sync}", data)

    async def record_session_outcome(
        self, session_id: str, status: OutcomeStatus, overall_score: float | None
    ) -> None:
        await self._request(
            "PUT",
            f"/assessments/{session_id}/history",
            {"status": status.value, "overall_score": overall_score},
        )


def _error_detail(response: httpx.Response) -> str:
    """Extract a readable error message from a failed response."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        return str(data.get("message") or data.get("detail") or data)[:200]
    return str(data)[:200]
