"""Round handlers: one pluggable protocol adapter per round family.

A handler knows how a round family buffers partial work, what a
checkpoint sends, how a checkpoint reply is folded back in, what a final
submission looks like, and which minimum interactions gate a
user-initiated submit. It also *declares* the family's contract: whether
checkpoints exist, whether an explicit finalize call follows the submit,
whether partial work is synced while the round runs, and whether a
failed round may be retried. The round state machine and the session
orchestrator read these declarations and never branch on round kind.

Handlers are stateless; working data is a plain ``dict`` owned by the
round state machine and replaced (never mutated in place) on every merge.
"""

from __future__ import annotations

import copy
from datetime import UTC, datetime
import logging
from typing import Any, ClassVar

from assessment_pipeline.errors import RoundStateError, SubmissionIncomplete
from assessment_pipeline.models import (
    CodeProblemPayload,
    ConversationPayload,
    DiagramPayload,
    FailurePolicy,
    FreeTextPayload,
    ObjectiveTestPayload,
    RoundFamily,
    RoundSettings,
)

logger = logging.getLogger(__name__)

_SINGLE_RESPONSE_KEY = "response"


def count_words(text: str) -> int:
    """Count whitespace-separated words in *text*."""
    return len([w for w in text.split() if w])


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


class RoundHandler:
    """Base protocol adapter for a round family.

    Subclasses set the class-level contract flags and override the hooks
    their family needs. The defaults describe a one-shot round: no
    checkpoints, no finalize call, no sync, pipeline-terminal on failure.

    Attributes:
        family: Family served by the handler.
        failure_policy: Whether a failed round may be retried.
        supports_checkpoint: Whether ``submit(final=False)`` is meaningful.
        requires_complete: Whether a finalize call follows the final submit.
        incremental_sync: Whether partial work is pushed best-effort.
    """

    family: ClassVar[RoundFamily]
    failure_policy: ClassVar[FailurePolicy] = FailurePolicy.TERMINATE
    supports_checkpoint: ClassVar[bool] = False
    requires_complete: ClassVar[bool] = False
    incremental_sync: ClassVar[bool] = False

    def initial_working_data(self, payload: Any) -> dict[str, Any]:
        """Return the working data a freshly started round begins with."""
        return {}

    def merge_progress(
        self, payload: Any, working: dict[str, Any], partial: dict[str, Any]
    ) -> dict[str, Any]:
        """Fold *partial* work into a copy of *working* and return it."""
        merged = copy.deepcopy(working)
        merged.update(copy.deepcopy(partial))
        return merged

    def check_ready(
        self, payload: Any, working: dict[str, Any], settings: RoundSettings
    ) -> None:
        """Raise ``SubmissionIncomplete`` if a user submit is premature.

        Never consulted for submits forced by timer expiry.
        """

    def build_submission(self, payload: Any, working: dict[str, Any]) -> dict[str, Any]:
        """Build the final submission body from the working data."""
        return copy.deepcopy(working)

    def build_checkpoint(self, payload: Any, working: dict[str, Any]) -> dict[str, Any]:
        """Build the body of a mid-round checkpoint."""
        msg = f"{type(self).__name__} does not support checkpoints"
        raise NotImplementedError(msg)

    def apply_checkpoint_reply(
        self,
        payload: Any,
        working: dict[str, Any],
        sent: dict[str, Any],
        reply: dict[str, Any],
    ) -> dict[str, Any]:
        """Fold a checkpoint reply into a copy of *working* and return it."""
        return copy.deepcopy(working)

    def sync_snapshot(self, working: dict[str, Any]) -> dict[str, Any]:
        """Return the part of *working* pushed by incremental sync."""
        return copy.deepcopy(working)

    def effective_failure_policy(self, settings: RoundSettings) -> FailurePolicy:
        """Return the failure policy, honouring a per-round override."""
        return settings.failure_policy or self.failure_policy


# ---------------------------------------------------------------------------
# Objective tests (aptitude, core competency, quantitative)
# ---------------------------------------------------------------------------


class ObjectiveTestHandler(RoundHandler):
    """Multiple-choice and short-answer tests, answered in any order.

    Working data: ``{"answers": {question_id: answer}}``. Unanswered
    questions are submitted as ``None`` so the evaluator scores them as
    wrong rather than missing.
    """

    family = RoundFamily.OBJECTIVE_TEST
    failure_policy = FailurePolicy.RETRY

    def initial_working_data(self, payload: ObjectiveTestPayload) -> dict[str, Any]:
        return {"answers": {}}

    def merge_progress(
        self,
        payload: ObjectiveTestPayload,
        working: dict[str, Any],
        partial: dict[str, Any],
    ) -> dict[str, Any]:
        """Record answers by question id.

        Raises:
            RoundStateError: If an answer targets a question not in the round.
        """
        known = {q.id for q in payload.questions}
        answers = dict(partial.get("answers") or {})
        unknown = [qid for qid in answers if known and qid not in known]
        if unknown:
            msg = f"Answers reference unknown questions: {sorted(unknown)}"
            raise RoundStateError(
                msg, diagnostics={"unknown_questions": sorted(unknown), "known": sorted(known)}
            )
        merged = copy.deepcopy(working)
        merged.setdefault("answers", {}).update(copy.deepcopy(answers))
        return merged

    def build_submission(
        self, payload: ObjectiveTestPayload, working: dict[str, Any]
    ) -> dict[str, Any]:
        answers: dict[str, Any] = working.get("answers") or {}
        if not payload.questions:
            return {
                "responses": [
                    {"question_id": qid, "answer": value} for qid, value in answers.items()
                ]
            }
        return {
            "responses": [
                {"question_id": q.id, "answer": answers.get(q.id)}
                for q in payload.questions
            ]
        }


# ---------------------------------------------------------------------------
# Free-text analysis (case study, HR interview)
# ---------------------------------------------------------------------------


class FreeTextHandler(RoundHandler):
    """Written or recorded responses scored remotely.

    A single-prompt round (case study) keeps its text under
    ``responses["response"]``; a question-list round (HR interview) keeps
    one response artifact per question id. Only a reference to a produced
    artifact is held here, never media content.
    """

    family = RoundFamily.FREE_TEXT

    def initial_working_data(self, payload: FreeTextPayload) -> dict[str, Any]:
        return {"responses": {}}

    def merge_progress(
        self,
        payload: FreeTextPayload,
        working: dict[str, Any],
        partial: dict[str, Any],
    ) -> dict[str, Any]:
        merged = copy.deepcopy(working)
        responses = merged.setdefault("responses", {})
        if _SINGLE_RESPONSE_KEY in partial:
            responses[_SINGLE_RESPONSE_KEY] = partial[_SINGLE_RESPONSE_KEY]
        responses.update(copy.deepcopy(partial.get("responses") or {}))
        return merged

    def check_ready(
        self,
        payload: FreeTextPayload,
        working: dict[str, Any],
        settings: RoundSettings,
    ) -> None:
        """Require every listed question answered and the minimum word count."""
        responses: dict[str, Any] = working.get("responses") or {}
        if payload.questions:
            answered = [q.id for q in payload.questions if responses.get(q.id)]
            if len(answered) < len(payload.questions):
                msg = (
                    f"{len(payload.questions) - len(answered)} question(s) "
                    "still have no response"
                )
                raise SubmissionIncomplete(
                    msg, required=len(payload.questions), actual=len(answered)
                )
        if settings.min_words:
            words = sum(count_words(v) for v in responses.values() if isinstance(v, str))
            if words < settings.min_words:
                msg = f"Response has {words} words; at least {settings.min_words} required"
                raise SubmissionIncomplete(msg, required=settings.min_words, actual=words)

    def build_submission(
        self, payload: FreeTextPayload, working: dict[str, Any]
    ) -> dict[str, Any]:
        responses: dict[str, Any] = working.get("responses") or {}
        if payload.questions:
            return {
                "responses": [
                    {"question_id": q.id, "response": responses.get(q.id)}
                    for q in payload.questions
                ]
            }
        return {"response": responses.get(_SINGLE_RESPONSE_KEY, "")}


# ---------------------------------------------------------------------------
# Code submission (coding, SQL)
# ---------------------------------------------------------------------------


class CodeSubmissionHandler(RoundHandler):
    """Code buffers per problem, judged one problem at a time.

    Working data::

        {"solutions": {problem_id: {"code": ..., "language": ...}},
         "active_problem": problem_id,
         "judgements": {problem_id: <judge reply>}}

    A checkpoint sends the active problem to the remote judge; the final
    submit sends every buffer and is followed by a finalize call.
    """

    family = RoundFamily.CODE_SUBMISSION
    supports_checkpoint = True
    requires_complete = True
    incremental_sync = True

    def initial_working_data(self, payload: CodeProblemPayload) -> dict[str, Any]:
        return {
            "solutions": {
                p.id: {"code": p.starter_code, "language": p.language}
                for p in payload.problems
            },
            "active_problem": payload.problems[0].id if payload.problems else None,
            "judgements": {},
        }

    def merge_progress(
        self,
        payload: CodeProblemPayload,
        working: dict[str, Any],
        partial: dict[str, Any],
    ) -> dict[str, Any]:
        """Update the buffer of ``problem_id`` (default: the active problem).

        Raises:
            RoundStateError: If no problem is addressed or it is not in the round.
        """
        merged = copy.deepcopy(working)
        target = partial.get("problem_id") or merged.get("active_problem")
        known = {p.id for p in payload.problems}
        if target is None or (known and target not in known):
            msg = f"Unknown problem {target!r}"
            raise RoundStateError(
                msg, diagnostics={"problem_id": target, "known": sorted(known)}
            )
        merged["active_problem"] = target
        buffer = merged.setdefault("solutions", {}).setdefault(
            target, {"code": "", "language": "python"}
        )
        for key in ("code", "language"):
            if key in partial:
                buffer[key] = partial[key]
        return merged

    def build_checkpoint(
        self, payload: CodeProblemPayload, working: dict[str, Any]
    ) -> dict[str, Any]:
        active = working.get("active_problem")
        if active is None:
            msg = "No problem selected to run"
            raise SubmissionIncomplete(msg, required=1, actual=0)
        buffer = (working.get("solutions") or {}).get(active, {})
        return {
            "question_id": active,
            "code": buffer.get("code", ""),
            "language": buffer.get("language", "python"),
        }

    def apply_checkpoint_reply(
        self,
        payload: CodeProblemPayload,
        working: dict[str, Any],
        sent: dict[str, Any],
        reply: dict[str, Any],
    ) -> dict[str, Any]:
        merged = copy.deepcopy(working)
        merged.setdefault("judgements", {})[sent["question_id"]] = copy.deepcopy(reply)
        return merged

    def sync_snapshot(self, working: dict[str, Any]) -> dict[str, Any]:
        active = working.get("active_problem")
        buffer = (working.get("solutions") or {}).get(active, {})
        return {"question_id": active, **copy.deepcopy(buffer)}

    def build_submission(
        self, payload: CodeProblemPayload, working: dict[str, Any]
    ) -> dict[str, Any]:
        solutions: dict[str, Any] = working.get("solutions") or {}
        return {
            "solutions": [
                {
                    "question_id": problem_id,
                    "code": buffer.get("code", ""),
                    "language": buffer.get("language", "python"),
                }
                for problem_id, buffer in solutions.items()
            ]
        }


# ---------------------------------------------------------------------------
# Collaborative chat (live coding, technical and domain interviews)
# ---------------------------------------------------------------------------


class CollaborativeChatHandler(RoundHandler):
    """Turn-based conversation with an interviewer, plus a code buffer.

    Working data::

        {"transcript": [{"role", "content", "timestamp"}, ...],
         "draft": <unsent candidate message>,
         "code": ..., "language": ...}

    Each checkpoint sends the draft as one chat turn. A user-initiated
    final submit requires ``min_interactions`` transcript messages,
    counting the interviewer's opening message.
    """

    family = RoundFamily.COLLABORATIVE_CHAT
    supports_checkpoint = True
    requires_complete = True
    incremental_sync = True

    _REPLY_KEYS: ClassVar[tuple[str, ...]] = (
        "interviewer_response",
        "ai_response",
        "reply",
    )

    def initial_working_data(self, payload: ConversationPayload) -> dict[str, Any]:
        transcript: list[dict[str, Any]] = []
        if payload.initial_message:
            transcript.append(
                {
                    "role": "interviewer",
                    "content": payload.initial_message,
                    "timestamp": _timestamp(),
                }
            )
        return {
            "transcript": transcript,
            "draft": "",
            "code": "",
            "language": getattr(payload, "language", "python"),
        }

    def merge_progress(
        self,
        payload: ConversationPayload,
        working: dict[str, Any],
        partial: dict[str, Any],
    ) -> dict[str, Any]:
        merged = copy.deepcopy(working)
        if "message" in partial:
            merged["draft"] = str(partial["message"])
        for key in ("code", "language"):
            if key in partial:
                merged[key] = partial[key]
        return merged

    def check_ready(
        self,
        payload: ConversationPayload,
        working: dict[str, Any],
        settings: RoundSettings,
    ) -> None:
        """Require ``min_interactions`` transcript messages."""
        count = len(working.get("transcript") or [])
        if count < settings.min_interactions:
            msg = (
                f"Conversation has {count} messages; "
                f"at least {settings.min_interactions} required before finishing"
            )
            raise SubmissionIncomplete(
                msg, required=settings.min_interactions, actual=count
            )

    def build_checkpoint(
        self, payload: ConversationPayload, working: dict[str, Any]
    ) -> dict[str, Any]:
        draft = str(working.get("draft") or "").strip()
        if not draft:
            msg = "No message to send"
            raise SubmissionIncomplete(msg, required=1, actual=0)
        return {"message": draft}

    def apply_checkpoint_reply(
        self,
        payload: ConversationPayload,
        working: dict[str, Any],
        sent: dict[str, Any],
        reply: dict[str, Any],
    ) -> dict[str, Any]:
        merged = copy.deepcopy(working)
        transcript = merged.setdefault("transcript", [])
        transcript.append(
            {"role": "candidate", "content": sent["message"], "timestamp": _timestamp()}
        )
        answer = next((reply[k] for k in self._REPLY_KEYS if reply.get(k)), None)
        if answer:
            transcript.append(
                {"role": "interviewer", "content": str(answer), "timestamp": _timestamp()}
            )
        else:
            logger.warning("Checkpoint reply carried no interviewer message")
        merged["draft"] = ""
        return merged

    def sync_snapshot(self, working: dict[str, Any]) -> dict[str, Any]:
        return {"code": working.get("code", ""), "language": working.get("language", "python")}

    def build_submission(
        self, payload: ConversationPayload, working: dict[str, Any]
    ) -> dict[str, Any]:
        return {
            "transcript": copy.deepcopy(working.get("transcript") or []),
            "code": working.get("code", ""),
            "language": working.get("language", "python"),
        }


# ---------------------------------------------------------------------------
# Structured diagram (system design)
# ---------------------------------------------------------------------------


class StructuredDiagramHandler(CollaborativeChatHandler):
    """Whiteboard diagram plus a design conversation.

    Adds ``diagram`` (``components`` and ``connections``, replaced wholesale
    on each update) and the interviewer-driven ``phase`` to the chat
    working data. Incremental sync pushes the diagram, not the code buffer.
    """

    family = RoundFamily.STRUCTURED_DIAGRAM

    def initial_working_data(self, payload: DiagramPayload) -> dict[str, Any]:
        working = super().initial_working_data(payload)
        working.pop("code")
        working.pop("language")
        working["diagram"] = {"components": [], "connections": []}
        working["phase"] = payload.current_phase
        return working

    def merge_progress(
        self,
        payload: DiagramPayload,
        working: dict[str, Any],
        partial: dict[str, Any],
    ) -> dict[str, Any]:
        merged = copy.deepcopy(working)
        if "message" in partial:
            merged["draft"] = str(partial["message"])
        diagram = merged.setdefault("diagram", {"components": [], "connections": []})
        for key in ("components", "connections"):
            if key in partial:
                diagram[key] = copy.deepcopy(list(partial[key]))
        return merged

    def apply_checkpoint_reply(
        self,
        payload: DiagramPayload,
        working: dict[str, Any],
        sent: dict[str, Any],
        reply: dict[str, Any],
    ) -> dict[str, Any]:
        merged = super().apply_checkpoint_reply(payload, working, sent, reply)
        if reply.get("current_phase"):
            merged["phase"] = reply["current_phase"]
        return merged

    def sync_snapshot(self, working: dict[str, Any]) -> dict[str, Any]:
        return copy.deepcopy(working.get("diagram") or {"components": [], "connections": []})

    def build_submission(
        self, payload: DiagramPayload, working: dict[str, Any]
    ) -> dict[str, Any]:
        return {
            "diagram": copy.deepcopy(working.get("diagram") or {}),
            "transcript": copy.deepcopy(working.get("transcript") or []),
            "phase": working.get("phase"),
        }


_HANDLERS: dict[RoundFamily, type[RoundHandler]] = {
    RoundFamily.OBJECTIVE_TEST: ObjectiveTestHandler,
    RoundFamily.FREE_TEXT: FreeTextHandler,
    RoundFamily.CODE_SUBMISSION: CodeSubmissionHandler,
    RoundFamily.COLLABORATIVE_CHAT: CollaborativeChatHandler,
    RoundFamily.STRUCTURED_DIAGRAM: StructuredDiagramHandler,
}


def build_handler(family: RoundFamily) -> RoundHandler:
    """Instantiate the handler serving *family*.

    Raises:
        KeyError: If no handler is registered for *family*.
    """
    if family not in _HANDLERS:
        msg = f"No handler registered for round family {family!r}"
        raise KeyError(msg)
    return _HANDLERS[family]()
