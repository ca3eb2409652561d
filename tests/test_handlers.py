"""Tests for the per-family round handlers."""

from __future__ import annotations

from typing import Any

from assessment_pipeline.errors import RoundStateError, SubmissionIncomplete
from assessment_pipeline.handlers import (
    CodeSubmissionHandler,
    CollaborativeChatHandler,
    FreeTextHandler,
    ObjectiveTestHandler,
    RoundHandler,
    StructuredDiagramHandler,
    build_handler,
    count_words,
)
from assessment_pipeline.models import (
    FailurePolicy,
    RoundFamily,
    RoundKind,
    RoundSettings,
)
import pytest

from tests.conftest import make_round_start


def _payload(kind: RoundKind, family: RoundFamily) -> Any:
    return make_round_start(kind, family).payload


@pytest.mark.unit
class TestHandlerContracts:
    """Each family declares its own contract; the orchestrator reads it."""

    @pytest.mark.parametrize(
        ("family", "cls"),
        [
            (RoundFamily.OBJECTIVE_TEST, ObjectiveTestHandler),
            (RoundFamily.FREE_TEXT, FreeTextHandler),
            (RoundFamily.CODE_SUBMISSION, CodeSubmissionHandler),
            (RoundFamily.COLLABORATIVE_CHAT, CollaborativeChatHandler),
            (RoundFamily.STRUCTURED_DIAGRAM, StructuredDiagramHandler),
        ],
    )
    def test_build_handler(self, family: RoundFamily, cls: type[RoundHandler]) -> None:
        handler = build_handler(family)
        assert isinstance(handler, cls)
        assert handler.family is family

    def test_only_objective_tests_retry(self) -> None:
        policies = {family: build_handler(family).failure_policy for family in RoundFamily}
        assert policies.pop(RoundFamily.OBJECTIVE_TEST) is FailurePolicy.RETRY
        assert set(policies.values()) == {FailurePolicy.TERMINATE}

    @pytest.mark.parametrize(
        "family",
        [
            RoundFamily.CODE_SUBMISSION,
            RoundFamily.COLLABORATIVE_CHAT,
            RoundFamily.STRUCTURED_DIAGRAM,
        ],
    )
    def test_multi_step_families(self, family: RoundFamily) -> None:
        handler = build_handler(family)
        assert handler.supports_checkpoint
        assert handler.requires_complete
        assert handler.incremental_sync

    @pytest.mark.parametrize("family", [RoundFamily.OBJECTIVE_TEST, RoundFamily.FREE_TEXT])
    def test_one_shot_families(self, family: RoundFamily) -> None:
        handler = build_handler(family)
        assert not handler.supports_checkpoint
        assert not handler.requires_complete
        assert not handler.incremental_sync

    def test_settings_override_failure_policy(self) -> None:
        handler = build_handler(RoundFamily.CODE_SUBMISSION)
        settings = RoundSettings(failure_policy=FailurePolicy.RETRY)
        assert handler.effective_failure_policy(settings) is FailurePolicy.RETRY
        assert handler.effective_failure_policy(RoundSettings()) is FailurePolicy.TERMINATE

    def test_base_handler_has_no_checkpoint(self) -> None:
        with pytest.raises(NotImplementedError):
            FreeTextHandler().build_checkpoint(None, {})


@pytest.mark.unit
class TestObjectiveTestHandler:
    """Answers keyed by question id, submitted in question order."""

    def setup_method(self) -> None:
        self.handler = ObjectiveTestHandler()
        self.payload = _payload(RoundKind.APTITUDE, RoundFamily.OBJECTIVE_TEST)

    def test_answers_merge_without_mutating(self) -> None:
        working = self.handler.initial_working_data(self.payload)
        merged = self.handler.merge_progress(self.payload, working, {"answers": {"q1": "56"}})
        merged = self.handler.merge_progress(self.payload, merged, {"answers": {"q2": "16"}})
        assert merged["answers"] == {"q1": "56", "q2": "16"}
        assert working == {"answers": {}}

    def test_unknown_question_rejected(self) -> None:
        with pytest.raises(RoundStateError, match="q9") as exc_info:
            self.handler.merge_progress(self.payload, {"answers": {}}, {"answers": {"q9": "x"}})
        assert exc_info.value.diagnostics == {"unknown_questions": ["q9"], "known": ["q1", "q2"]}

    def test_unanswered_questions_submitted_as_none(self) -> None:
        submission = self.handler.build_submission(self.payload, {"answers": {"q2": "16"}})
        assert submission == {
            "responses": [
                {"question_id": "q1", "answer": None},
                {"question_id": "q2", "answer": "16"},
            ]
        }

    def test_empty_work_is_submittable(self) -> None:
        self.handler.check_ready(self.payload, {}, RoundSettings())
        submission = self.handler.build_submission(self.payload, {})
        assert [r["answer"] for r in submission["responses"]] == [None, None]


@pytest.mark.unit
class TestFreeTextHandler:
    """Single-prompt and question-list written rounds."""

    def test_case_study_word_minimum(self) -> None:
        handler = FreeTextHandler()
        payload = _payload(RoundKind.CASE_STUDY, RoundFamily.FREE_TEXT)
        working = handler.merge_progress(
            payload, handler.initial_working_data(payload), {"response": "Too short."}
        )
        with pytest.raises(SubmissionIncomplete) as exc_info:
            handler.check_ready(payload, working, RoundSettings(min_words=50))
        assert exc_info.value.required == 50
        assert exc_info.value.actual == 2

        long_text = " ".join(["word"] * 50)
        working = handler.merge_progress(payload, working, {"response": long_text})
        handler.check_ready(payload, working, RoundSettings(min_words=50))
        assert handler.build_submission(payload, working) == {"response": long_text}

    def test_hr_interview_requires_every_question(self) -> None:
        handler = FreeTextHandler()
        payload = _payload(RoundKind.HR_INTERVIEW, RoundFamily.FREE_TEXT)
        working = handler.merge_progress(
            payload, handler.initial_working_data(payload), {"responses": {"h1": "video-1.webm"}}
        )
        with pytest.raises(SubmissionIncomplete, match="1 question"):
            handler.check_ready(payload, working, RoundSettings())

        working = handler.merge_progress(payload, working, {"responses": {"h2": "video-2.webm"}})
        handler.check_ready(payload, working, RoundSettings())
        assert handler.build_submission(payload, working)["responses"] == [
            {"question_id": "h1", "response": "video-1.webm"},
            {"question_id": "h2", "response": "video-2.webm"},
        ]

    def test_count_words(self) -> None:
        assert count_words("") == 0
        assert count_words("  one two\nthree\t ") == 3


@pytest.mark.unit
class TestCodeSubmissionHandler:
    """Per-problem code buffers, judged one problem at a time."""

    def setup_method(self) -> None:
        self.handler = CodeSubmissionHandler()
        self.payload = _payload(RoundKind.CODING, RoundFamily.CODE_SUBMISSION)
        self.working = self.handler.initial_working_data(self.payload)

    def test_initial_buffers_hold_starter_code(self) -> None:
        assert self.working["active_problem"] == "p1"
        assert self.working["solutions"]["p1"]["code"] == "def solve(nums, k):\n"
        assert set(self.working["solutions"]) == {"p1", "p2"}

    def test_progress_targets_active_or_named_problem(self) -> None:
        merged = self.handler.merge_progress(self.payload, self.working, {"code": "A"})
        assert merged["solutions"]["p1"]["code"] == "A"

        merged = self.handler.merge_progress(
            self.payload, merged, {"problem_id": "p2", "code": "B", "language": "java"}
        )
        assert merged["active_problem"] == "p2"
        assert merged["solutions"]["p2"] == {"code": "B", "language": "java"}

    def test_unknown_problem_rejected(self) -> None:
        with pytest.raises(RoundStateError, match="p7") as exc_info:
            self.handler.merge_progress(self.payload, self.working, {"problem_id": "p7"})
        assert exc_info.value.diagnostics == {"problem_id": "p7", "known": ["p1", "p2"]}

    def test_checkpoint_runs_active_problem_and_stores_judgement(self) -> None:
        body = self.handler.build_checkpoint(self.payload, self.working)
        assert body == {
            "question_id": "p1",
            "code": "def solve(nums, k):\n",
            "language": "python",
        }
        reply = {"passed": 3, "total": 5}
        merged = self.handler.apply_checkpoint_reply(self.payload, self.working, body, reply)
        assert merged["judgements"] == {"p1": reply}

    def test_sync_snapshot_is_active_buffer(self) -> None:
        assert self.handler.sync_snapshot(self.working) == {
            "question_id": "p1",
            "code": "def solve(nums, k):\n",
            "language": "python",
        }

    def test_submission_lists_every_buffer(self) -> None:
        submission = self.handler.build_submission(self.payload, self.working)
        assert [s["question_id"] for s in submission["solutions"]] == ["p1", "p2"]


@pytest.mark.unit
class TestCollaborativeChatHandler:
    """Transcript-driven interview rounds."""

    def setup_method(self) -> None:
        self.handler = CollaborativeChatHandler()
        self.payload = _payload(RoundKind.TECHNICAL_INTERVIEW, RoundFamily.COLLABORATIVE_CHAT)
        self.working = self.handler.initial_working_data(self.payload)

    def test_transcript_seeded_with_opening_message(self) -> None:
        assert len(self.working["transcript"]) == 1
        assert self.working["transcript"][0]["role"] == "interviewer"

    def test_checkpoint_sends_draft_and_records_turn(self) -> None:
        working = self.handler.merge_progress(
            self.payload, self.working, {"message": "Use a heap."}
        )
        body = self.handler.build_checkpoint(self.payload, working)
        assert body == {"message": "Use a heap."}

        merged = self.handler.apply_checkpoint_reply(
            self.payload, working, body, {"ai_response": "Why a heap?"}
        )
        roles = [m["role"] for m in merged["transcript"]]
        assert roles == ["interviewer", "candidate", "interviewer"]
        assert merged["transcript"][-1]["content"] == "Why a heap?"
        assert merged["draft"] == ""

    def test_empty_draft_cannot_be_sent(self) -> None:
        with pytest.raises(SubmissionIncomplete):
            self.handler.build_checkpoint(self.payload, self.working)

    def test_minimum_interactions(self) -> None:
        settings = RoundSettings(min_interactions=3)
        with pytest.raises(SubmissionIncomplete) as exc_info:
            self.handler.check_ready(self.payload, self.working, settings)
        assert exc_info.value.actual == 1

        working = self.handler.apply_checkpoint_reply(
            self.payload, self.working, {"message": "hi"}, {"interviewer_response": "hello"}
        )
        self.handler.check_ready(self.payload, working, settings)

    def test_sync_snapshot_is_code_buffer(self) -> None:
        working = self.handler.merge_progress(
            self.payload, self.working, {"code": "print(1)", "language": "python"}
        )
        assert self.handler.sync_snapshot(working) == {"code": "print(1)", "language": "python"}


@pytest.mark.unit
class TestStructuredDiagramHandler:
    """Diagram graph plus a phase-driven design conversation."""

    def setup_method(self) -> None:
        self.handler = StructuredDiagramHandler()
        self.payload = _payload(RoundKind.SYSTEM_DESIGN, RoundFamily.STRUCTURED_DIAGRAM)
        self.working = self.handler.initial_working_data(self.payload)

    def test_initial_working_data(self) -> None:
        assert self.working["diagram"] == {"components": [], "connections": []}
        assert self.working["phase"] == "requirements"
        assert "code" not in self.working

    def test_diagram_replaced_wholesale(self) -> None:
        merged = self.handler.merge_progress(
            self.payload, self.working, {"components": [{"id": "lb"}, {"id": "db"}]}
        )
        merged = self.handler.merge_progress(self.payload, merged, {"components": [{"id": "db"}]})
        assert merged["diagram"]["components"] == [{"id": "db"}]
        assert self.handler.sync_snapshot(merged)["components"] == [{"id": "db"}]

    def test_reply_advances_phase(self) -> None:
        merged = self.handler.apply_checkpoint_reply(
            self.payload,
            self.working,
            {"message": "Reads dominate."},
            {"interviewer_response": "Sketch the storage.", "current_phase": "high_level_design"},
        )
        assert merged["phase"] == "high_level_design"
        submission = self.handler.build_submission(self.payload, merged)
        assert submission["phase"] == "high_level_design"
        assert len(submission["transcript"]) == 3
