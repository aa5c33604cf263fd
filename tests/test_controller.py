"""Tests for PracticeController -- the command handlers end to end against a
fake host, an in-memory document and canned generator answers."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from codeforge.config import LOGIN_URL
from codeforge.controller import DIFFICULTIES, detect_topic, expand_to_full_lines
from codeforge.document import ContentChange, Position, Range
from codeforge.runner import RunResult
from codeforge.session import (
    ACTION_EVALUATE_CODE,
    ACTION_EXPLAIN_CODE,
    ACTION_HIDE_HINT,
    ACTION_SHOW_HINT,
    ACTION_SHOW_SOLUTION,
    CTX_HAS_QUESTION,
    CTX_HINT_VISIBLE,
)
from tests.conftest import make_controller, make_editor, make_generator, select

HEADER = "// Question (Easy)\n\n// Sort an array\n\n"
SOLUTION = "function sort(a){...}"


async def start(controller, host, difficulty="Easy"):
    """Run Start Practice through the generated-question path."""
    host.confirms = ["Continue"]
    host.picks = [difficulty]
    await controller.start_practice()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:

    @pytest.mark.parametrize("path, topic", [
        ("/w/binary_search.py", "Searching"),
        ("/w/BubbleSort.java", "Sorting"),
        ("/w/linked_list.c", "Linked List"),
        ("/w/main.go", "General Programming"),
        (None, "General Programming"),
    ])
    def test_detect_topic(self, path, topic):
        assert detect_topic(path) == topic

    def test_expand_to_full_lines(self):
        editor = make_editor("abc\ndefg\nhi")
        expanded = expand_to_full_lines(editor.document, Range(Position(0, 2), Position(1, 1)))
        assert editor.document.get_text(expanded) == "abc\ndefg"


# ---------------------------------------------------------------------------
# Start practice
# ---------------------------------------------------------------------------

class TestStartPractice:

    @pytest.mark.asyncio
    async def test_generated_question_inserted_at_top(self, controller_and_host, editor, generator):
        controller, host = controller_and_host
        await start(controller, host, "Medium")

        assert editor.document.text == "// Question (Medium)\n\n// Sort an array\n\n"
        generator.generate_practice.assert_awaited_once_with(
            "Sorting", "javascript", "Medium", user_question=False
        )
        session = controller.session
        assert session.stored_hint == "Use comparisons"
        assert session.stored_solution == SOLUTION
        assert session.legal_actions() == [ACTION_SHOW_HINT, ACTION_SHOW_SOLUTION]
        assert host.context[CTX_HAS_QUESTION] is True
        # No action picker after generating
        assert host.offered == [DIFFICULTIES]

    @pytest.mark.asyncio
    async def test_existing_text_kept_below_header(self, generator):
        editor = make_editor("let x = 1;")
        controller, host = make_controller(editor, generator=generator)
        await start(controller, host)
        assert editor.document.text == HEADER + "let x = 1;"

    @pytest.mark.asyncio
    async def test_topic_dismissed_changes_nothing(self, controller_and_host, editor, generator):
        controller, host = controller_and_host
        await controller.start_practice()
        assert editor.document.text == ""
        assert not controller.session.has_question
        generator.generate_practice.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_difficulty_dismissed_changes_nothing(self, controller_and_host, editor, generator):
        controller, host = controller_and_host
        host.confirms = ["Continue"]
        await controller.start_practice()
        assert editor.document.text == ""
        assert not controller.session.has_question
        generator.generate_practice.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_manual_topic(self, controller_and_host, generator):
        controller, host = controller_and_host
        host.confirms = ["Change Topic"]
        host.inputs = ["  Graphs  "]
        host.picks = ["Hard"]
        await controller.start_practice()
        generator.generate_practice.assert_awaited_once_with(
            "Graphs", "javascript", "Hard", user_question=False
        )

    @pytest.mark.asyncio
    async def test_blank_manual_topic_keeps_detected(self, controller_and_host, generator):
        controller, host = controller_and_host
        host.confirms = ["Change Topic"]
        host.inputs = ["   "]
        host.picks = ["Easy"]
        await controller.start_practice()
        assert generator.generate_practice.await_args.args[0] == "Sorting"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", [RuntimeError("down"), None])
    async def test_generation_failure_leaves_no_partial_state(self, editor, failure):
        generator = make_generator(practice="I cannot help with that.")
        if failure is not None:
            generator.generate_practice.side_effect = failure
        controller, host = make_controller(editor, generator=generator)
        await start(controller, host)

        assert host.errors == ["AI generation failed."]
        assert editor.document.text == ""
        assert not controller.session.has_question
        assert controller.session.context[CTX_HAS_QUESTION] is False

    @pytest.mark.asyncio
    async def test_no_active_editor(self):
        controller, host = make_controller(None)
        await controller.start_practice()
        assert host.errors == ["No active file detected."]

    @pytest.mark.asyncio
    async def test_user_written_question_goes_to_picker(self):
        editor = make_editor("// Reverse a string\n\nfunction rev(s) {}")
        generator = make_generator(practice="[HINT]Use two pointers[SOLUTION]function rev(s){...}")
        controller, host = make_controller(editor, generator=generator)
        host.picks = [ACTION_SHOW_HINT]

        await controller.start_practice()

        generator.generate_practice.assert_awaited_once_with(
            "Reverse a string", "javascript", "Medium", user_question=True
        )
        assert controller.session.is_user_written_question
        assert controller.session.stored_question == "Reverse a string"
        assert host.offered == [
            [ACTION_SHOW_HINT, ACTION_SHOW_SOLUTION],
            [ACTION_HIDE_HINT, ACTION_SHOW_SOLUTION],
        ]
        assert editor.document.text.startswith("// Reverse a string\n\nfunction rev(s) {}")
        assert "// Hint:\n// Use two pointers" in editor.document.text

    @pytest.mark.asyncio
    async def test_second_start_opens_picker(self, controller_and_host, generator):
        controller, host = controller_and_host
        await start(controller, host)
        host.picks = [ACTION_SHOW_SOLUTION]
        await controller.start_practice()
        assert controller.session.solution_visible
        assert host.offered[-1] == [ACTION_EXPLAIN_CODE, ACTION_EVALUATE_CODE]
        generator.generate_practice.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_leftover_header_is_adopted(self):
        editor = make_editor("// Question (Easy)\n\n// q\n\ncode")
        controller, host = make_controller(editor)
        await controller.start_practice()
        assert controller.session.has_question
        assert host.offered == [[ACTION_SHOW_HINT, ACTION_SHOW_SOLUTION]]

    @pytest.mark.asyncio
    async def test_deleted_question_reported(self, controller_and_host, editor):
        controller, host = controller_and_host
        await start(controller, host)
        doc = editor.document
        await doc.receive_changes([ContentChange(0, len(doc.text), "")])
        await controller.start_practice()
        assert host.infos[-1] == "No question found. Use Start Practice to generate one."
        assert not controller.session.has_question


# ---------------------------------------------------------------------------
# Hint and solution
# ---------------------------------------------------------------------------

class TestHintAndSolution:

    @pytest.mark.asyncio
    async def test_show_hint_is_idempotent(self, controller_and_host, editor):
        controller, host = controller_and_host
        await start(controller, host)
        await controller.show_hint()
        await controller.show_hint()

        assert editor.document.text == HEADER + "\n// Hint:\n// Use comparisons\n\n"
        assert controller.session.hints_used == 1
        assert host.infos[-1] == "Hint already revealed."
        assert host.context[CTX_HINT_VISIBLE] is True

    @pytest.mark.asyncio
    async def test_hide_hint_restores_document(self, controller_and_host, editor):
        controller, host = controller_and_host
        await start(controller, host)
        before = editor.document.text
        await controller.show_hint()
        await controller.hide_hint()
        assert editor.document.text.rstrip("\n") == before.rstrip("\n")
        assert not controller.session.hint_visible
        assert controller.session.stored_hint == "Use comparisons"
        assert host.infos[-1] == "Hint hidden."

    @pytest.mark.asyncio
    async def test_remove_missing_hint(self, controller_and_host):
        controller, host = controller_and_host
        await start(controller, host)
        await controller.remove_hint()
        assert host.errors == ["Hint not found."]

    @pytest.mark.asyncio
    async def test_manual_hint_deletion_offers_hint_again(self, controller_and_host, editor):
        controller, host = controller_and_host
        await start(controller, host)
        await controller.show_hint()

        doc = editor.document
        start_of_hint = doc.text.index("\n// Hint:")
        await doc.receive_changes([ContentChange(start_of_hint, len(doc.text) - start_of_hint, "")])
        assert controller.session.hint_visible  # not yet resynced

        await controller.start_practice()
        assert host.offered[-1] == [ACTION_SHOW_HINT, ACTION_SHOW_SOLUTION]

    @pytest.mark.asyncio
    async def test_show_solution_is_idempotent(self, controller_and_host, editor):
        controller, host = controller_and_host
        await start(controller, host)
        await controller.show_solution()
        await controller.show_solution()

        assert editor.document.text == HEADER + "\n" + SOLUTION + "\n\n"
        assert editor.document.text.count(SOLUTION) == 1
        assert controller.session.solution_viewed
        assert host.infos[-1] == "Solution already revealed."
        assert controller.session.legal_actions() == [ACTION_EXPLAIN_CODE, ACTION_EVALUATE_CODE]

    @pytest.mark.asyncio
    async def test_nothing_to_show_without_question(self, controller_and_host):
        controller, host = controller_and_host
        await controller.show_hint()
        await controller.show_solution()
        assert host.infos == ["No hint available.", "No solution available."]


# ---------------------------------------------------------------------------
# Explanations
# ---------------------------------------------------------------------------

class TestExplainCode:

    @pytest.mark.asyncio
    async def test_explain_then_remove_is_byte_identical(self, controller_and_host, editor):
        controller, host = controller_and_host
        await start(controller, host)
        await controller.show_solution()
        before = editor.document.text

        await controller.explain_code()
        assert "// sorts the array\n" + SOLUTION in editor.document.text
        assert controller.session.has_explanation

        await controller.remove_explanation()
        assert editor.document.text == before
        assert not controller.session.has_explanation
        assert controller.session.stored_explanation is None

    @pytest.mark.asyncio
    async def test_explain_requires_visible_solution(self, controller_and_host, generator):
        controller, host = controller_and_host
        await start(controller, host)
        await controller.explain_code()
        assert host.infos[-1] == "Generate solution first."
        generator.explain.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_explain_failure_changes_nothing(self, controller_and_host, editor, generator):
        controller, host = controller_and_host
        await start(controller, host)
        await controller.show_solution()
        before = editor.document.text
        generator.explain.side_effect = RuntimeError("down")

        await controller.explain_code()
        assert host.errors == ["Explanation failed."]
        assert editor.document.text == before
        assert not controller.session.has_explanation

    @pytest.mark.asyncio
    async def test_remove_explanation_after_manual_delete(self, controller_and_host, editor):
        controller, host = controller_and_host
        await start(controller, host)
        await controller.show_solution()
        await controller.explain_code()
        doc = editor.document
        start_of_comment = doc.text.index("// sorts the array")
        await doc.receive_changes([ContentChange(start_of_comment, len("// sorts the array\n"), "")])
        assert not controller.session.has_explanation

        await controller.remove_explanation()
        assert host.errors == ["Explanation not found."]


class TestExplainSelection:

    @pytest.mark.asyncio
    async def test_two_explanations_removed_in_one_step(self, controller_and_host, editor):
        controller, host = controller_and_host
        original = "a = 1\nb = 2\nc = 3"
        await editor.document.receive_changes([ContentChange(0, 0, original)])

        select(editor, 0, 2, 0, 3)
        await controller.explain_selection()
        assert editor.document.text == "// explained\na = 1\nb = 2\nc = 3"

        select(editor, 2, 0, 2, 1)
        await controller.explain_selection()
        assert editor.document.text == "// explained\na = 1\n// explained\nb = 2\nc = 3"
        assert len(controller.session.selection_explained_blocks) == 2

        await controller.remove_selection_explanation()
        assert editor.document.text == original
        assert not controller.session.has_selection_explanation
        assert host.infos[-1] == "All selection explanations removed."

    @pytest.mark.asyncio
    async def test_empty_selection(self, controller_and_host, generator):
        controller, host = controller_and_host
        await controller.explain_selection()
        assert host.infos == ["No text selected. Please select code first."]
        generator.explain_selection.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_leaves_text(self):
        generator = make_generator()
        generator.explain_selection.side_effect = RuntimeError("down")
        editor = make_editor("x = 1")
        controller, host = make_controller(editor, generator=generator)
        select(editor, 0, 0, 0, 1)
        await controller.explain_selection()
        assert editor.document.text == "x = 1"
        assert host.errors == ["Explanation failed. Please try again."]
        assert not controller.session.has_selection_explanation

    @pytest.mark.asyncio
    async def test_nothing_to_remove(self, controller_and_host):
        controller, host = controller_and_host
        await controller.remove_selection_explanation()
        assert host.infos == ["No selection explanation to remove."]


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

EIGHT_LINES = "l1\nl2\nl3\nl4\nl5\nl6\nl7\nl8"
EVALUATION = (
    "Code Evaluation Summary:\nLooks fine.\n\n"
    "Suggestions:\nLINE 3:\nIssue: a\n\nLINE 7:\nIssue: b\n"
)


async def evaluation_setup():
    editor = make_editor(EIGHT_LINES)
    controller, host = make_controller(editor, generator=make_generator(evaluation=EVALUATION))
    await controller.session.begin_question(question="q", hint="h", solution="SOL", user_written=False)
    return controller, host, editor


class TestEvaluation:

    @pytest.mark.asyncio
    async def test_summary_appended_and_suggestions_inserted_bottom_up(self):
        controller, host, editor = await evaluation_setup()
        offsets = []

        async def record(event):
            offsets.extend(c.range_offset for c in event.content_changes)

        editor.document.on_did_change(record)
        await controller.evaluate_solution()

        assert editor.document.text == (
            "l1\nl2\n// Suggestion:\n// Issue: a\nl3\nl4\nl5\nl6\n"
            "// Suggestion:\n// Issue: b\nl7\nl8\n\n// Evaluation:\n// Looks fine.\n"
        )
        # Summary at the end, then line 7, then line 3
        assert offsets == [len(EIGHT_LINES), EIGHT_LINES.index("l7"), EIGHT_LINES.index("l3")]
        assert controller.session.evaluation_visible
        assert host.infos[-1] == "Code evaluation complete. Review suggestions in file."

    @pytest.mark.asyncio
    async def test_second_evaluation_refused(self):
        controller, host, editor = await evaluation_setup()
        await controller.evaluate_solution()
        text = editor.document.text
        await controller.evaluate_solution()
        assert editor.document.text == text
        assert host.warnings == ["Evaluation already exists. Remove it before running again."]
        controller.generator.evaluate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_out_of_range_suggestion_skipped(self):
        editor = make_editor("only line")
        generator = make_generator(evaluation="Code Evaluation Summary:\nok\nSuggestions:\nLINE 40:\nIssue: x")
        controller, host = make_controller(editor, generator=generator)
        await controller.session.begin_question(question="q", hint="h", solution="SOL", user_written=False)
        await controller.evaluate_solution()
        assert "Suggestion:" not in editor.document.text
        assert "// Evaluation:" in editor.document.text

    @pytest.mark.asyncio
    async def test_remove_evaluation_takes_suggestions_too(self):
        controller, host, editor = await evaluation_setup()
        await controller.evaluate_solution()
        await controller.remove_evaluation()
        assert editor.document.text == EIGHT_LINES + "\n"
        assert not controller.session.evaluation_visible
        assert host.infos[-1] == "Evaluation removed."

    @pytest.mark.asyncio
    async def test_remove_evaluation_keeps_comment_below_suggestion(self):
        original = HEADER + SOLUTION + "\n\n"
        editor = make_editor(original)
        generator = make_generator(
            evaluation="Code Evaluation Summary:\nok\n\nSuggestions:\nLINE 1:\nIssue: name it better\n"
        )
        controller, host = make_controller(editor, generator=generator)
        await controller.session.begin_question(
            question="Sort an array", hint="h", solution=SOLUTION, user_written=False
        )

        await controller.evaluate_solution()
        assert editor.document.text.startswith("// Suggestion:\n// Issue: name it better\n// Question (Easy)\n")

        await controller.remove_evaluation()
        assert editor.document.text == original + "\n"
        assert controller.session.suggestion_blocks == []

        await controller.session.resync(editor.document.text, "javascript")
        assert controller.session.has_question

    @pytest.mark.asyncio
    async def test_edited_suggestion_is_left_alone(self):
        controller, host, editor = await evaluation_setup()
        await controller.evaluate_solution()
        doc = editor.document
        start_of_issue = doc.text.index("// Issue: b")
        await doc.receive_changes([ContentChange(start_of_issue + len("// Issue: b"), 0, "!")])

        await controller.remove_evaluation()
        assert "// Issue: a" not in doc.text
        assert "// Suggestion:\n// Issue: b!\nl7" in doc.text
        controller.timer.pause()

    @pytest.mark.asyncio
    async def test_evaluation_failure(self):
        controller, host, editor = await evaluation_setup()
        controller.generator.evaluate.side_effect = RuntimeError("down")
        await controller.evaluate_solution()
        assert editor.document.text == EIGHT_LINES
        assert host.errors == ["Code evaluation failed. Please try again."]
        assert not controller.session.evaluation_visible

    @pytest.mark.asyncio
    async def test_no_solution(self, controller_and_host):
        controller, host = controller_and_host
        await controller.evaluate_solution()
        assert host.errors == ["No solution available for evaluation."]

    @pytest.mark.asyncio
    async def test_remove_missing_evaluation(self, controller_and_host):
        controller, host = controller_and_host
        await controller.remove_evaluation()
        assert host.errors == ["Evaluation not found."]


# ---------------------------------------------------------------------------
# Timer, run and telemetry
# ---------------------------------------------------------------------------

class TestTimerAndRun:

    @pytest.mark.asyncio
    async def test_typing_after_start_starts_timer(self, controller_and_host, editor):
        controller, host = controller_and_host
        await start(controller, host)
        assert not controller.timer.is_active()
        await editor.document.receive_changes([ContentChange(len(editor.document.text), 0, "f")])
        assert controller.timer.is_active()
        assert host.infos[-1] == "Practice timer started"

    @pytest.mark.asyncio
    async def test_programmatic_edits_never_start_timer(self, controller_and_host):
        controller, host = controller_and_host
        await start(controller, host)
        await controller.show_hint()
        await controller.show_solution()
        assert not controller.timer.is_active()
        assert not controller.session.timer_started

    @pytest.mark.asyncio
    async def test_successful_run_completes_practice(self, editor):
        guard_states = []

        async def run_active_file(active):
            guard_states.append(controller.guard.active)
            return RunResult(success=True, output="Running in terminal...")

        runner = AsyncMock()
        runner.run_active_file.side_effect = run_active_file
        telemetry = AsyncMock()
        controller, host = make_controller(editor, runner=runner, telemetry=telemetry)
        await start(controller, host)
        await controller.show_hint()
        await editor.document.receive_changes([ContentChange(0, 0, "x")])
        controller.timer.seconds = 65

        await controller.run()
        await asyncio.sleep(0)

        assert guard_states == [True]
        assert host.infos[-1] == "Practice completed in 01:05"
        assert not controller.timer.is_active()
        assert not controller.session.timer_started
        record = telemetry.send_practice_data.await_args.args[0]
        assert record.question == "Sort an array"
        assert record.time_taken == "01:05"
        assert record.hints_used == 1
        assert record.solution_viewed is False
        assert record.language == "javascript"

    @pytest.mark.asyncio
    async def test_run_without_timer_does_not_upload(self, editor):
        runner = AsyncMock()
        runner.run_active_file.return_value = RunResult(success=True)
        telemetry = AsyncMock()
        controller, host = make_controller(editor, runner=runner, telemetry=telemetry)
        await controller.run()
        await asyncio.sleep(0)
        assert host.infos == []
        telemetry.send_practice_data.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_run_keeps_timer(self, editor):
        runner = AsyncMock()
        runner.run_active_file.return_value = RunResult(success=False, error="boom")
        controller, host = make_controller(editor, runner=runner)
        await start(controller, host)
        await editor.document.receive_changes([ContentChange(0, 0, "x")])

        await controller.run()
        assert host.errors == ["boom"]
        assert controller.timer.is_active()
        assert controller.session.timer_started
        controller.timer.pause()

    @pytest.mark.asyncio
    async def test_timer_pause_and_resume(self, controller_and_host):
        controller, host = controller_and_host
        controller.timer.start()
        host.picks = ["Pause"]
        await controller.timer_controls()
        assert not controller.timer.is_active()
        host.picks = ["Resume"]
        await controller.timer_controls()
        assert controller.timer.is_active()

    @pytest.mark.asyncio
    async def test_timer_stop_reports_time(self, controller_and_host):
        controller, host = controller_and_host
        controller.timer.start()
        controller.timer.seconds = 3
        controller.session.timer_started = True
        host.picks = ["Stop"]
        await controller.timer_controls()
        assert host.infos == ["Practice completed in 00:03"]
        assert host.statuses[-1] == "⏱ 00:00"
        assert not controller.session.timer_started

    @pytest.mark.asyncio
    async def test_timer_reset(self, controller_and_host):
        controller, host = controller_and_host
        controller.timer.seconds = 9
        controller.session.timer_started = True
        host.picks = ["Reset"]
        await controller.timer_controls()
        assert controller.timer.seconds == 0
        assert not controller.session.timer_started


# ---------------------------------------------------------------------------
# Login, dispatch and lifecycle
# ---------------------------------------------------------------------------

class TestLoginAndDispatch:

    @pytest.mark.asyncio
    async def test_login_opens_browser(self, controller_and_host):
        controller, host = controller_and_host
        await controller.login()
        assert host.opened == [LOGIN_URL]

    @pytest.mark.asyncio
    async def test_logout(self, controller_and_host):
        controller, host = controller_and_host
        await controller.logout()
        controller.credentials.delete_token.assert_awaited_once()
        assert host.infos == ["Logged out successfully."]

    @pytest.mark.asyncio
    async def test_auth_callback_saves_token(self, controller_and_host):
        controller, host = controller_and_host
        await controller.auth_callback("codeforge://auth?token=abc")
        controller.credentials.save_token.assert_awaited_once_with("abc")
        assert host.infos == ["Login successful!"]

    @pytest.mark.asyncio
    async def test_auth_callback_without_token(self, controller_and_host):
        controller, host = controller_and_host
        await controller.auth_callback("codeforge://auth")
        controller.credentials.save_token.assert_not_awaited()
        assert host.errors == ["No token received."]

    @pytest.mark.asyncio
    async def test_dispatch_by_name(self, controller_and_host):
        controller, host = controller_and_host
        await controller.dispatch("show_hint")
        assert host.infos == ["No hint available."]

    @pytest.mark.asyncio
    async def test_dispatch_unknown(self, controller_and_host):
        controller, _ = controller_and_host
        with pytest.raises(ValueError):
            await controller.dispatch("rm -rf")

    @pytest.mark.asyncio
    async def test_activate_publishes_context(self, controller_and_host):
        controller, host = controller_and_host
        await controller.activate()
        assert set(host.context.values()) == {False}
        assert len(host.context) == 5
        assert host.statuses == ["⏱ 00:00"]

    @pytest.mark.asyncio
    async def test_deactivate_stops_listening(self, controller_and_host, editor):
        controller, host = controller_and_host
        await controller.deactivate()
        controller.runner.close.assert_awaited_once()
        await editor.document.receive_changes([ContentChange(0, 0, "write a function")])
        assert not controller.session.has_question
