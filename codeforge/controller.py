"""Command handlers for one practice session.

``PracticeController`` owns the session state, the edit guard, the timer and
the document observer, and talks to the editor only through ``host``:

- ``active_editor``: the focused ``Editor`` or None
- ``show_info/show_warning/show_error(message)``
- ``quick_pick(items, placeholder) -> str | None``
- ``input_box(prompt) -> str | None``
- ``confirm(message, choices) -> str | None``
- ``with_progress(title, awaitable)``: await with a progress notification
- ``set_context(key, value)``
- ``update_status(text)``: synchronous, called on every timer tick
- ``open_external(url)``

Every handler either completes its transition or leaves state untouched;
collaborator failures are logged and reported, never raised.
"""

import logging
from pathlib import Path
from typing import Callable

from .auth import CredentialStore, token_from_uri
from .blocks import (
    EVALUATION_MARKER,
    HINT_MARKER,
    QUESTION_MARKER,
    append,
    comment_prefix,
    evaluation_block,
    extract_user_written_question,
    has_marker,
    has_suggestion_above,
    hint_block,
    insert_at,
    locate_comment_block,
    question_header,
    remove_block,
    remove_exact,
    replace_exact,
    solution_block,
    suggestion_block,
)
from .config import LOGIN_URL
from .document import ContentChange, Editor, Position, Range, TextDocument
from .generation import GenerationError, PracticeContent, parse_evaluation, parse_practice_content
from .guard import EditGuard
from .observer import DocumentChangeObserver
from .runner import CodeRunner
from .session import (
    ACTION_EVALUATE_CODE,
    ACTION_EXPLAIN_CODE,
    ACTION_EXPLAIN_SELECTION,
    ACTION_HIDE_HINT,
    ACTION_REMOVE_EVALUATION,
    ACTION_REMOVE_EXPLANATION,
    ACTION_REMOVE_SELECTION_EXPLANATION,
    ACTION_SHOW_HINT,
    ACTION_SHOW_SOLUTION,
    PracticeSession,
)
from .telemetry import PracticeRecord, TelemetryClient, spawn_practice_upload
from .timer import PracticeTimer

logger = logging.getLogger(__name__)

DIFFICULTIES = ["Easy", "Medium", "Hard"]
USER_QUESTION_DIFFICULTY = "Medium"
DEFAULT_TOPIC = "General Programming"

TOPIC_CONTINUE = "Continue"
TOPIC_CHANGE = "Change Topic"

TIMER_PAUSE = "Pause"
TIMER_RESUME = "Resume"
TIMER_RESET = "Reset"
TIMER_STOP = "Stop"
TIMER_ACTIONS = [TIMER_PAUSE, TIMER_RESUME, TIMER_RESET, TIMER_STOP]

# File-name keywords, checked in order
_TOPIC_KEYWORDS = [
    (("binary", "search"), "Searching"),
    (("sort",), "Sorting"),
    (("linked", "list"), "Linked List"),
]


def detect_topic(path: str | None) -> str:
    """Guess a practice topic from the file name."""
    if not path:
        return DEFAULT_TOPIC
    base_name = Path(path).name.lower()
    for keywords, topic in _TOPIC_KEYWORDS:
        if any(k in base_name for k in keywords):
            return topic
    return DEFAULT_TOPIC


def expand_to_full_lines(document: TextDocument, selection: Range) -> Range:
    """Widen a selection to whole lines so replacements never split a line."""
    end_line = min(selection.end.line, document.line_count - 1)
    return Range(
        Position(selection.start.line, 0),
        Position(end_line, len(document.line_at(end_line))),
    )


class PracticeController:
    def __init__(
        self,
        host,
        *,
        generator,
        runner: CodeRunner,
        telemetry: TelemetryClient,
        credentials: CredentialStore,
    ):
        self.host = host
        self.generator = generator
        self.runner = runner
        self.telemetry = telemetry
        self.credentials = credentials

        self.session = PracticeSession(publish=host.set_context)
        self.guard = EditGuard()
        self.timer = PracticeTimer(self._on_tick)
        self.observer = DocumentChangeObserver(
            session=self.session,
            guard=self.guard,
            timer=self.timer,
            active_document=self._active_document,
            notify=host.show_info,
        )
        self._subscriptions: dict[int, Callable[[], None]] = {}

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _on_tick(self, formatted: str) -> None:
        self.host.update_status(f"⏱ {formatted}")

    def _active_document(self) -> TextDocument | None:
        editor = self.host.active_editor
        return editor.document if editor is not None else None

    def watch(self, document: TextDocument) -> None:
        """Route a document's change events through the observer."""
        if id(document) in self._subscriptions:
            return
        self._subscriptions[id(document)] = document.on_did_change(self.observer.on_document_changed)

    def unwatch(self, document: TextDocument) -> None:
        dispose = self._subscriptions.pop(id(document), None)
        if dispose is not None:
            dispose()

    async def activate(self) -> None:
        """Publish the initial context keys and status."""
        await self.session.publish_all()
        self.host.update_status(f"⏱ {self.timer.format_time()}")
        if await self.credentials.is_logged_in():
            logger.info("User session restored")

    async def deactivate(self) -> None:
        self.timer.pause()
        for dispose in self._subscriptions.values():
            dispose()
        self._subscriptions.clear()
        await self.runner.close()

    async def _apply(self, editor: Editor, changes: list[ContentChange | None]) -> None:
        """Every programmatic edit goes through here, under the guard."""
        changes = [c for c in changes if c is not None]
        if not changes:
            return
        async with self.guard.hold():
            await editor.document.apply_edits(changes)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    _COMMANDS = {
        "start_practice": "start_practice",
        "show_hint": "show_hint",
        "hide_hint": "hide_hint",
        "remove_hint": "remove_hint",
        "show_solution": "show_solution",
        "explain_code": "explain_code",
        "remove_explanation": "remove_explanation",
        "evaluate_solution": "evaluate_solution",
        "remove_evaluation": "remove_evaluation",
        "explain_selection": "explain_selection",
        "remove_selection_explanation": "remove_selection_explanation",
        "run": "run",
        "timer_controls": "timer_controls",
        "login": "login",
        "logout": "logout",
    }

    _ACTION_COMMANDS = {
        ACTION_EXPLAIN_SELECTION: "explain_selection",
        ACTION_REMOVE_SELECTION_EXPLANATION: "remove_selection_explanation",
        ACTION_SHOW_HINT: "show_hint",
        ACTION_HIDE_HINT: "hide_hint",
        ACTION_SHOW_SOLUTION: "show_solution",
        ACTION_EXPLAIN_CODE: "explain_code",
        ACTION_EVALUATE_CODE: "evaluate_solution",
        ACTION_REMOVE_EVALUATION: "remove_evaluation",
        ACTION_REMOVE_EXPLANATION: "remove_explanation",
    }

    @classmethod
    def command_names(cls) -> list[str]:
        return list(cls._COMMANDS)

    async def dispatch(self, name: str) -> None:
        method_name = self._COMMANDS.get(name)
        if method_name is None:
            raise ValueError(f"Unknown command: {name}")
        logger.debug("Dispatching command %s", name)
        await getattr(self, method_name)()

    # ------------------------------------------------------------------
    # Start practice
    # ------------------------------------------------------------------

    async def _generate(self, title: str, topic: str, language_id: str, difficulty: str, *, user_question: bool):
        try:
            raw = await self.host.with_progress(
                title,
                self.generator.generate_practice(topic, language_id, difficulty, user_question=user_question),
            )
            return parse_practice_content(raw)
        except GenerationError:
            logger.exception("Practice generation returned unusable content")
        except Exception:
            logger.exception("Practice generation failed")
        await self.host.show_error("AI generation failed.")
        return None

    async def start_practice(self) -> None:
        editor = self.host.active_editor
        if editor is None:
            await self.host.show_error("No active file detected.")
            return

        document = editor.document
        session = self.session

        if not session.has_question and QUESTION_MARKER not in document.text:
            user_question = extract_user_written_question(document.text, document.language_id)
            if user_question is None:
                await self._generate_question(editor)
                return

            content = await self._generate(
                "Generating hint and solution for your question...",
                user_question,
                document.language_id,
                USER_QUESTION_DIFFICULTY,
                user_question=True,
            )
            if content is None:
                return
            await session.begin_question(
                question=user_question, hint=content.hint, solution=content.solution, user_written=True
            )
            # Straight on to the action picker

        await self._action_loop()

    async def _generate_question(self, editor: Editor) -> None:
        document = editor.document
        topic = detect_topic(document.path)

        decision = await self.host.confirm(f"Detected Topic: {topic}", [TOPIC_CONTINUE, TOPIC_CHANGE])
        if not decision:
            return
        if decision == TOPIC_CHANGE:
            manual_topic = await self.host.input_box("Enter topic name manually")
            if manual_topic and manual_topic.strip():
                topic = manual_topic.strip()

        difficulty = await self.host.quick_pick(DIFFICULTIES, "Select difficulty level")
        if not difficulty:
            return

        content: PracticeContent | None = await self._generate(
            "Generating practice question...", topic, document.language_id, difficulty, user_question=False
        )
        if content is None:
            return

        prefix = comment_prefix(document.language_id)
        header = question_header(difficulty, content.question, prefix)
        await self._apply(editor, [insert_at(document.text, 0, 0, header)])
        await self.session.begin_question(
            question=content.question, hint=content.hint, solution=content.solution, user_written=False
        )
        logger.info("Inserted %s question on %s", difficulty, topic)

    async def _action_loop(self) -> None:
        editor = self.host.active_editor
        if editor is None:
            return
        document = editor.document
        session = self.session

        await session.resync(document.text, document.language_id)
        if not session.has_question and QUESTION_MARKER in document.text:
            # Header left over from an earlier run of the server
            await session.update_flag("has_question", True)
        if not session.has_question:
            await self.host.show_info("No question found. Use Start Practice to generate one.")
            return

        while True:
            editor = self.host.active_editor
            if editor is None:
                break
            actions = session.legal_actions(has_selection=not editor.selection.is_empty)
            if not actions:
                await self.host.show_info("No actions available.")
                break
            action = await self.host.quick_pick(actions, "Select action, press Esc to close")
            if not action:
                break
            method_name = self._ACTION_COMMANDS.get(action)
            if method_name is None:
                logger.warning("Picker returned unknown action %r", action)
                break
            await getattr(self, method_name)()

    # ------------------------------------------------------------------
    # Hint
    # ------------------------------------------------------------------

    async def show_hint(self) -> None:
        editor = self.host.active_editor
        if editor is None or not self.session.stored_hint:
            await self.host.show_info("No hint available.")
            return

        document = editor.document
        prefix = comment_prefix(document.language_id)
        if has_marker(document.text, HINT_MARKER, prefix):
            await self.host.show_info("Hint already revealed.")
            return

        await self._apply(editor, [append(document.text, hint_block(self.session.stored_hint, prefix))])
        self.session.hints_used += 1
        await self.session.update_flag("hint_visible", True)

    async def _remove_hint_block(self, done_message: str) -> None:
        editor = self.host.active_editor
        if editor is None:
            await self.host.show_error("No active file.")
            return

        document = editor.document
        prefix = comment_prefix(document.language_id)
        block = locate_comment_block(document.text, HINT_MARKER, prefix)
        if block is None:
            await self.host.show_error("Hint not found.")
            return

        # stored_hint is kept so the hint can be shown again
        await self._apply(editor, [remove_block(document.text, block)])
        await self.session.update_flag("hint_visible", False)
        await self.host.show_info(done_message)

    async def hide_hint(self) -> None:
        await self._remove_hint_block("Hint hidden.")

    async def remove_hint(self) -> None:
        await self._remove_hint_block("Hint removed.")

    # ------------------------------------------------------------------
    # Solution and explanation
    # ------------------------------------------------------------------

    async def show_solution(self) -> None:
        editor = self.host.active_editor
        solution = self.session.stored_solution
        if editor is None or not solution:
            await self.host.show_info("No solution available.")
            return

        document = editor.document
        if solution in document.text:
            await self.host.show_info("Solution already revealed.")
            return

        await self._apply(editor, [append(document.text, solution_block(solution))])
        self.session.solution_viewed = True
        await self.session.update_flag("solution_visible", True)

    async def explain_code(self) -> None:
        editor = self.host.active_editor
        if editor is None:
            await self.host.show_info("No active file.")
            return

        document = editor.document
        solution = self.session.stored_solution
        if not solution or solution not in document.text:
            await self.host.show_info("Generate solution first.")
            return

        try:
            explained = await self.host.with_progress(
                "Explaining code...", self.generator.explain(document.language_id, solution)
            )
        except Exception:
            logger.exception("Code explanation failed")
            await self.host.show_error("Explanation failed.")
            return

        explanation = explained.strip()
        change = replace_exact(document.text, solution, explanation)
        if change is None:
            await self.host.show_info("Solution block not found in file.")
            return

        await self._apply(editor, [change])
        self.session.stored_explanation = explanation
        await self.session.update_flag("has_explanation", True)

    async def remove_explanation(self) -> None:
        editor = self.host.active_editor
        session = self.session
        if editor is None or not session.stored_explanation or not session.stored_solution:
            await self.host.show_info("No explanation to remove.")
            return

        change = replace_exact(editor.document.text, session.stored_explanation, session.stored_solution)
        if change is None:
            await self.host.show_error("Explanation not found.")
            return

        await self._apply(editor, [change])
        session.stored_explanation = None
        await session.update_flag("has_explanation", False)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate_solution(self) -> None:
        editor = self.host.active_editor
        if editor is None:
            await self.host.show_error("No active file.")
            return
        if not self.session.stored_solution:
            await self.host.show_error("No solution available for evaluation.")
            return

        document = editor.document
        language_id = document.language_id
        prefix = comment_prefix(language_id)
        if has_marker(document.text, EVALUATION_MARKER, prefix):
            await self.host.show_warning("Evaluation already exists. Remove it before running again.")
            return

        learner_code = document.text
        try:
            raw = await self.host.with_progress(
                "Evaluating your code...",
                self.generator.evaluate(language_id, self.session.stored_solution, learner_code),
            )
        except Exception:
            logger.exception("Code evaluation failed")
            await self.host.show_error("Code evaluation failed. Please try again.")
            return

        report = parse_evaluation(raw)

        # The learner may have pasted one in while we waited
        if has_marker(document.text, EVALUATION_MARKER, prefix):
            await self.host.show_warning("Evaluation already exists. Remove it before running again.")
            return

        await self._apply(editor, [append(document.text, evaluation_block(report.summary, prefix))])
        await self.session.update_flag("evaluation_visible", True)

        # Descending line order: each insertion leaves the lines above it alone
        for suggestion in report.suggestions:
            lines = document.text.split("\n")
            index = suggestion.line_number - 1
            if index < 0 or index >= len(lines):
                logger.debug("Skipping suggestion for out-of-range line %d", suggestion.line_number)
                continue
            if has_suggestion_above(lines, index, prefix):
                continue
            block = suggestion_block(suggestion.content, prefix)
            await self._apply(editor, [insert_at(document.text, index, 0, block)])
            self.session.suggestion_blocks.append(block)

        await self.host.show_info("Code evaluation complete. Review suggestions in file.")

    async def remove_evaluation(self) -> None:
        editor = self.host.active_editor
        if editor is None:
            await self.host.show_error("No active file.")
            return

        document = editor.document
        prefix = comment_prefix(document.language_id)
        block = locate_comment_block(document.text, EVALUATION_MARKER, prefix)
        if block is None:
            await self.host.show_error("Evaluation not found.")
            return

        await self._apply(editor, [remove_block(document.text, block)])

        # Only the exact text we inserted; the line below a suggestion may
        # itself be a comment
        for block_text in self.session.suggestion_blocks:
            await self._apply(editor, [remove_exact(document.text, block_text)])
        self.session.suggestion_blocks = []

        await self.session.update_flag("evaluation_visible", False)
        await self.host.show_info("Evaluation removed.")

    # ------------------------------------------------------------------
    # Selection explanation
    # ------------------------------------------------------------------

    async def explain_selection(self) -> None:
        editor = self.host.active_editor
        if editor is None:
            await self.host.show_info("No active file.")
            return
        if editor.selection.is_empty:
            await self.host.show_info("No text selected. Please select code first.")
            return

        document = editor.document
        full_lines = expand_to_full_lines(document, editor.selection)
        fragment = document.get_text(full_lines)

        try:
            explained = await self.host.with_progress(
                "Explaining selection...", self.generator.explain_selection(document.language_id, fragment)
            )
        except Exception:
            logger.exception("Selection explanation failed")
            await self.host.show_error("Explanation failed. Please try again.")
            return

        snapshot = document.text
        start = document.offset_at(full_lines.start)
        end = document.offset_at(full_lines.end)
        await self._apply(editor, [ContentChange(start, end - start, explained)])
        self.session.record_selection_explanation(snapshot, explained)

        await self.host.show_info(
            "Selection explained. Select more to explain again, "
            "or use Remove Selection Explanation to remove all."
        )

    async def remove_selection_explanation(self) -> None:
        editor = self.host.active_editor
        session = self.session
        if editor is None or not session.has_selection_explanation or session.selection_file_snapshot is None:
            await self.host.show_info("No selection explanation to remove.")
            return

        # One step back to before the first explanation, however many there were
        document = editor.document
        await self._apply(editor, [document.full_range_change(session.selection_file_snapshot)])
        session.clear_selection_explanations()
        await self.host.show_info("All selection explanations removed.")

    # ------------------------------------------------------------------
    # Run and timer
    # ------------------------------------------------------------------

    async def run(self) -> None:
        editor = self.host.active_editor

        # The save inside the run is our own edit
        async with self.guard.hold():
            result = await self.runner.run_active_file(editor)

        if not result.success:
            await self.host.show_error(result.error or "Execution failed.")
            return

        if not self.session.timer_started:
            return

        final_time = self.timer.stop()
        self.session.timer_started = False
        await self.host.show_info(f"Practice completed in {final_time}")

        record = PracticeRecord(
            question=self.session.stored_question or "Practice session",
            time_taken=final_time,
            hints_used=self.session.hints_used,
            solution_viewed=self.session.solution_viewed,
            language=editor.document.language_id if editor is not None else "unknown",
        )
        spawn_practice_upload(self.telemetry, record)

    async def timer_controls(self) -> None:
        action = await self.host.quick_pick(TIMER_ACTIONS, "Timer Controls")
        if not action:
            return

        if action == TIMER_PAUSE:
            self.timer.pause()
        elif action == TIMER_RESUME:
            self.timer.resume()
        elif action == TIMER_RESET:
            self.timer.reset()
            self.session.timer_started = False
        elif action == TIMER_STOP:
            final_time = self.timer.stop()
            self.session.timer_started = False
            await self.host.show_info(f"Practice completed in {final_time}")

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(self) -> None:
        await self.host.open_external(LOGIN_URL)
        await self.host.show_info(
            "Opening login page. After login, you will be redirected back automatically."
        )

    async def logout(self) -> None:
        await self.credentials.delete_token()
        await self.host.show_info("Logged out successfully.")

    async def auth_callback(self, uri: str) -> None:
        """Store the token from the login redirect."""
        token = token_from_uri(uri)
        if token is None:
            await self.host.show_error("No token received.")
            return
        await self.credentials.save_token(token)
        await self.host.show_info("Login successful!")
