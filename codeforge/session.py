"""Practice-session state machine.

One ``PracticeSession`` lives for the lifetime of an editor connection. It
holds the visibility flags that decide which actions are offered, the
generated content cached in memory, and the per-question telemetry.
"""

import logging
from typing import Awaitable, Callable

from .blocks import EVALUATION_MARKER, HINT_MARKER, QUESTION_MARKER, comment_prefix, has_marker

logger = logging.getLogger(__name__)

# Externally visible context keys, one per flag
CTX_HAS_QUESTION = "codeforge.hasQuestion"
CTX_SOLUTION_VISIBLE = "codeforge.solutionVisible"
CTX_HAS_EXPLANATION = "codeforge.hasExplanation"
CTX_HINT_VISIBLE = "codeforge.hintVisible"
CTX_EVALUATION_VISIBLE = "codeforge.evaluationVisible"

FLAG_CONTEXT_KEYS = {
    "has_question": CTX_HAS_QUESTION,
    "solution_visible": CTX_SOLUTION_VISIBLE,
    "has_explanation": CTX_HAS_EXPLANATION,
    "hint_visible": CTX_HINT_VISIBLE,
    "evaluation_visible": CTX_EVALUATION_VISIBLE,
}

# Action names offered by the picker
ACTION_EXPLAIN_SELECTION = "Explain Selection"
ACTION_REMOVE_SELECTION_EXPLANATION = "Remove Selection Explanation"
ACTION_SHOW_HINT = "Show Hint"
ACTION_HIDE_HINT = "Hide Hint"
ACTION_SHOW_SOLUTION = "Show Solution"
ACTION_EXPLAIN_CODE = "Explain Code"
ACTION_EVALUATE_CODE = "Evaluate Code"
ACTION_REMOVE_EVALUATION = "Remove Evaluation"
ACTION_REMOVE_EXPLANATION = "Remove Explanation"

PublishFn = Callable[[str, bool], Awaitable[None]]


class PracticeSession:
    def __init__(self, publish: PublishFn | None = None):
        self._publish = publish

        self.has_question = False
        self.solution_visible = False
        self.hint_visible = False
        self.has_explanation = False
        self.evaluation_visible = False
        self.context: dict[str, bool] = {key: False for key in FLAG_CONTEXT_KEYS.values()}

        self.stored_question: str | None = None
        self.stored_hint: str | None = None
        self.stored_solution: str | None = None
        self.stored_explanation: str | None = None
        self.is_user_written_question = False

        # Telemetry, reset at the start of every question
        self.hints_used = 0
        self.solution_viewed = False

        self.selection_file_snapshot: str | None = None
        self.selection_explained_blocks: list[str] = []

        # Inline suggestion blocks exactly as inserted, for removal
        self.suggestion_blocks: list[str] = []

        self.timer_started = False

    # ------------------------------------------------------------------
    # Flags
    # ------------------------------------------------------------------

    def set_flag(self, name: str, value: bool) -> None:
        """Update the in-memory flag and its context key together, synchronously."""
        key = FLAG_CONTEXT_KEYS[name]
        setattr(self, name, value)
        self.context[key] = value

    async def update_flag(self, name: str, value: bool) -> None:
        """Set a flag, then tell the host. No await sits between flag and key."""
        self.set_flag(name, value)
        if self._publish is not None:
            await self._publish(FLAG_CONTEXT_KEYS[name], value)

    async def publish_all(self) -> None:
        if self._publish is None:
            return
        for key, value in self.context.items():
            await self._publish(key, value)

    async def _reset_visibility(self) -> None:
        for name in ("hint_visible", "solution_visible", "has_explanation", "evaluation_visible"):
            await self.update_flag(name, False)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def begin_question(
        self,
        *,
        question: str | None,
        hint: str | None,
        solution: str | None,
        user_written: bool,
    ) -> None:
        """Record a freshly generated question and start its telemetry."""
        self.stored_question = question
        self.stored_hint = hint
        self.stored_solution = solution
        self.stored_explanation = None
        self.is_user_written_question = user_written
        self.hints_used = 0
        self.solution_viewed = False
        await self._reset_visibility()
        await self.update_flag("has_question", True)

    async def reset_question(self) -> None:
        """Back to the pre-question state. Selection explanations are left alone."""
        self.stored_question = None
        self.stored_hint = None
        self.stored_solution = None
        self.stored_explanation = None
        self.is_user_written_question = False
        await self._reset_visibility()
        await self.update_flag("has_question", False)

    # ------------------------------------------------------------------
    # Selection explanations
    # ------------------------------------------------------------------

    @property
    def has_selection_explanation(self) -> bool:
        return bool(self.selection_explained_blocks)

    def record_selection_explanation(self, snapshot: str, block: str) -> None:
        """Track one explained selection; the snapshot is kept from the first one only."""
        if not self.selection_explained_blocks:
            self.selection_file_snapshot = snapshot
        self.selection_explained_blocks.append(block)

    def clear_selection_explanations(self) -> None:
        self.selection_file_snapshot = None
        self.selection_explained_blocks = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def legal_actions(self, has_selection: bool = False) -> list[str]:
        """Ordered list of actions the learner may take right now."""
        actions: list[str] = []

        if has_selection:
            actions.append(ACTION_EXPLAIN_SELECTION)
        if self.has_selection_explanation:
            actions.append(ACTION_REMOVE_SELECTION_EXPLANATION)

        if self.has_question and not self.solution_visible:
            actions.append(ACTION_HIDE_HINT if self.hint_visible else ACTION_SHOW_HINT)
            actions.append(ACTION_SHOW_SOLUTION)

        if self.solution_visible:
            if not self.has_explanation:
                actions.append(ACTION_EXPLAIN_CODE)
            actions.append(ACTION_REMOVE_EVALUATION if self.evaluation_visible else ACTION_EVALUATE_CODE)

        if self.has_explanation:
            actions.append(ACTION_REMOVE_EXPLANATION)

        return actions

    async def resync(self, text: str, language_id: str) -> None:
        """Reconcile the flags with what the document actually contains.

        Repairs drift from manual deletes, undo and redo.
        """
        prefix = comment_prefix(language_id)

        if self.has_question:
            has_generated_question = QUESTION_MARKER in text
            has_user_question = self.is_user_written_question and bool(text.strip())
            if not has_generated_question and not has_user_question:
                logger.info("Question no longer in document, resetting session")
                await self.reset_question()
                return

        if self.hint_visible and not has_marker(text, HINT_MARKER, prefix):
            await self.update_flag("hint_visible", False)

        if self.solution_visible and self.stored_solution and self.stored_solution not in text:
            await self.update_flag("solution_visible", False)

        if self.has_explanation and self.stored_explanation and self.stored_explanation not in text:
            await self.update_flag("has_explanation", False)

        if self.evaluation_visible and not has_marker(text, EVALUATION_MARKER, prefix):
            await self.update_flag("evaluation_visible", False)
