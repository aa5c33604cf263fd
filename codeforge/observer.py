"""Document-change observer.

The single listener on the practice document. It starts the practice timer
on the learner's first real keystroke once a question is present, and keeps
the explanation and selection-explanation state in step with manual edits.
"""

import logging
import re
from typing import TYPE_CHECKING, Callable

from .blocks import QUESTION_MARKER
from .document import ChangeEvent

if TYPE_CHECKING:
    from .guard import EditGuard
    from .session import PracticeSession
    from .timer import PracticeTimer

logger = logging.getLogger(__name__)

# Phrases that mark a pasted or hand-typed coding question
_QUESTION_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"write\s+a\s+function",
        r"write\s+a\s+program",
        r"implement\s+a",
        r"implement\s+the",
        r"create\s+a\s+function",
        r"create\s+a\s+program",
        r"given\s+an?\s+array",
        r"given\s+a\s+string",
        r"given\s+a\s+list",
        r"given\s+a\s+number",
        r"find\s+the\s+",
        r"return\s+the\s+",
        r"design\s+a\s+",
        r"you\s+are\s+given",
        r"your\s+task\s+is",
        r"write\s+an?\s+algorithm",
        r"solve\s+the\s+following",
        r"complete\s+the\s+function",
    )
]


def detect_manual_question(text: str) -> bool:
    if QUESTION_MARKER in text:
        return True
    return any(p.search(text) for p in _QUESTION_PATTERNS)


def is_genuine_typing(event: ChangeEvent) -> bool:
    """Inserted text with nothing replaced; moves, saves and deletions don't count."""
    return any(c.range_length == 0 and len(c.text) > 0 for c in event.content_changes)


class DocumentChangeObserver:
    def __init__(
        self,
        *,
        session: "PracticeSession",
        guard: "EditGuard",
        timer: "PracticeTimer",
        active_document: Callable,
        notify: Callable | None = None,
    ):
        self.session = session
        self.guard = guard
        self.timer = timer
        self._active_document = active_document
        self._notify = notify

    async def on_document_changed(self, event: ChangeEvent) -> None:
        # Our own edits never count as learner activity
        if self.guard.active:
            return

        if event.document is not self._active_document():
            return

        session = self.session
        text = event.document.text

        # Undo/redo can bring the explanation back or take it away
        if session.stored_explanation:
            present = session.stored_explanation in text
            if present != session.has_explanation:
                await session.update_flag("has_explanation", present)

        if session.selection_explained_blocks:
            if not any(block in text for block in session.selection_explained_blocks):
                logger.debug("All selection explanations deleted by hand, clearing state")
                session.clear_selection_explanations()

        if not session.has_question and detect_manual_question(text):
            await session.update_flag("has_question", True)

        if session.timer_started:
            return
        if not session.has_question:
            return
        if not is_genuine_typing(event):
            return

        self.timer.start()
        session.timer_started = True
        logger.info("Practice timer started by learner typing")
        if self._notify is not None:
            await self._notify("Practice timer started")
