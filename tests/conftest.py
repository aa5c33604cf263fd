"""Shared fixtures for the CodeForge test suite."""

import asyncio
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Ensure the project root is on sys.path so the 'codeforge' package resolves
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from codeforge.document import Editor, Position, Range, TextDocument  # noqa: E402


# ---------------------------------------------------------------------------
# Fakes for the editor host and the generation backend
# ---------------------------------------------------------------------------

class FakeHost:
    """Records everything the controller shows; answers prompts from queues.

    ``picks``, ``inputs`` and ``confirms`` are consumed front to back; an
    exhausted queue answers None, which is what a dismissed prompt returns.
    """

    def __init__(self, editor: Editor | None = None):
        self.active_editor = editor
        self.infos: list[str] = []
        self.warnings: list[str] = []
        self.errors: list[str] = []
        self.context: dict[str, bool] = {}
        self.statuses: list[str] = []
        self.opened: list[str] = []
        self.progress_titles: list[str] = []
        self.picks: list[str | None] = []
        self.inputs: list[str | None] = []
        self.confirms: list[str | None] = []
        self.offered: list[list[str]] = []

    async def show_info(self, message):
        self.infos.append(message)

    async def show_warning(self, message):
        self.warnings.append(message)

    async def show_error(self, message):
        self.errors.append(message)

    async def quick_pick(self, items, placeholder):
        self.offered.append(list(items))
        return self.picks.pop(0) if self.picks else None

    async def input_box(self, prompt):
        return self.inputs.pop(0) if self.inputs else None

    async def confirm(self, message, choices):
        return self.confirms.pop(0) if self.confirms else None

    async def with_progress(self, title, awaitable):
        self.progress_titles.append(title)
        return await awaitable

    async def set_context(self, key, value):
        self.context[key] = value

    def update_status(self, text):
        self.statuses.append(text)

    async def open_external(self, url):
        self.opened.append(url)


def make_generator(
    practice: str = "[QUESTION]Sort an array[HINT]Use comparisons[SOLUTION]function sort(a){...}",
    evaluation: str = "Code Evaluation Summary:\nCorrectness:\nYour code works.",
    explanation: str = "// sorts the array\nfunction sort(a){...}",
    selection: str | None = None,
) -> MagicMock:
    """A generator double whose methods are AsyncMocks with canned answers."""
    generator = MagicMock()
    generator.generate_practice = AsyncMock(return_value=practice)
    generator.evaluate = AsyncMock(return_value=evaluation)
    generator.explain = AsyncMock(return_value=explanation)
    if selection is None:
        generator.explain_selection = AsyncMock(side_effect=lambda lang, fragment: "// explained\n" + fragment)
    else:
        generator.explain_selection = AsyncMock(return_value=selection)
    generator.shutdown = AsyncMock()
    return generator


def make_editor(text: str = "", *, language_id: str = "javascript", path: str | None = "/work/sort.js") -> Editor:
    return Editor(TextDocument(text, language_id=language_id, path=path))


def select(editor: Editor, start_line: int, start_char: int, end_line: int, end_char: int) -> None:
    editor.selection = Range(Position(start_line, start_char), Position(end_line, end_char))


def make_controller(editor: Editor | None = None, *, generator=None, runner=None, telemetry=None, credentials=None):
    """A PracticeController wired to a FakeHost; the document is already watched."""
    from codeforge.controller import PracticeController

    host = FakeHost(editor)
    controller = PracticeController(
        host,
        generator=generator or make_generator(),
        runner=runner or AsyncMock(),
        telemetry=telemetry or AsyncMock(),
        credentials=credentials or AsyncMock(),
    )
    if editor is not None:
        controller.watch(editor.document)
    return controller, host


@pytest.fixture
def editor():
    return make_editor()


@pytest.fixture
def generator():
    return make_generator()


@pytest.fixture
async def controller_and_host(editor, generator):
    controller, host = make_controller(editor, generator=generator)
    yield controller, host
    controller.timer.pause()
    await asyncio.sleep(0)
