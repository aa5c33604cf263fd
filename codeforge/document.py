"""In-memory mirror of the editor buffer the practice session lives in.

Two mutation paths feed the same change listeners:

- ``apply_edits()`` for our own edits. The edit sink (the connected editor)
  is awaited first so nothing changes locally if the editor refuses the edit.
- ``receive_changes()`` for changes the editor reports, i.e. the learner's
  typing, pastes, undo and redo.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Position:
    line: int
    character: int


@dataclass(frozen=True)
class Range:
    start: Position
    end: Position

    @property
    def is_empty(self) -> bool:
        return self.start == self.end


@dataclass(frozen=True)
class ContentChange:
    """Replace ``range_length`` characters at ``range_offset`` with ``text``."""

    range_offset: int
    range_length: int
    text: str

    @property
    def end_offset(self) -> int:
        return self.range_offset + self.range_length

    def apply(self, source: str) -> str:
        return source[:self.range_offset] + self.text + source[self.end_offset:]

    def to_dict(self) -> dict:
        return {"range_offset": self.range_offset, "range_length": self.range_length, "text": self.text}

    @classmethod
    def from_dict(cls, data: dict) -> "ContentChange":
        return cls(
            range_offset=int(data["range_offset"]),
            range_length=int(data.get("range_length", 0)),
            text=str(data.get("text", "")),
        )


@dataclass(frozen=True)
class ChangeEvent:
    document: "TextDocument"
    content_changes: tuple[ContentChange, ...] = ()


ChangeListener = Callable[[ChangeEvent], Awaitable[None]]


class TextDocument:
    def __init__(
        self,
        text: str = "",
        *,
        language_id: str = "plaintext",
        path: str | None = None,
        edit_sink: Callable[[list[ContentChange]], Awaitable[None]] | None = None,
        save_sink: Callable[[], Awaitable[None]] | None = None,
    ):
        self._text = text
        self.language_id = language_id
        self.path = path
        self.version = 0
        self._edit_sink = edit_sink
        self._save_sink = save_sink
        self._listeners: list[ChangeListener] = []

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def text(self) -> str:
        return self._text

    @property
    def line_count(self) -> int:
        return self._text.count("\n") + 1

    def line_at(self, line: int) -> str:
        return self._text.split("\n")[line]

    def offset_at(self, position: Position) -> int:
        """Convert a position to an offset, clamping like an editor would."""
        lines = self._text.split("\n")
        if position.line < 0:
            return 0
        if position.line >= len(lines):
            return len(self._text)
        offset = sum(len(l) + 1 for l in lines[:position.line])
        return offset + max(0, min(position.character, len(lines[position.line])))

    def position_at(self, offset: int) -> Position:
        offset = max(0, min(offset, len(self._text)))
        before = self._text[:offset]
        line = before.count("\n")
        return Position(line, offset - (before.rfind("\n") + 1))

    def get_text(self, rng: Range | None = None) -> str:
        if rng is None:
            return self._text
        return self._text[self.offset_at(rng.start):self.offset_at(rng.end)]

    def full_range_change(self, new_text: str) -> ContentChange:
        """A change replacing the whole buffer."""
        return ContentChange(0, len(self._text), new_text)

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def on_did_change(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def dispose():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return dispose

    async def _emit(self, changes: tuple[ContentChange, ...]) -> None:
        event = ChangeEvent(document=self, content_changes=changes)
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:
                logger.exception("Document change listener failed")

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _check(self, change: ContentChange, length: int) -> None:
        if change.range_offset < 0 or change.range_length < 0 or change.end_offset > length:
            raise ValueError(
                f"Change {change.range_offset}+{change.range_length} is outside the document ({length} chars)"
            )

    async def apply_edits(self, changes: list[ContentChange]) -> None:
        """Apply our own edits. Offsets are relative to the current text."""
        ordered = sorted(changes, key=lambda c: c.range_offset, reverse=True)
        for prev, nxt in zip(ordered, ordered[1:]):
            if nxt.end_offset > prev.range_offset:
                raise ValueError("Overlapping edits")
        for change in ordered:
            self._check(change, len(self._text))

        # Applied in descending order, so each change is also valid
        # against the text left behind by the ones before it.
        if self._edit_sink is not None:
            await self._edit_sink(ordered)

        text = self._text
        for change in ordered:
            text = change.apply(text)
        self._text = text
        self.version += 1
        await self._emit(tuple(ordered))

    async def receive_changes(self, changes: list[ContentChange]) -> None:
        """Apply changes reported by the editor, each relative to the previous one."""
        text = self._text
        for change in changes:
            self._check(change, len(text))
            text = change.apply(text)
        self._text = text
        self.version += 1
        await self._emit(tuple(changes))

    async def save(self) -> None:
        if self._save_sink is not None:
            await self._save_sink()
        elif self.path:
            await asyncio.to_thread(Path(self.path).write_text, self._text)
        await self._emit(())


@dataclass
class Editor:
    document: TextDocument
    selection: Range = field(default_factory=lambda: Range(Position(0, 0), Position(0, 0)))
