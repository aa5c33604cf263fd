"""Locate and mutate the marked comment blocks inside a practice document.

Everything here is a pure function over the document text. Mutations are
returned as ``ContentChange`` splices for the caller to apply under the edit
guard. Lookups that fail return ``None``; nothing in this module raises for
a missing block.
"""

import re
from dataclasses import dataclass
from enum import Enum

from .document import ContentChange

QUESTION_MARKER = "Question ("
HINT_MARKER = "Hint"
EVALUATION_MARKER = "Evaluation"
SUGGESTION_MARKER = "Suggestion"

_HASH_COMMENT_LANGUAGES = {"python", "ruby", "shellscript", "perl", "r", "yaml"}


def comment_prefix(language_id: str) -> str:
    """Line-comment prefix used when rendering blocks for ``language_id``."""
    return "# " if language_id in _HASH_COMMENT_LANGUAGES else "// "


@dataclass(frozen=True)
class LineRange:
    """Inclusive range of zero-based line indices."""

    start: int
    end: int


def _line_offsets(source: str) -> list[int]:
    offsets = [0]
    for match in re.finditer("\n", source):
        offsets.append(match.end())
    return offsets


def _offset_of(source: str, line: int, character: int) -> int:
    offsets = _line_offsets(source)
    if line < 0:
        return 0
    if line >= len(offsets):
        return len(source)
    line_end = offsets[line + 1] - 1 if line + 1 < len(offsets) else len(source)
    return offsets[line] + max(0, min(character, line_end - offsets[line]))


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def comment_lines(body: str, prefix: str) -> str:
    """Prefix every line of ``body``; whitespace-only lines become a bare prefix."""
    return "\n".join(prefix + (line if line.strip() else "") for line in body.split("\n"))


def question_header(difficulty: str, question: str | None, prefix: str) -> str:
    content = f"{prefix}Question ({difficulty})\n\n"
    if question:
        content += comment_lines(question.strip(), prefix) + "\n\n"
    return content


def hint_block(hint: str, prefix: str) -> str:
    return f"\n{prefix}{HINT_MARKER}:\n" + comment_lines(hint, prefix) + "\n\n"


def solution_block(solution: str) -> str:
    return f"\n{solution}\n\n"


def evaluation_block(summary: str, prefix: str) -> str:
    return f"\n\n{prefix}{EVALUATION_MARKER}:\n" + comment_lines(summary, prefix) + "\n"


def suggestion_block(content: str, prefix: str) -> str:
    body = [prefix + line.strip() for line in content.split("\n") if line.strip()]
    return "\n".join([f"{prefix}{SUGGESTION_MARKER}:", *body]) + "\n"


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

class _ScanState(Enum):
    SEEKING = "seeking"
    INSIDE = "inside"
    DONE = "done"


def locate_comment_block(
    source: str,
    marker: str,
    prefix: str,
    *,
    start_line: int = 0,
) -> LineRange | None:
    """Find the block headed by ``<prefix><marker>:``.

    The block runs over the following blank-or-comment lines and ends at the
    first blank line (included) or just before the first non-comment line.
    """
    header = f"{prefix}{marker}:"
    comment_char = prefix.strip()
    state = _ScanState.SEEKING
    start = end = -1

    lines = source.split("\n")
    for index in range(max(0, start_line), len(lines)):
        stripped = lines[index].strip()
        if state is _ScanState.SEEKING:
            if stripped.startswith(header):
                start = end = index
                state = _ScanState.INSIDE
        elif state is _ScanState.INSIDE:
            if stripped == "":
                end = index
                state = _ScanState.DONE
            elif stripped.startswith(comment_char):
                end = index
            else:
                state = _ScanState.DONE
        if state is _ScanState.DONE:
            break

    if start < 0:
        return None
    return LineRange(start, end)


def has_marker(source: str, marker: str, prefix: str) -> bool:
    header = f"{prefix}{marker}:"
    return any(line.strip().startswith(header) for line in source.split("\n"))


def has_suggestion_above(lines: list[str], index: int, prefix: str) -> bool:
    """True if the comment run directly above ``lines[index]`` is a suggestion."""
    header = f"{prefix}{SUGGESTION_MARKER}:"
    comment_char = prefix.strip()
    i = index - 1
    while i >= 0:
        stripped = lines[i].strip()
        if not stripped or not stripped.startswith(comment_char):
            return False
        if stripped.startswith(header):
            return True
        i -= 1
    return False


def extract_user_written_question(source: str, language_id: str) -> str | None:
    """Return the learner's own question from the leading comment block.

    Leading blank lines are skipped; the block ends at the first blank line
    or code line. Documents with a generated question header never count.
    """
    if QUESTION_MARKER in source:
        return None

    comment_char = comment_prefix(language_id).strip()
    strip_prefix = re.compile(rf"^{re.escape(comment_char)}\s*")
    question_lines: list[str] = []

    for line in source.split("\n"):
        stripped = line.strip()
        if stripped == "":
            if not question_lines:
                continue
            break
        if not stripped.startswith(comment_char):
            break
        text = strip_prefix.sub("", stripped).strip()
        if text:
            question_lines.append(text)

    if not question_lines:
        return None
    return " ".join(question_lines)


# ---------------------------------------------------------------------------
# Mutation
# ---------------------------------------------------------------------------

def insert_at(source: str, line: int, character: int, text: str) -> ContentChange:
    """Verbatim insertion; a line past the end lands at the end of the document."""
    return ContentChange(_offset_of(source, line, character), 0, text)


def append(source: str, text: str) -> ContentChange:
    return ContentChange(len(source), 0, text)


def remove_block(source: str, line_range: LineRange) -> ContentChange:
    """Delete the lines in ``line_range`` and rejoin what is left around them."""
    offsets = _line_offsets(source)
    last_line = len(offsets) - 1
    start = offsets[line_range.start]
    if line_range.end < last_line:
        end = offsets[line_range.end + 1]
    else:
        end = len(source)
        if line_range.start > 0:
            # The block reaches the last line: drop the newline that led into it
            start -= 1
    return ContentChange(start, end - start, "")


def replace_exact(source: str, needle: str, replacement: str) -> ContentChange | None:
    """Replace the first ``needle``, widened to whole lines so no line is split."""
    if not needle:
        return None
    index = source.find(needle)
    if index < 0:
        return None
    line_start = source.rfind("\n", 0, index) + 1
    line_end = source.find("\n", index + len(needle))
    if line_end < 0:
        line_end = len(source)
    return ContentChange(line_start, line_end - line_start, replacement)


def remove_exact(source: str, text: str) -> ContentChange | None:
    """Delete the first verbatim occurrence of ``text``, nothing around it."""
    if not text:
        return None
    index = source.find(text)
    if index < 0:
        return None
    return ContentChange(index, len(text), "")
