"""Generation collaborator: practice questions, evaluations and explanations.

Backed by a single reused Claude Code SDK client. The session core only
relies on the textual contract of the responses: section markers such as
``[QUESTION]``/``[HINT]``/``[SOLUTION]`` and no markdown fencing.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field

from claude_code_sdk import AssistantMessage, ClaudeCodeOptions, ClaudeSDKClient, TextBlock

from .config import GENERATION_MODEL

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 15  # seconds
MAX_RETRIES = 2
RETRY_BACKOFF = 1.0  # seconds
MAX_REQUESTS_PER_CLIENT = 20  # reconnect after N requests to stay fresh

SYSTEM_PROMPT = (
    "You are a coding practice assistant embedded in a code editor. "
    "Everything you return is inserted verbatim into a source file, so follow "
    "the requested output format exactly and never use markdown."
)

_LANGUAGE_INSTRUCTIONS = {
    "javascript": (
        "- Generate PURE JavaScript.\n"
        "- DO NOT use TypeScript type annotations.\n"
        '- DO NOT use ": number", ": string", "number[]", etc.\n'
        "- Do NOT write function signatures with types."
    ),
    "typescript": "- Generate proper TypeScript.\n- Type annotations are allowed.",
    "python": "- Generate proper Python.\n- Do NOT use JavaScript syntax.",
}

PRACTICE_PROMPT = """Generate a {difficulty} level coding practice problem.

Topic: {topic}
Programming Language: {language}

{language_instruction}

Return output STRICTLY in this format:

[QUESTION]
Clear problem statement only.

[HINT]
A helpful hint for solving the problem.

[SOLUTION]
Complete correct solution in {language}.

{solution_rules}"""

USER_QUESTION_PROMPT = """A learner wrote this {language} practice problem:

{question}

{language_instruction}

Return output STRICTLY in this format:

[HINT]
A helpful hint for solving the problem.

[SOLUTION]
Complete correct solution in {language}.

{solution_rules}"""

SOLUTION_RULES = """Rules for [SOLUTION]:
- DO NOT wrap the solution in markdown.
- DO NOT use triple backticks.
- Return raw code only inside [SOLUTION].
- Do not add extra headings.
- Do not add explanations outside blocks.
- Do not remove the block labels.
- Solution must be valid runnable {language} code.
- After defining the function, ALWAYS include a small execution block that calls
  the function with sample input and prints the result.
{execution_block}
- The code must be immediately runnable when the learner clicks Run."""

EVALUATE_PROMPT = """You are a code reviewer. Analyze this {language} code and provide a SHORT evaluation.

REFERENCE SOLUTION:
{reference}

USER'S CODE:
{code}

Respond EXACTLY in this format (no markdown, no decorators):

Code Evaluation Summary:

Correctness:
<2 sentences max about correctness. Use "Your code">

Edge Cases:
<2 sentences max, or "Handles edge cases well">

Time Complexity:
<2 sentences max, or "Complexity is appropriate">

Code Quality:
<2 sentences max, or "Code is clean and readable">

Final Verdict:
<Correct / Partially Correct / Needs Improvement>

IF YOUR CODE NEEDS IMPROVEMENTS, append this section ONLY IF NEEDED:

Suggestions:

LINE <number>:
Issue: <brief issue description>
Better Approach: <what to do instead>
Example Replacement: <1-2 lines of code>

Only suggest lines with clear improvements. Keep to 2-3 suggestions maximum.
Line numbers refer to the USER'S CODE exactly as given, starting at 1.

IMPORTANT:
- Do NOT add markdown formatting.
- Do NOT wrap anything in backticks.
- Do NOT add decorative lines or borders.
- Speak directly: "Your code" not "the user's code".
- If no improvements needed, do NOT include Suggestions section."""

EXPLAIN_PROMPT = """Explain the following {language} code.

Rules:
- Add ONE short comment line before each line of code.
- Do NOT remove original code.
- Do NOT add markdown formatting.
- Do NOT wrap in triple backticks.
- Return ONLY code with explanation comments.

Code:
{code}"""

EXPLAIN_SELECTION_PROMPT = """You are a coding tutor explaining code to a beginner.

Explain the following {language} code selection line by line.

Rules:
- Before EACH line of code, add ONE short comment explaining what that line does.
- Use very simple, clear language. Avoid jargon.
- If helpful, add a tiny inline example in the comment.
- Do NOT remove any original code lines.
- Keep the original indentation of every code line.
- Do NOT add markdown formatting.
- Do NOT wrap in triple backticks.
- Do NOT add decorative borders or separators.
- Return ONLY the commented + original code. Nothing else.

Code to explain:
{code}"""


class GenerationError(RuntimeError):
    """The generation backend failed or returned something unusable."""


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

_FENCE_OPEN_RE = re.compile(r"```[\w+-]*\n?")
_RULE_LINE_RE = re.compile(r"^\s*[=-]{3,}\s*$", re.MULTILINE)
_QUESTION_LABEL_RE = re.compile(r"Question:", re.IGNORECASE)

_QUESTION_RE = re.compile(r"\[QUESTION\](.*?)(?=\[HINT\]|\[SOLUTION\]|\Z)", re.DOTALL)
_HINT_RE = re.compile(r"\[HINT\](.*?)(?=\[SOLUTION\]|\Z)", re.DOTALL)
_SOLUTION_RE = re.compile(r"\[SOLUTION\](.*)", re.DOTALL)

_SUMMARY_RE = re.compile(r"Code Evaluation Summary:(.*?)(?=Suggestions:|\Z)", re.DOTALL)
_SUGGESTIONS_RE = re.compile(r"Suggestions:(.*)\Z", re.DOTALL)
_LINE_SUGGESTION_RE = re.compile(r"LINE\s*(\d+):(.*?)(?=LINE\s*\d+:|\Z)", re.DOTALL | re.IGNORECASE)


def strip_markdown(text: str) -> str:
    """Remove code fences and decorative rules the model adds despite instructions."""
    text = _FENCE_OPEN_RE.sub("", text)
    text = text.replace("```", "")
    return _RULE_LINE_RE.sub("", text)


@dataclass
class PracticeContent:
    question: str | None
    hint: str | None
    solution: str | None


def parse_practice_content(text: str) -> PracticeContent:
    question = _QUESTION_RE.search(text)
    hint = _HINT_RE.search(text)
    solution = _SOLUTION_RE.search(text)
    if not (question or hint or solution):
        raise GenerationError("Response has no [QUESTION], [HINT] or [SOLUTION] section")
    return PracticeContent(
        question=question.group(1).strip() if question else None,
        hint=hint.group(1).strip() if hint else None,
        solution=solution.group(1).strip() if solution else None,
    )


@dataclass
class Suggestion:
    line_number: int
    content: str


@dataclass
class EvaluationReport:
    summary: str
    suggestions: list[Suggestion] = field(default_factory=list)


def parse_evaluation(text: str) -> EvaluationReport:
    """Split an evaluation into its summary and per-line suggestions.

    Suggestions come back sorted by descending line number so they can be
    inserted one after another without shifting the lines still pending.
    """
    summary_match = _SUMMARY_RE.search(text)
    suggestions_match = _SUGGESTIONS_RE.search(text)

    summary = summary_match.group(1).strip() if summary_match else text.strip()
    suggestions_text = suggestions_match.group(1).strip() if suggestions_match else ""

    suggestions = [
        Suggestion(line_number=int(m.group(1)), content=m.group(2).strip())
        for m in _LINE_SUGGESTION_RE.finditer(suggestions_text)
    ]
    suggestions.sort(key=lambda s: s.line_number, reverse=True)
    return EvaluationReport(summary=summary, suggestions=suggestions)


# ---------------------------------------------------------------------------
# Prompt construction
# ---------------------------------------------------------------------------

def _solution_rules(language_id: str) -> str:
    if language_id == "python":
        execution_block = (
            '- For Python: Add execution block as:\n'
            '  if __name__ == "__main__":\n'
            '      print(function_name(sample_input))'
        )
    elif language_id in ("javascript", "typescript"):
        execution_block = f"- For {language_id}: Add execution block as:\n  console.log(function_name(sample_input));"
    else:
        execution_block = f"- For {language_id}: Print the result from the program entry point."
    return SOLUTION_RULES.format(language=language_id, execution_block=execution_block)


def build_practice_prompt(topic: str, language_id: str, difficulty: str, *, user_question: bool = False) -> str:
    language_instruction = _LANGUAGE_INSTRUCTIONS.get(language_id, "")
    if user_question:
        return USER_QUESTION_PROMPT.format(
            question=topic,
            language=language_id,
            language_instruction=language_instruction,
            solution_rules=_solution_rules(language_id),
        )
    return PRACTICE_PROMPT.format(
        difficulty=difficulty,
        topic=topic,
        language=language_id,
        language_instruction=language_instruction,
        solution_rules=_solution_rules(language_id),
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class PracticeGenerator:
    """Reuses one Claude Code SDK client across generation requests."""

    def __init__(self, *, model: str | None = GENERATION_MODEL):
        self._model = model
        self._client: ClaudeSDKClient | None = None
        self._lock = asyncio.Lock()
        self._request_count = 0

    def _options(self) -> ClaudeCodeOptions:
        kwargs = {"system_prompt": SYSTEM_PROMPT, "allowed_tools": [], "max_turns": 1}
        if self._model:
            kwargs["model"] = self._model
        return ClaudeCodeOptions(**kwargs)

    async def _discard_client(self) -> None:
        if self._client:
            try:
                await self._client.disconnect()
            except Exception:
                logger.debug("Ignoring error while disconnecting generation client", exc_info=True)
            self._client = None
            self._request_count = 0

    async def _get_client(self) -> ClaudeSDKClient:
        if self._client and self._request_count < MAX_REQUESTS_PER_CLIENT:
            return self._client
        await self._discard_client()
        client = ClaudeSDKClient(self._options())
        await asyncio.wait_for(client.connect(), timeout=CONNECT_TIMEOUT)
        self._client = client
        self._request_count = 0
        return client

    async def _query_once(self, prompt: str) -> str:
        client = await self._get_client()
        await client.query(prompt)
        text = ""
        async for msg in client.receive_response():
            if isinstance(msg, AssistantMessage):
                for block in msg.content:
                    if isinstance(block, TextBlock):
                        text += block.text
        self._request_count += 1
        return text

    async def complete(self, prompt: str) -> str:
        """Send one prompt and return the full response text.

        The whole response is collected before anything is returned, so a
        retry can never duplicate partial output.
        """
        async with self._lock:
            last_exc: Exception | None = None
            for attempt in range(1 + MAX_RETRIES):
                if attempt > 0:
                    await asyncio.sleep(RETRY_BACKOFF * attempt)
                try:
                    return await self._query_once(prompt)
                except Exception as exc:
                    logger.warning("Generation attempt %d failed: %s", attempt + 1, exc)
                    last_exc = exc
                    # Force reconnect on next attempt
                    await self._discard_client()
            raise GenerationError("Generation backend unavailable") from last_exc

    async def generate_practice(
        self, topic: str, language_id: str, difficulty: str, *, user_question: bool = False
    ) -> str:
        prompt = build_practice_prompt(topic, language_id, difficulty, user_question=user_question)
        raw = await self.complete(prompt)
        text = _QUESTION_LABEL_RE.sub("", strip_markdown(raw)).strip()
        if not text:
            raise GenerationError("Empty practice question response")
        return text

    async def evaluate(self, language_id: str, reference_solution: str, learner_code: str) -> str:
        raw = await self.complete(
            EVALUATE_PROMPT.format(language=language_id, reference=reference_solution, code=learner_code)
        )
        text = strip_markdown(raw).strip()
        if not text:
            raise GenerationError("Empty evaluation response")
        return text

    async def explain(self, language_id: str, code: str) -> str:
        raw = await self.complete(EXPLAIN_PROMPT.format(language=language_id, code=code))
        text = strip_markdown(raw).strip()
        if not text:
            raise GenerationError("Empty explanation response")
        return text

    async def explain_selection(self, language_id: str, fragment: str) -> str:
        raw = await self.complete(EXPLAIN_SELECTION_PROMPT.format(language=language_id, code=fragment))
        # Keep leading indentation of the first line; only trailing noise goes
        text = strip_markdown(raw).rstrip()
        return text if text.strip() else fragment

    async def shutdown(self) -> None:
        async with self._lock:
            await self._discard_client()
