"""Per-language compile and run commands for the learner's file."""

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_LANGUAGES = ["python", "javascript", "typescript", "java", "c", "cpp", "go", "ruby"]

_DISPLAY_NAMES = "Python, JavaScript, TypeScript, Java, C, C++, Go, Ruby"


@dataclass
class Command:
    command: str
    args: list[str] = field(default_factory=list)

    def to_shell(self) -> str:
        return shlex.join([self.command, *self.args])


@dataclass
class LanguageConfig:
    run: Command
    compile: Command | None = None


def unsupported_message(language_id: str) -> str:
    return f'Language "{language_id}" is not supported. Supported: {_DISPLAY_NAMES}.'


def _native_binary(file_path: Path) -> str:
    """Compiler output next to the source; also the command that runs it."""
    if os.name == "nt":
        return str(file_path.with_suffix(".exe"))
    binary = file_path.with_suffix("")
    # A bare name would be looked up on PATH
    return str(binary) if binary.parent != Path(".") else f"./{binary}"


def get_language_config(language_id: str, file_path: str) -> LanguageConfig | None:
    """Commands for running ``file_path``, or None for an unsupported language."""
    path = Path(file_path)
    file_dir = str(path.parent)
    stem = path.name.split(".")[0]

    if language_id == "python":
        return LanguageConfig(run=Command("python3", [file_path]))
    if language_id == "javascript":
        return LanguageConfig(run=Command("node", [file_path]))
    if language_id == "typescript":
        return LanguageConfig(run=Command("npx", ["ts-node", file_path]))
    if language_id == "java":
        return LanguageConfig(
            compile=Command("javac", [file_path]),
            run=Command("java", ["-cp", file_dir, stem]),
        )
    if language_id == "c":
        binary = _native_binary(path)
        return LanguageConfig(compile=Command("gcc", [file_path, "-o", binary]), run=Command(binary))
    if language_id in ("cpp", "c++"):
        binary = _native_binary(path)
        return LanguageConfig(compile=Command("g++", [file_path, "-o", binary]), run=Command(binary))
    if language_id == "go":
        return LanguageConfig(run=Command("go", ["run", file_path]))
    if language_id == "ruby":
        return LanguageConfig(run=Command("ruby", [file_path]))
    return None


def build_command(config: LanguageConfig) -> str:
    """One shell line; the run step only happens when compiling succeeds."""
    if config.compile is not None:
        return f"{config.compile.to_shell()} && {config.run.to_shell()}"
    return config.run.to_shell()
