"""Language profiles.

A profile tells the runner everything it needs to know about a language:
which image to run, what to call the source file, and how to run it with
and without piped stdin.  Adding a language is a matter of adding a
:class:`Language` member and a row to :data:`PROFILES`.

Commands are templates.  ``{file}`` expands to the source file name and
``{stem}`` to the name without its extension.  All commands run with the
workspace mounted at :data:`CODE_DIR`.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Pattern, Tuple

from .errors import UnsupportedLanguage


CODE_DIR = "/code"
STDIN_FILENAME = "input.txt"


class Language(str, enum.Enum):
    JAVASCRIPT = "javascript"
    PYTHON = "python"
    JAVA = "java"
    CPP = "cpp"
    C = "c"
    BASH = "bash"
    GO = "go"
    RUBY = "ruby"
    PHP = "php"
    RUST = "rust"


@dataclass(frozen=True)
class LanguageProfile:
    """Static per-language configuration.

    Attributes
    ----------
    language: Language
        Identifier of the language.
    image: str
        Runtime image reference.
    filename: str
        Source file name, or the fallback name when ``entry_point`` is set.
    run_command: tuple
        Command used when no stdin is supplied.
    input_command: tuple, optional
        Command used when stdin is supplied; it pipes the stdin file into the
        program.  Profiles without one get stdin streamed over the
        environment's input channel instead.
    compiles: bool
        Whether running writes build products next to the source, which
        needs a writable workspace.
    entry_point: Pattern, optional
        For languages whose file name must match a type declared in the
        source, the pattern capturing that type name.
    """

    language: Language
    image: str
    filename: str
    run_command: Tuple[str, ...]
    input_command: Optional[Tuple[str, ...]] = None
    compiles: bool = False
    entry_point: Optional[Pattern[str]] = None

    @property
    def id(self) -> str:
        return self.language.value

    @property
    def streams_stdin(self) -> bool:
        return self.input_command is None

    def source_filename(self, source: str) -> str:
        """Return the file name the source must be written under."""
        if self.entry_point is None:
            return self.filename
        match = self.entry_point.search(source)
        if match is None:
            return self.filename
        suffix = self.filename.rsplit(".", 1)[-1]
        return f"{match.group(1)}.{suffix}"

    def command(self, filename: str, with_stdin: bool = False) -> List[str]:
        """Expand the run command for ``filename``.

        ``with_stdin`` selects the input variant when the profile has one.
        """
        template = self.input_command if with_stdin and self.input_command else self.run_command
        stem = filename.rsplit(".", 1)[0]
        return [part.format(file=filename, stem=stem) for part in template]


def _sh(script: str) -> Tuple[str, ...]:
    return ("sh", "-c", script)


PROFILES: Dict[Language, LanguageProfile] = {
    Language.JAVASCRIPT: LanguageProfile(
        language=Language.JAVASCRIPT,
        image="node:16-alpine",
        filename="program.js",
        run_command=("node", f"{CODE_DIR}/{{file}}"),
        input_command=_sh(f"cat {CODE_DIR}/{STDIN_FILENAME} | node {CODE_DIR}/{{file}}"),
    ),
    Language.PYTHON: LanguageProfile(
        language=Language.PYTHON,
        image="python:3.9-alpine",
        filename="program.py",
        run_command=("python", f"{CODE_DIR}/{{file}}"),
        input_command=_sh(f"cat {CODE_DIR}/{STDIN_FILENAME} | python {CODE_DIR}/{{file}}"),
    ),
    Language.JAVA: LanguageProfile(
        language=Language.JAVA,
        image="openjdk:11-jdk-slim",
        filename="Main.java",
        run_command=_sh(f"cd {CODE_DIR} && javac {{file}} && java {{stem}}"),
        input_command=_sh(f"cd {CODE_DIR} && javac {{file}} && cat {STDIN_FILENAME} | java {{stem}}"),
        compiles=True,
        entry_point=re.compile(r"public\s+(?:final\s+|abstract\s+)*class\s+([A-Za-z_]\w*)"),
    ),
    Language.CPP: LanguageProfile(
        language=Language.CPP,
        image="gcc:latest",
        filename="program.cpp",
        run_command=_sh(f"cd {CODE_DIR} && g++ -o program {{file}} && ./program"),
        input_command=_sh(f"cd {CODE_DIR} && g++ -o program {{file}} && cat {STDIN_FILENAME} | ./program"),
        compiles=True,
    ),
    Language.C: LanguageProfile(
        language=Language.C,
        image="gcc:latest",
        filename="program.c",
        run_command=_sh(f"cd {CODE_DIR} && gcc -o program {{file}} && ./program"),
        input_command=_sh(f"cd {CODE_DIR} && gcc -o program {{file}} && cat {STDIN_FILENAME} | ./program"),
        compiles=True,
    ),
    Language.BASH: LanguageProfile(
        language=Language.BASH,
        image="bash:5",
        filename="program.sh",
        run_command=("bash", f"{CODE_DIR}/{{file}}"),
    ),
    Language.GO: LanguageProfile(
        language=Language.GO,
        image="golang:alpine",
        filename="main.go",
        run_command=_sh(f"cd {CODE_DIR} && go run {{file}}"),
        input_command=_sh(f"cd {CODE_DIR} && cat {STDIN_FILENAME} | go run {{file}}"),
        # go run keeps its build cache on the root filesystem
        compiles=True,
    ),
    Language.RUBY: LanguageProfile(
        language=Language.RUBY,
        image="ruby:alpine",
        filename="program.rb",
        run_command=("ruby", f"{CODE_DIR}/{{file}}"),
    ),
    Language.PHP: LanguageProfile(
        language=Language.PHP,
        image="php:cli-alpine",
        filename="program.php",
        run_command=("php", f"{CODE_DIR}/{{file}}"),
    ),
    Language.RUST: LanguageProfile(
        language=Language.RUST,
        image="rust:slim",
        filename="main.rs",
        run_command=_sh(f"cd {CODE_DIR} && rustc -o program {{file}} && ./program"),
        input_command=_sh(f"cd {CODE_DIR} && rustc -o program {{file}} && cat {STDIN_FILENAME} | ./program"),
        compiles=True,
    ),
}


class LanguageRegistry:
    """Immutable lookup table from language id to profile."""

    def __init__(
        self,
        profiles: Optional[Dict[Language, LanguageProfile]] = None,
        allowed: Optional[Iterable[str]] = None,
    ) -> None:
        profiles = dict(PROFILES if profiles is None else profiles)
        missing = [lang.value for lang in Language if lang not in profiles]
        if missing:
            raise ValueError(f"No profile registered for: {', '.join(missing)}")
        allowed_set = {a.strip().lower() for a in allowed or () if a.strip()}
        unknown = allowed_set - {lang.value for lang in Language}
        if unknown:
            raise ValueError(f"Unknown languages in allow list: {', '.join(sorted(unknown))}")
        self._profiles: Dict[str, LanguageProfile] = {
            lang.value: profile
            for lang, profile in profiles.items()
            if not allowed_set or lang.value in allowed_set
        }

    def lookup(self, language_id: Optional[str]) -> LanguageProfile:
        key = (language_id or "").strip().lower()
        try:
            return self._profiles[key]
        except KeyError:
            raise UnsupportedLanguage(f"Unsupported language: {language_id}", language=language_id)

    def profiles(self) -> List[LanguageProfile]:
        return list(self._profiles.values())

    def __contains__(self, language_id: str) -> bool:
        return (language_id or "").strip().lower() in self._profiles
