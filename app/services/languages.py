from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Callable

# argv tokens; may contain {source}, {entry}, {binary} and {workdir}
CommandTemplate = tuple[str, ...]

DEFAULT_OUTPUT_BYTES = 64 * 1024

_JAVA_PUBLIC_TYPE = re.compile(
    r"\bpublic\s+(?:(?:final|abstract|sealed|non-sealed|strictfp)\s+)*"
    r"(?:class|interface|enum|record)\s+([A-Za-z_$][\w$]*)"
)
# string/char literals are kept (blanked), comments are dropped
_JAVA_LITERAL_OR_COMMENT = re.compile(
    r'"(?:\\.|[^"\\\n])*"|\'(?:\\.|[^\'\\\n])*\'|//[^\n]*|/\*.*?\*/',
    re.DOTALL,
)


def _blank_literals_and_comments(source: str) -> str:
    def _sub(match: re.Match[str]) -> str:
        token = match.group(0)
        if token.startswith(("\"", "'")):
            return token[0] * 2
        return " "

    return _JAVA_LITERAL_OR_COMMENT.sub(_sub, source)


def java_entry_point(source: str) -> str:
    """Return the name of the first top-level public type declared in ``source``.

    Comments and string literals are ignored, as are nested types. Falls back
    to ``Main`` when no top-level public type is declared.
    """
    code = _blank_literals_and_comments(source)
    for match in _JAVA_PUBLIC_TYPE.finditer(code):
        prefix = code[: match.start()]
        if prefix.count("{") == prefix.count("}"):
            return match.group(1)
    return "Main"


@dataclass(frozen=True, slots=True)
class LanguageProfile:
    id: str
    display_name: str
    source_file_name: str
    run_command: CommandTemplate
    toolchain_hint: str
    compile_command: CommandTemplate | None = None
    binary_name: str = "main"
    compile_timeout_ms: int = 10_000
    run_timeout_ms: int = 5_000
    max_output_bytes: int = DEFAULT_OUTPUT_BYTES
    memory_limit_mb: int | None = 256  # None: runtime reserves its own heap
    limit_processes: bool = True
    env: Mapping[str, str] = field(default_factory=dict)
    entry_point: Callable[[str], str] | None = None

    @property
    def compiled(self) -> bool:
        return self.compile_command is not None

    def resolve_entry(self, source: str) -> str:
        if self.entry_point is None:
            return Path(self.source_file_name).stem
        return self.entry_point(source)

    def source_name(self, entry: str) -> str:
        return self.source_file_name.format(entry=entry)

    def _values(self, workdir: Path, entry: str) -> dict[str, str]:
        return {
            "source": self.source_name(entry),
            "entry": entry,
            "binary": self.binary_name,
            "workdir": str(workdir),
        }

    def bind(self, template: CommandTemplate, *, workdir: Path, entry: str) -> list[str]:
        """Expand placeholders inside each argv token. No shell is involved."""
        values = self._values(workdir, entry)
        return [token.format_map(values) for token in template]

    def bind_env(self, *, workdir: Path, entry: str) -> dict[str, str]:
        values = self._values(workdir, entry)
        return {key: value.format_map(values) for key, value in self.env.items()}


_PROFILES: tuple[LanguageProfile, ...] = (
    LanguageProfile(
        id="python",
        display_name="Python",
        source_file_name="main.py",
        run_command=("python3", "-u", "{source}"),
        toolchain_hint="Install Python 3 (python3) to run Python code.",
        env={"PYTHONUNBUFFERED": "1", "PYTHONDONTWRITEBYTECODE": "1"},
    ),
    LanguageProfile(
        id="javascript",
        display_name="JavaScript",
        source_file_name="main.js",
        run_command=("node", "--max-old-space-size=256", "{source}"),
        toolchain_hint="Install Node.js (node) to run JavaScript code.",
        memory_limit_mb=None,
        limit_processes=False,
    ),
    LanguageProfile(
        id="ruby",
        display_name="Ruby",
        source_file_name="main.rb",
        run_command=("ruby", "{source}"),
        toolchain_hint="Install Ruby (ruby) to run Ruby code.",
        # the Ruby VM reserves more address space than RLIMIT_AS allows at startup
        memory_limit_mb=None,
    ),
    LanguageProfile(
        id="typescript",
        display_name="TypeScript",
        source_file_name="main.ts",
        compile_command=("tsc", "--target", "ES2019", "--module", "commonjs", "{source}"),
        run_command=("node", "--max-old-space-size=256", "{entry}.js"),
        toolchain_hint="Install the TypeScript compiler (tsc) and Node.js (node) to run TypeScript code.",
        memory_limit_mb=None,
        limit_processes=False,
    ),
    LanguageProfile(
        id="c",
        display_name="C",
        source_file_name="main.c",
        compile_command=("gcc", "-std=c11", "-O2", "-o", "{binary}", "{source}", "-lm"),
        run_command=("{workdir}/{binary}",),
        toolchain_hint="Install the GNU C compiler (gcc) to run C code.",
    ),
    LanguageProfile(
        id="c_cpp",
        display_name="C++",
        source_file_name="main.cpp",
        compile_command=("g++", "-std=c++17", "-O2", "-o", "{binary}", "{source}"),
        run_command=("{workdir}/{binary}",),
        toolchain_hint="Install the GNU C++ compiler (g++) to run C++ code.",
    ),
    LanguageProfile(
        id="golang",
        display_name="Go",
        source_file_name="main.go",
        compile_command=("go", "build", "-o", "{binary}", "{source}"),
        run_command=("{workdir}/{binary}",),
        toolchain_hint="Install the Go toolchain (go) to run Go code.",
        compile_timeout_ms=30_000,
        memory_limit_mb=None,
        env={
            "GOCACHE": "{workdir}/.gocache",
            "GOPATH": "{workdir}/.gopath",
        },
    ),
    LanguageProfile(
        id="java",
        display_name="Java",
        source_file_name="{entry}.java",
        compile_command=("javac", "-encoding", "UTF-8", "{source}"),
        run_command=("java", "-Xmx256m", "-XX:+UseSerialGC", "-cp", "{workdir}", "{entry}"),
        toolchain_hint="Install a Java Development Kit (javac and java) to run Java code.",
        compile_timeout_ms=20_000,
        memory_limit_mb=None,
        limit_processes=False,
        entry_point=java_entry_point,
    ),
    LanguageProfile(
        id="kotlin",
        display_name="Kotlin",
        source_file_name="main.kt",
        compile_command=("kotlinc", "{source}", "-include-runtime", "-d", "{binary}.jar"),
        run_command=("java", "-Xmx256m", "-XX:+UseSerialGC", "-jar", "{workdir}/{binary}.jar"),
        toolchain_hint="Install the Kotlin compiler (kotlinc) and a Java runtime (java) to run Kotlin code.",
        compile_timeout_ms=60_000,
        memory_limit_mb=None,
        limit_processes=False,
    ),
    LanguageProfile(
        id="csharp",
        display_name="C#",
        source_file_name="main.cs",
        compile_command=("mcs", "-out:{binary}.exe", "{source}"),
        run_command=("mono", "{workdir}/{binary}.exe"),
        toolchain_hint="Install Mono (mcs and mono) to run C# code.",
        compile_timeout_ms=20_000,
        memory_limit_mb=None,
        limit_processes=False,
    ),
    LanguageProfile(
        id="rust",
        display_name="Rust",
        source_file_name="main.rs",
        compile_command=("rustc", "-O", "-o", "{binary}", "{source}"),
        run_command=("{workdir}/{binary}",),
        toolchain_hint="Install the Rust compiler (rustc) to run Rust code.",
        compile_timeout_ms=30_000,
    ),
    LanguageProfile(
        id="php",
        display_name="PHP",
        source_file_name="main.php",
        run_command=("php", "{source}"),
        toolchain_hint="Install the PHP command-line interpreter (php) to run PHP code.",
    ),
    LanguageProfile(
        id="perl",
        display_name="Perl",
        source_file_name="main.pl",
        run_command=("perl", "{source}"),
        toolchain_hint="Install Perl (perl) to run Perl code.",
    ),
    LanguageProfile(
        id="lua",
        display_name="Lua",
        source_file_name="main.lua",
        run_command=("lua", "{source}"),
        toolchain_hint="Install the Lua interpreter (lua) to run Lua code.",
    ),
)

LANGUAGES: Mapping[str, LanguageProfile] = MappingProxyType(
    {profile.id: profile for profile in _PROFILES}
)


def resolve(language_id: str) -> LanguageProfile | None:
    """Look up a language profile; ``None`` means the language is not supported."""
    return LANGUAGES.get(language_id.strip().lower())


def supported_languages() -> list[LanguageProfile]:
    return sorted(LANGUAGES.values(), key=lambda p: p.id)
