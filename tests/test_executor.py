from __future__ import annotations

import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from app.core.config import Settings
from app.models.schemas import Outcome
from app.services import executor as executor_module
from app.services.executor import (
    INTERNAL_ERROR_MESSAGE,
    execute_code,
    run_profile,
)
from app.services.languages import LANGUAGES, LanguageProfile
from app.services.workspace import Workspace

from tests.test_hello_world import _require_toolchain

PY = sys.executable


def _python_profile(**overrides: Any) -> LanguageProfile:
    base = replace(LANGUAGES["python"], run_command=(PY, "-u", "{source}"))
    return replace(base, **overrides)


def _compiled_profile(compile_script: str, **overrides: Any) -> LanguageProfile:
    """A fake compiled language whose 'compiler' is a Python one-liner."""
    return _python_profile(
        id="python",
        compile_command=(PY, "-c", compile_script, "{source}"),
        **overrides,
    )


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(workspace_root=str(tmp_path / "workspaces"))


@pytest.fixture()
def run_calls(monkeypatch: pytest.MonkeyPatch) -> list[list[str]]:
    calls: list[list[str]] = []
    real = executor_module.run_process

    def _spy(argv, **kwargs):  # type: ignore[no-untyped-def]
        calls.append(list(argv))
        return real(argv, **kwargs)

    monkeypatch.setattr(executor_module, "run_process", _spy)
    return calls


def _assert_no_workspaces_left(settings: Settings) -> None:
    root = Path(settings.workspace_root or "")
    assert list(root.iterdir()) == []


def test_success_with_output(settings: Settings) -> None:
    result = run_profile(_python_profile(), code="print('hello')", settings=settings)

    assert result.outcome is Outcome.SUCCESS
    assert result.stdout == "hello\n"
    assert result.exit_code == 0
    assert result.phase == "run"
    assert result.duration_ms >= 0
    _assert_no_workspaces_left(settings)


def test_stdin_reaches_program(settings: Settings) -> None:
    result = run_profile(
        _python_profile(),
        code="name = input()\nprint(f'hi {name}')",
        stdin="ada\n",
        settings=settings,
    )
    assert result.stdout == "hi ada\n"


def test_stderr_with_zero_exit_is_advisory(settings: Settings) -> None:
    result = run_profile(
        _python_profile(),
        code="import sys\nprint('ok')\nprint('deprecated call', file=sys.stderr)",
        settings=settings,
    )
    assert result.outcome is Outcome.SUCCESS
    assert result.stderr == "deprecated call\n"


def test_runtime_error_uses_stderr(settings: Settings) -> None:
    result = run_profile(_python_profile(), code="print('before')\n1 / 0", settings=settings)

    assert result.outcome is Outcome.RUNTIME_ERROR
    assert result.exit_code == 1
    assert "ZeroDivisionError" in (result.message or "")
    assert result.stdout == "before\n"
    _assert_no_workspaces_left(settings)


def test_runtime_error_without_stderr_reports_exit_code(settings: Settings) -> None:
    result = run_profile(_python_profile(), code="import os\nos._exit(7)", settings=settings)
    assert result.outcome is Outcome.RUNTIME_ERROR
    assert result.message == "Process exited with code 7"


def test_run_timeout(settings: Settings) -> None:
    result = run_profile(
        _python_profile(run_timeout_ms=400), code="while True:\n    pass", settings=settings
    )

    assert result.outcome is Outcome.TIMEOUT
    assert result.timed_out is True
    assert result.phase == "run"
    assert result.message == "Execution timed out after 400 ms"
    assert result.duration_ms < 3_000
    _assert_no_workspaces_left(settings)


def test_cpu_limit_signal_is_timeout(settings: Settings) -> None:
    result = run_profile(
        _python_profile(),
        code="import os, signal\nos.kill(os.getpid(), signal.SIGXCPU)",
        settings=settings,
    )

    assert result.outcome is Outcome.TIMEOUT
    assert result.timed_out is True
    assert result.phase == "run"
    assert result.message == "CPU time limit of 6 s exceeded"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX rlimits")
def test_cpu_bound_program_hits_cpu_limit_before_wall_clock(tmp_path: Path) -> None:
    settings = Settings(workspace_root=str(tmp_path), cpu_time_limit_sec=1)
    result = run_profile(
        _python_profile(run_timeout_ms=10_000), code="while True:\n    pass", settings=settings
    )

    assert result.outcome is Outcome.TIMEOUT
    assert result.timed_out is True
    assert result.message == "CPU time limit of 1 s exceeded"
    assert result.duration_ms < 8_000


def test_run_timeout_capped_by_settings(tmp_path: Path) -> None:
    settings = Settings(workspace_root=str(tmp_path), max_exec_timeout_ms=300)
    result = run_profile(
        _python_profile(run_timeout_ms=60_000), code="import time\ntime.sleep(30)", settings=settings
    )
    assert result.outcome is Outcome.TIMEOUT
    assert result.message == "Execution timed out after 300 ms"


def test_output_limit_is_runtime_error(tmp_path: Path) -> None:
    settings = Settings(workspace_root=str(tmp_path), max_output_bytes=2_000)
    result = run_profile(
        _python_profile(), code="while True:\n    print('spam' * 100)", settings=settings
    )
    assert result.outcome is Outcome.RUNTIME_ERROR
    assert result.truncated is True
    assert result.message == "Output limit of 2000 bytes exceeded"


def test_unsupported_language_creates_nothing(
    settings: Settings, run_calls: list[list[str]]
) -> None:
    result = execute_code(language="cobol", code="DISPLAY 'HI'.", settings=settings)

    assert result.outcome is Outcome.UNSUPPORTED_LANGUAGE
    assert result.message == "Language cobol is not supported"
    assert run_calls == []
    assert not Path(settings.workspace_root or "").exists()


def test_missing_interpreter_is_toolchain_missing(settings: Settings) -> None:
    profile = _python_profile(run_command=("no-such-interpreter-xyz", "{source}"))
    result = run_profile(profile, code="print(1)", settings=settings)

    assert result.outcome is Outcome.TOOLCHAIN_MISSING
    assert result.toolchain == "no-such-interpreter-xyz"
    assert result.phase == "run"
    _assert_no_workspaces_left(settings)


def test_missing_compiler_is_toolchain_missing(
    settings: Settings, run_calls: list[list[str]]
) -> None:
    profile = _python_profile(compile_command=("no-such-compiler-xyz", "{source}"))
    result = run_profile(profile, code="print(1)", settings=settings)

    assert result.outcome is Outcome.TOOLCHAIN_MISSING
    assert result.toolchain == "no-such-compiler-xyz"
    assert result.phase == "compile"
    assert run_calls == [["no-such-compiler-xyz", "main.py"]]


def test_compile_error_skips_run(settings: Settings, run_calls: list[list[str]]) -> None:
    profile = _compiled_profile(
        "import sys; sys.stderr.write('main.py:1: error: expected ;'); sys.exit(1)"
    )
    result = run_profile(profile, code="print(1)", settings=settings)

    assert result.outcome is Outcome.COMPILE_ERROR
    assert result.phase == "compile"
    assert result.message == "main.py:1: error: expected ;"
    assert len(run_calls) == 1
    assert run_calls[0][:2] == [PY, "-c"]
    _assert_no_workspaces_left(settings)


def test_compile_then_run(settings: Settings, run_calls: list[list[str]]) -> None:
    profile = _compiled_profile("import py_compile, sys; py_compile.compile(sys.argv[1], doraise=True)")
    result = run_profile(profile, code="print(6 * 7)", settings=settings)

    assert result.outcome is Outcome.SUCCESS
    assert result.stdout == "42\n"
    assert len(run_calls) == 2


def test_compile_timeout(settings: Settings) -> None:
    profile = _compiled_profile("import time; time.sleep(30)", compile_timeout_ms=300)
    result = run_profile(profile, code="print(1)", settings=settings)

    assert result.outcome is Outcome.TIMEOUT
    assert result.phase == "compile"
    assert result.message == "Compilation timed out after 300 ms"
    _assert_no_workspaces_left(settings)


def test_compiler_cpu_limit_is_timeout(settings: Settings) -> None:
    profile = _compiled_profile("import os, signal; os.kill(os.getpid(), signal.SIGXCPU)")
    result = run_profile(profile, code="print(1)", settings=settings)

    assert result.outcome is Outcome.TIMEOUT
    assert result.phase == "compile"
    assert result.timed_out is True


def test_source_write_failure_is_internal_error(
    settings: Settings, monkeypatch: pytest.MonkeyPatch, run_calls: list[list[str]]
) -> None:
    def _fail(self: Workspace, name: str, content: str) -> Path:
        raise PermissionError(13, "Permission denied", name)

    monkeypatch.setattr(Workspace, "write", _fail)
    result = run_profile(_python_profile(), code="print(1)", settings=settings)

    assert result.outcome is Outcome.INTERNAL_ERROR
    assert result.phase == "setup"
    assert result.message == INTERNAL_ERROR_MESSAGE
    assert run_calls == []
    _assert_no_workspaces_left(settings)


def test_unexpected_exception_becomes_internal_error(
    settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _explode(*args: Any, **kwargs: Any) -> None:
        raise RuntimeError("fork failed")

    monkeypatch.setattr(executor_module, "run_process", _explode)
    result = run_profile(_python_profile(), code="print(1)", settings=settings)

    assert result.outcome is Outcome.INTERNAL_ERROR
    assert "fork failed" not in (result.message or "")
    _assert_no_workspaces_left(settings)


def test_child_environment_hides_host_secrets(
    settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("RAPIDAPI_KEY", "super-secret")
    result = run_profile(
        _python_profile(),
        code=(
            "import os\n"
            "print(os.environ.get('RAPIDAPI_KEY'))\n"
            "print(os.path.realpath(os.environ['HOME']) == os.getcwd())"
        ),
        settings=settings,
    )
    assert result.stdout.split() == ["None", "True"]


def test_concurrent_identical_requests_are_isolated(settings: Settings) -> None:
    code = (
        "import os, time\n"
        "assert not os.path.exists('marker.txt')\n"
        "open('marker.txt', 'w').write(str(os.getpid()))\n"
        "time.sleep(0.3)\n"
        "print(sorted(os.listdir('.')), open('marker.txt').read() == str(os.getpid()))\n"
    )
    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(
            pool.map(lambda _: run_profile(_python_profile(), code=code, settings=settings), range(4))
        )

    for result in results:
        assert result.outcome is Outcome.SUCCESS, result.message
        assert result.stdout.strip() == "['main.py', 'marker.txt'] True"
    _assert_no_workspaces_left(settings)


def test_c_syntax_error_is_compile_error(settings: Settings, run_calls: list[list[str]]) -> None:
    _require_toolchain("gcc")
    result = execute_code(
        language="c", code="int main(void) { return 0 }\n", settings=settings
    )

    assert result.outcome is Outcome.COMPILE_ERROR
    assert "error" in (result.message or "")
    assert [argv[0] for argv in run_calls] == ["gcc"]
    _assert_no_workspaces_left(settings)


def test_c_program_reads_stdin(settings: Settings) -> None:
    _require_toolchain("gcc")
    code = (
        "#include <stdio.h>\n"
        "int main(void) { int a, b; scanf(\"%d %d\", &a, &b); printf(\"%d\\n\", a + b); return 0; }\n"
    )
    result = execute_code(language="c", code=code, stdin="2 40\n", settings=settings)
    assert result.outcome is Outcome.SUCCESS
    assert result.stdout.strip() == "42"


def test_java_uses_public_class_as_entry_point(settings: Settings) -> None:
    _require_toolchain("javac", "java")
    code = (
        "public class Foo {\n"
        "    public static void main(String[] args) { System.out.println(\"from foo\"); }\n"
        "}\n"
    )
    result = execute_code(language="java", code=code, settings=settings)
    assert result.outcome is Outcome.SUCCESS, result.message
    assert result.stdout.strip() == "from foo"


def test_java_without_public_class_fails_gracefully(settings: Settings) -> None:
    _require_toolchain("javac", "java")
    code = (
        "class Hidden {\n"
        "    public static void main(String[] args) { System.out.println(\"hidden\"); }\n"
        "}\n"
    )
    result = execute_code(language="java", code=code, settings=settings)
    assert result.outcome in (Outcome.COMPILE_ERROR, Outcome.RUNTIME_ERROR)
    _assert_no_workspaces_left(settings)


def test_java_nested_public_class_keeps_main_entry_point(settings: Settings) -> None:
    _require_toolchain("javac", "java")
    code = (
        "class Main {\n"
        "    public static class Pair { int a = 1; }\n"
        "    public static void main(String[] args) { System.out.println(new Pair().a); }\n"
        "}\n"
    )
    result = execute_code(language="java", code=code, settings=settings)
    assert result.outcome is Outcome.SUCCESS, result.message
    assert result.stdout.strip() == "1"


def test_ruby_runs_under_default_limits(settings: Settings) -> None:
    _require_toolchain("ruby")
    result = execute_code(language="ruby", code="puts [1, 2, 3].sum\n", settings=settings)
    assert result.outcome is Outcome.SUCCESS, result.message
    assert result.stdout.strip() == "6"
