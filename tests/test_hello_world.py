from __future__ import annotations

from shutil import which

import pytest
from fastapi.testclient import TestClient

from app.main import create_app


def _require_toolchain(*binaries: str) -> None:
    missing = [binary for binary in binaries if which(binary) is None]
    if missing:
        pytest.skip(f"Skipping integration test: {', '.join(missing)} not available")


HELLO_PROGRAMS: dict[str, tuple[tuple[str, ...], str]] = {
    "python": (("python3",), "print('hello')\n"),
    "javascript": (("node",), "console.log('hello');\n"),
    "ruby": (("ruby",), "puts 'hello'\n"),
    "typescript": (("tsc", "node"), "const greeting: string = 'hello';\nconsole.log(greeting);\n"),
    "c": (
        ("gcc",),
        '#include <stdio.h>\n\nint main(void) {\n    printf("hello\\n");\n    return 0;\n}\n',
    ),
    "c_cpp": (
        ("g++",),
        '#include <iostream>\n\nint main() {\n    std::cout << "hello" << std::endl;\n    return 0;\n}\n',
    ),
    "golang": (
        ("go",),
        'package main\n\nimport "fmt"\n\nfunc main() {\n\tfmt.Println("hello")\n}\n',
    ),
    "java": (
        ("javac", "java"),
        'public class Main {\n    public static void main(String[] args) {\n'
        '        System.out.println("hello");\n    }\n}\n',
    ),
    "kotlin": (
        ("kotlinc", "java"),
        'fun main() {\n    println("hello")\n}\n',
    ),
    "csharp": (
        ("mcs", "mono"),
        "class Program {\n    static void Main() {\n"
        '        System.Console.WriteLine("hello");\n    }\n}\n',
    ),
    "rust": (("rustc",), 'fn main() {\n    println!("hello");\n}\n'),
    "php": (("php",), '<?php\necho "hello\\n";\n'),
    "perl": (("perl",), 'print "hello\\n";\n'),
    "lua": (("lua",), 'print("hello")\n'),
}


@pytest.mark.parametrize("language", sorted(HELLO_PROGRAMS))
def test_execute_returns_expected_payload(language: str) -> None:
    binaries, code = HELLO_PROGRAMS[language]
    _require_toolchain(*binaries)

    client = TestClient(create_app())
    response = client.post(
        "/v1/execute",
        json={"code": code, "language": language},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["output"].strip() == "hello"
    assert payload["outcome"] == "success"
    assert payload["exit_code"] == 0
    assert payload["timed_out"] is False
    assert "error" not in payload
    assert isinstance(payload["duration_ms"], int)
    assert payload["duration_ms"] >= 0
