from __future__ import annotations

from enum import Enum

from pydantic import AliasChoices, BaseModel, Field, StrictInt, StrictStr


class Outcome(str, Enum):
    SUCCESS = "success"
    COMPILE_ERROR = "compile_error"
    RUNTIME_ERROR = "runtime_error"
    TIMEOUT = "timeout"
    TOOLCHAIN_MISSING = "toolchain_missing"
    UNSUPPORTED_LANGUAGE = "unsupported_language"
    INTERNAL_ERROR = "internal_error"


class ExecuteRequest(BaseModel):
    code: StrictStr = Field(..., min_length=1, description="Source code to execute.")
    language: StrictStr = Field(..., min_length=1, description="Language identifier, e.g. 'python'.")
    stdin: StrictStr | None = Field(
        None,
        validation_alias=AliasChoices("stdin", "customInput"),
        description="Optional stdin passed to the program.",
    )


class ExecuteResponse(BaseModel):
    output: StrictStr | None = None
    error: StrictStr | None = None
    outcome: Outcome | None = None
    stdout: StrictStr | None = None
    stderr: StrictStr | None = None
    exit_code: int | None = None
    timed_out: bool | None = None
    truncated: bool | None = None
    duration_ms: StrictInt | None = None


class ErrorResponse(BaseModel):
    error: StrictStr


class LanguageInfo(BaseModel):
    id: StrictStr
    name: StrictStr
    compiled: bool


class LanguagesResponse(BaseModel):
    languages: list[LanguageInfo]
