from __future__ import annotations

from app.models.schemas import ExecuteResponse, Outcome
from app.services.executor import INTERNAL_ERROR_MESSAGE, ExecutionResult
from app.services.languages import resolve

NO_OUTPUT_SENTINEL = "Code executed successfully (no output)"

_STATUS_BY_OUTCOME: dict[Outcome, int] = {
    Outcome.SUCCESS: 200,
    Outcome.COMPILE_ERROR: 200,
    Outcome.RUNTIME_ERROR: 200,
    Outcome.TIMEOUT: 200,
    Outcome.UNSUPPORTED_LANGUAGE: 400,
    Outcome.TOOLCHAIN_MISSING: 500,
    Outcome.INTERNAL_ERROR: 500,
}


def toolchain_guidance(result: ExecutionResult) -> str:
    """Tell the caller which compiler or interpreter the host is missing."""
    binary = result.toolchain or "The required toolchain"
    text = f"{binary} is not installed on this server."
    profile = resolve(result.language)
    if profile is not None:
        text = f"{text} {profile.toolchain_hint}"
    return text


def _error_text(result: ExecutionResult) -> str:
    if result.outcome is Outcome.TOOLCHAIN_MISSING:
        return toolchain_guidance(result)
    if result.outcome is Outcome.INTERNAL_ERROR:
        return INTERNAL_ERROR_MESSAGE
    return result.message or result.outcome.value.replace("_", " ").capitalize()


def to_response(result: ExecutionResult) -> tuple[int, ExecuteResponse]:
    """Map an execution result to ``(http_status, response body)``.

    Successful runs carry ``output`` (or the no-output sentinel); every other
    outcome carries ``error``. Raw process details ride along in the
    structured fields.
    """
    status_code = _STATUS_BY_OUTCOME[result.outcome]

    if result.outcome is Outcome.SUCCESS:
        output = result.stdout if result.stdout.strip() else NO_OUTPUT_SENTINEL
        error = result.stderr.strip() or None
    else:
        output = result.stdout if result.stdout.strip() else None
        error = _error_text(result)

    body = ExecuteResponse(
        output=output,
        error=error,
        outcome=result.outcome,
        stdout=result.stdout,
        stderr=result.stderr,
        exit_code=result.exit_code,
        timed_out=result.timed_out,
        truncated=result.truncated,
        duration_ms=result.duration_ms,
    )
    return status_code, body
