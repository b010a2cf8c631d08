from __future__ import annotations

import logging
import math
import os
import time
from dataclasses import dataclass, replace
from pathlib import Path

from app.core.config import Settings, get_settings
from app.core.errors import ToolchainNotFoundError
from app.models.schemas import Outcome
from app.services.languages import LanguageProfile, resolve
from app.services.process_runner import ProcessResult, ResourceLimits, run_process
from app.services.workspace import Workspace, workspace

logger = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Internal error while executing code"

# delivered by the kernel once RLIMIT_CPU's soft limit is reached
_CPU_LIMIT_SIGNAL = "SIGXCPU"

# forwarded from the host; everything else (API keys etc.) stays out of the child
_ENV_PASSTHROUGH: tuple[str, ...] = ("PATH", "LANG", "LC_ALL", "JAVA_HOME")


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    language: str
    outcome: Outcome
    stdout: str = ""
    stderr: str = ""
    message: str | None = None
    exit_code: int | None = None
    phase: str = "setup"
    timed_out: bool = False
    truncated: bool = False
    duration_ms: int = 0
    toolchain: str | None = None  # binary that could not be spawned


def _cpu_seconds(timeout_ms: int) -> int:
    return math.ceil(timeout_ms / 1000.0) + 1


def _compile_limits(profile: LanguageProfile) -> ResourceLimits:
    # compilers get CPU and file-size limits only
    return ResourceLimits(
        cpu_time_sec=_cpu_seconds(profile.compile_timeout_ms),
        max_file_size_mb=64,
        max_open_files=None,
    )


def _run_limits(profile: LanguageProfile, settings: Settings, timeout_ms: int) -> ResourceLimits:
    memory: int | None = None
    if profile.memory_limit_mb is not None:
        memory = min(profile.memory_limit_mb, settings.memory_limit_mb)
    return ResourceLimits(
        cpu_time_sec=min(_cpu_seconds(timeout_ms), settings.cpu_time_limit_sec),
        memory_limit_mb=memory,
        max_processes=settings.max_processes if profile.limit_processes else None,
    )


def _child_env(profile: LanguageProfile, workdir: Path, entry: str) -> dict[str, str]:
    env = {key: os.environ[key] for key in _ENV_PASSTHROUGH if os.environ.get(key)}
    env.setdefault("PATH", os.defpath)
    env["HOME"] = str(workdir)
    env["TMPDIR"] = str(workdir)
    env.update(profile.bind_env(workdir=workdir, entry=entry))
    return env


def _toolchain_missing(profile: LanguageProfile, exc: ToolchainNotFoundError, phase: str) -> ExecutionResult:
    return ExecutionResult(
        language=profile.id,
        outcome=Outcome.TOOLCHAIN_MISSING,
        message=str(exc),
        phase=phase,
        toolchain=exc.binary,
    )


def _compile_failure(profile: LanguageProfile, compiled: ProcessResult) -> ExecutionResult:
    if compiled.timed_out or compiled.signal == _CPU_LIMIT_SIGNAL:
        return ExecutionResult(
            language=profile.id,
            outcome=Outcome.TIMEOUT,
            stdout=compiled.stdout,
            stderr=compiled.stderr,
            message=f"Compilation timed out after {profile.compile_timeout_ms} ms",
            phase="compile",
            timed_out=True,
        )

    diagnostic = compiled.stderr.strip() or compiled.stdout.strip()
    if not diagnostic:
        if compiled.signal:
            diagnostic = f"Compiler terminated by signal {compiled.signal}"
        else:
            diagnostic = f"Compilation failed with exit code {compiled.exit_code}"
    return ExecutionResult(
        language=profile.id,
        outcome=Outcome.COMPILE_ERROR,
        stdout=compiled.stdout,
        stderr=compiled.stderr,
        message=diagnostic,
        exit_code=compiled.exit_code,
        phase="compile",
        truncated=compiled.truncated,
    )


def _run_outcome(
    profile: LanguageProfile,
    ran: ProcessResult,
    timeout_ms: int,
    max_output_bytes: int,
    limits: ResourceLimits,
) -> ExecutionResult:
    base = ExecutionResult(
        language=profile.id,
        outcome=Outcome.SUCCESS,
        stdout=ran.stdout,
        stderr=ran.stderr,
        exit_code=ran.exit_code,
        phase="run",
        timed_out=ran.timed_out,
        truncated=ran.truncated,
    )
    if ran.timed_out:
        return replace(
            base,
            outcome=Outcome.TIMEOUT,
            message=f"Execution timed out after {timeout_ms} ms",
        )
    if ran.signal == _CPU_LIMIT_SIGNAL:
        return replace(
            base,
            outcome=Outcome.TIMEOUT,
            message=f"CPU time limit of {limits.cpu_time_sec} s exceeded",
            timed_out=True,
        )
    if ran.truncated:
        return replace(
            base,
            outcome=Outcome.RUNTIME_ERROR,
            message=f"Output limit of {max_output_bytes} bytes exceeded",
        )
    if ran.exit_code == 0:
        # exit status decides; stderr stays as advisory diagnostics
        return base

    message = ran.stderr.strip()
    if not message:
        if ran.signal:
            message = f"Process terminated by signal {ran.signal}"
        else:
            message = f"Process exited with code {ran.exit_code}"
    return replace(base, outcome=Outcome.RUNTIME_ERROR, message=message)


def _run_pipeline(
    profile: LanguageProfile,
    ws: Workspace,
    code: str,
    stdin: str | None,
    settings: Settings,
) -> ExecutionResult:
    entry = profile.resolve_entry(code)
    try:
        ws.write(profile.source_name(entry), code)
    except OSError as exc:
        logger.error("Could not write %s source into %s: %s", profile.id, ws.path, exc)
        return ExecutionResult(
            language=profile.id,
            outcome=Outcome.INTERNAL_ERROR,
            message=INTERNAL_ERROR_MESSAGE,
            phase="setup",
        )

    env = _child_env(profile, ws.path, entry)
    max_output = min(profile.max_output_bytes, settings.max_output_bytes)

    if profile.compile_command is not None:
        argv = profile.bind(profile.compile_command, workdir=ws.path, entry=entry)
        try:
            compiled = run_process(
                argv,
                cwd=ws.path,
                timeout_ms=profile.compile_timeout_ms,
                max_output_bytes=max_output,
                limits=_compile_limits(profile),
                env=env,
            )
        except ToolchainNotFoundError as exc:
            return _toolchain_missing(profile, exc, "compile")
        if not compiled.ok:
            logger.info("Compilation of %s code failed (exit=%s)", profile.id, compiled.exit_code)
            return _compile_failure(profile, compiled)

    run_timeout = min(profile.run_timeout_ms, settings.max_exec_timeout_ms)
    limits = _run_limits(profile, settings, run_timeout)
    argv = profile.bind(profile.run_command, workdir=ws.path, entry=entry)
    try:
        ran = run_process(
            argv,
            cwd=ws.path,
            timeout_ms=run_timeout,
            max_output_bytes=max_output,
            stdin=stdin,
            limits=limits,
            env=env,
        )
    except ToolchainNotFoundError as exc:
        return _toolchain_missing(profile, exc, "run")
    return _run_outcome(profile, ran, run_timeout, max_output, limits)


def run_profile(
    profile: LanguageProfile,
    *,
    code: str,
    stdin: str | None = None,
    settings: Settings | None = None,
) -> ExecutionResult:
    """Write, compile (if needed) and run ``code`` inside a throwaway workspace.

    The workspace is removed on every path, after the child process has been
    reaped. Failures never escape: they come back as an ``ExecutionResult``
    with the matching ``Outcome``.
    """
    settings = settings or get_settings()
    start = time.perf_counter()
    logger.info("Executing %s submission (%d bytes)", profile.id, len(code.encode("utf-8")))

    try:
        with workspace(settings.workspace_root) as ws:
            result = _run_pipeline(profile, ws, code, stdin, settings)
    except Exception:
        logger.exception("Unexpected failure while executing %s code", profile.id)
        result = ExecutionResult(
            language=profile.id,
            outcome=Outcome.INTERNAL_ERROR,
            message=INTERNAL_ERROR_MESSAGE,
        )

    result = replace(result, duration_ms=int((time.perf_counter() - start) * 1000))
    logger.info(
        "Finished %s execution: outcome=%s phase=%s duration_ms=%d",
        profile.id,
        result.outcome.value,
        result.phase,
        result.duration_ms,
    )
    return result


def execute_code(
    *,
    language: str,
    code: str,
    stdin: str | None = None,
    settings: Settings | None = None,
) -> ExecutionResult:
    profile = resolve(language)
    if profile is None:
        logger.info("Rejected unsupported language %r", language)
        return ExecutionResult(
            language=language,
            outcome=Outcome.UNSUPPORTED_LANGUAGE,
            message=f"Language {language} is not supported",
        )
    return run_profile(profile, code=code, stdin=stdin, settings=settings)
