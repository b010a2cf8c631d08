from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable

from app.core.errors import ToolchainNotFoundError

try:  # POSIX resource limits (best-effort)
    import resource  # type: ignore
except Exception:  # pragma: no cover - non-POSIX
    resource = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n...[truncated]"

_READ_CHUNK = 64 * 1024
_POLL_INTERVAL_SEC = 0.05
_TERMINATE_GRACE_SEC = 0.5
_READER_JOIN_SEC = 1.0


@dataclass(frozen=True, slots=True)
class ResourceLimits:
    cpu_time_sec: int | None = None
    memory_limit_mb: int | None = None
    max_processes: int | None = None
    max_file_size_mb: int | None = 16
    max_open_files: int | None = 256


@dataclass(frozen=True, slots=True)
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int | None
    signal: str | None
    timed_out: bool
    truncated: bool
    duration_ms: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.truncated


def _setrlimit(kind: int, soft: int, hard: int | None = None) -> None:
    hard = soft if hard is None else hard
    _cur_soft, cur_hard = resource.getrlimit(kind)
    if cur_hard != resource.RLIM_INFINITY:
        soft = min(soft, cur_hard)
        hard = min(hard, cur_hard)
    resource.setrlimit(kind, (soft, hard))


def _limit_preexec(limits: ResourceLimits) -> Callable[[], None]:
    def _apply() -> None:  # executed in child before exec
        if resource is not None:
            wanted: list[tuple[str, int | None]] = [
                ("RLIMIT_CPU", limits.cpu_time_sec),
                (
                    "RLIMIT_AS",
                    limits.memory_limit_mb * 1024 * 1024 if limits.memory_limit_mb else None,
                ),
                (
                    "RLIMIT_FSIZE",
                    limits.max_file_size_mb * 1024 * 1024 if limits.max_file_size_mb else None,
                ),
                ("RLIMIT_NOFILE", limits.max_open_files),
                ("RLIMIT_NPROC", limits.max_processes),
            ]
            for name, value in wanted:
                kind = getattr(resource, name, None)
                if kind is None or value is None:
                    continue
                try:
                    if name == "RLIMIT_CPU":
                        # SIGXCPU at the soft limit, SIGKILL one second later
                        _setrlimit(kind, value, value + 1)
                    else:
                        _setrlimit(kind, value)
                except (ValueError, OSError):
                    pass
        # New session so the whole process tree can be signalled at once
        os.setsid()
    return _apply


class _OutputCollector:
    """Accumulates stdout/stderr under one combined byte budget."""

    def __init__(self, max_bytes: int) -> None:
        self.max_bytes = max(0, max_bytes)
        self.overflow = threading.Event()
        self._lock = threading.Lock()
        self._total = 0
        self._chunks: dict[str, list[bytes]] = {"stdout": [], "stderr": []}
        self._cut: set[str] = set()

    def feed(self, stream: str, data: bytes) -> None:
        with self._lock:
            room = self.max_bytes - self._total
            if len(data) > room:
                data = data[: max(0, room)]
                self._cut.add(stream)
                self.overflow.set()
            if data:
                self._chunks[stream].append(data)
                self._total += len(data)

    def text(self, stream: str) -> str:
        with self._lock:
            raw = b"".join(self._chunks[stream])
            cut = stream in self._cut
        decoded = raw.decode("utf-8", errors="replace")
        return decoded + TRUNCATION_MARKER if cut else decoded


def _drain(pipe: IO[bytes], stream: str, collector: _OutputCollector) -> None:
    try:
        while True:
            chunk = pipe.read1(_READ_CHUNK)  # type: ignore[attr-defined]
            if not chunk:
                break
            # keep draining past the cap so the child never blocks on a full pipe
            collector.feed(stream, chunk)
    except (OSError, ValueError):
        pass
    finally:
        try:
            pipe.close()
        except OSError:
            pass


def _feed_stdin(pipe: IO[bytes], data: bytes) -> None:
    try:
        pipe.write(data)
    except (BrokenPipeError, OSError, ValueError):
        pass  # child exited or closed its input early
    finally:
        try:
            pipe.close()
        except OSError:
            pass


def _signal_group(proc: subprocess.Popen[bytes], sig: int) -> None:
    try:
        if os.name == "posix":
            os.killpg(proc.pid, sig)
        elif proc.poll() is None:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        pass


def _terminate(proc: subprocess.Popen[bytes]) -> None:
    """SIGTERM the process group, escalating to SIGKILL after a grace period."""
    _signal_group(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=_TERMINATE_GRACE_SEC)
    except subprocess.TimeoutExpired:
        _signal_group(proc, signal.SIGKILL)
        proc.wait()


def _wait(proc: subprocess.Popen[bytes], deadline: float, overflow: threading.Event) -> str:
    while True:
        if overflow.is_set():
            return "overflow"
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return "timeout"
        try:
            proc.wait(timeout=min(remaining, _POLL_INTERVAL_SEC))
            return "exited"
        except subprocess.TimeoutExpired:
            continue


def _signal_name(returncode: int) -> str:
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"signal {-returncode}"


def run_process(
    argv: Sequence[str],
    *,
    cwd: Path | str,
    timeout_ms: int,
    max_output_bytes: int,
    stdin: str | None = None,
    limits: ResourceLimits | None = None,
    env: Mapping[str, str] | None = None,
) -> ProcessResult:
    """Run ``argv`` directly (no shell) with a wall-clock timeout and output cap.

    Notes:
    - The child gets its own session; on timeout or output overflow the whole
      process group is sent SIGTERM, then SIGKILL if it lingers.
    - When ``stdin`` is ``None`` the input pipe is closed immediately, so a
      program waiting for input sees EOF instead of hanging.
    - Raises ``ToolchainNotFoundError`` when ``argv[0]`` cannot be found.
    """
    if not argv:
        raise ValueError("argv must not be empty")

    preexec = _limit_preexec(limits or ResourceLimits())
    start = time.perf_counter()
    try:
        proc = subprocess.Popen(  # nosec: B603 (controlled argv)
            list(argv),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=str(cwd),
            env=dict(env) if env is not None else None,
            text=False,
            preexec_fn=preexec if os.name == "posix" else None,
        )
    except (FileNotFoundError, PermissionError) as exc:
        if exc.filename is not None and str(exc.filename) == str(cwd):
            raise
        logger.info("Toolchain binary %s not found", argv[0])
        raise ToolchainNotFoundError(argv[0]) from exc

    collector = _OutputCollector(max_output_bytes)
    threads = [
        threading.Thread(target=_drain, args=(proc.stdout, "stdout", collector), daemon=True),
        threading.Thread(target=_drain, args=(proc.stderr, "stderr", collector), daemon=True),
    ]
    if stdin is not None:
        threads.append(
            threading.Thread(
                target=_feed_stdin, args=(proc.stdin, stdin.encode("utf-8")), daemon=True
            )
        )
    else:
        proc.stdin.close()  # type: ignore[union-attr]
    for thread in threads:
        thread.start()

    timed_out = False
    truncated = False
    try:
        state = _wait(proc, time.monotonic() + timeout_ms / 1000.0, collector.overflow)
        if state == "timeout":
            timed_out = True
            logger.warning("Process %s timed out after %d ms", argv[0], timeout_ms)
            _terminate(proc)
        elif state == "overflow":
            truncated = True
            logger.warning("Process %s exceeded %d output bytes", argv[0], max_output_bytes)
            _terminate(proc)
    finally:
        # reap the leader and sweep any leftovers in its group
        _signal_group(proc, signal.SIGKILL)
        proc.wait()
        for thread in threads:
            thread.join(timeout=_READER_JOIN_SEC)

    duration_ms = int((time.perf_counter() - start) * 1000)
    truncated = truncated or collector.overflow.is_set()

    returncode = proc.returncode
    exit_code: int | None = None
    signal_name: str | None = None
    if not timed_out:
        if returncode is not None and returncode < 0:
            signal_name = _signal_name(returncode)
        else:
            exit_code = returncode

    return ProcessResult(
        stdout=collector.text("stdout"),
        stderr=collector.text("stderr"),
        exit_code=exit_code,
        signal=signal_name,
        timed_out=timed_out,
        truncated=truncated,
        duration_ms=duration_ms,
    )
