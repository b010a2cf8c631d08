from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


def _int_from_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True, slots=True)
class Settings:
    max_exec_timeout_ms: int = 10_000
    max_output_bytes: int = 64 * 1024  # combined stdout+stderr per step
    cpu_time_limit_sec: int = 10       # RLIMIT_CPU ceiling for child process
    memory_limit_mb: int = 512         # RLIMIT_AS (address space)
    max_processes: int = 256           # RLIMIT_NPROC
    max_concurrent_executions: int = 4
    admission_timeout_ms: int = 2_000
    workspace_root: str | None = None
    log_level: str = "INFO"

    @staticmethod
    def from_env() -> "Settings":
        return Settings(
            max_exec_timeout_ms=_int_from_env("MAX_EXEC_TIMEOUT_MS", 10_000),
            max_output_bytes=_int_from_env("MAX_OUTPUT_BYTES", 64 * 1024),
            cpu_time_limit_sec=_int_from_env("CPU_TIME_LIMIT_SEC", 10),
            memory_limit_mb=_int_from_env("MEMORY_LIMIT_MB", 512),
            max_processes=_int_from_env("MAX_PROCESSES", 256),
            max_concurrent_executions=max(1, _int_from_env("MAX_CONCURRENT_EXECUTIONS", 4)),
            admission_timeout_ms=_int_from_env("ADMISSION_TIMEOUT_MS", 2_000),
            workspace_root=os.environ.get("WORKSPACE_ROOT") or None,
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
