"""Runs configured shell hooks for lifecycle triggers."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol


class HookDefinition(Protocol):
    """Shape of one configured hook."""

    id: str
    execute: Sequence[str]
    timeout: float | timedelta | None
    env: Mapping[str, str] | None
    source_path: str


class HookCatalog(Protocol):
    """Source of hooks for a trigger."""

    def hooks_for(self, trigger: Any) -> Iterable[HookDefinition]: ...


@dataclass(frozen=True)
class ProgressUpdate:
    hook_id: str
    status: str
    completed: int
    total: int


@dataclass
class HookResult:
    hook_id: str
    passed: bool = False
    reason: str = ""


@dataclass
class RunResult:
    passed: bool = True
    hooks_matched: int = 0
    failed_hook_id: str = ""
    failed_command_index: int = 0
    reason: str = ""
    hook_load_error: str = ""
    per_hook_results: list[HookResult] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None


def _seconds(timeout: float | timedelta | None) -> float | None:
    if isinstance(timeout, timedelta):
        return timeout.total_seconds()
    return timeout


def _run_command(command: str, timeout: float | None, env: dict[str, str]) -> str | None:
    """Run one hook command; return a failure reason or None on success."""
    try:
        completed = subprocess.run(
            ["bash", "-lc", command], env=env, timeout=timeout, check=False
        )
    except subprocess.TimeoutExpired:
        return "timeout"
    except OSError:
        return "start error"
    if completed.returncode != 0:
        code = completed.returncode if completed.returncode >= 0 else -1
        return f"exit={code}"
    return None


def _apply(env: dict[str, str], assignments: Iterable[str]) -> None:
    for assignment in assignments:
        key, _, value = assignment.partition("=")
        env[key] = value


class HookService:
    """Executes the hooks a catalog assigns to a trigger, stopping at the first failure."""

    def __init__(
        self, catalog: HookCatalog | None, load_error: str = "", builtin_skills_dir: str = ""
    ) -> None:
        self.catalog = catalog
        self.load_error = load_error
        self.builtin_skills_dir = builtin_skills_dir

    def run(
        self,
        trigger: Any,
        session_id: str = "",
        session_name: str = "",
        repo_path: str = "",
        on_update: Callable[[ProgressUpdate], None] | None = None,
    ) -> RunResult:
        result = RunResult(hook_load_error=self.load_error, started_at=datetime.now())
        if self.load_error:
            result.passed = False
            result.reason = "hook configuration error: " + self.load_error
            result.completed_at = datetime.now()
            return result

        hooks = list(self.catalog.hooks_for(trigger)) if self.catalog is not None else []
        total = result.hooks_matched = len(hooks)

        def notify(hook_id: str, status: str, completed: int) -> None:
            if on_update is not None:
                on_update(ProgressUpdate(hook_id, status, completed, total))

        for position, hook in enumerate(hooks):
            notify(hook.id, "running", position)
            env = dict(os.environ)
            _apply(
                env,
                runtime_env(
                    session_id,
                    session_name,
                    repo_path,
                    self.builtin_skills_dir,
                    getattr(hook, "source_path", "") or "",
                ),
            )
            _apply(env, env_to_list(getattr(hook, "env", None)))
            timeout = _seconds(getattr(hook, "timeout", None))

            for command_number, command in enumerate(hook.execute, start=1):
                reason = _run_command(command, timeout, env)
                if reason is None:
                    continue
                result.per_hook_results.append(HookResult(hook.id, False, reason))
                result.passed = False
                result.failed_hook_id = hook.id
                result.failed_command_index = command_number
                result.reason = reason
                notify(hook.id, reason, position + 1)
                result.completed_at = datetime.now()
                return result

            result.per_hook_results.append(HookResult(hook.id, True))
            notify(hook.id, "passed", position + 1)

        result.completed_at = datetime.now()
        return result


def runtime_env(
    session_id: str,
    session_name: str,
    repo_path: str,
    builtin_skills_dir: str,
    hook_source_path: str,
) -> list[str]:
    """Environment assignments describing the session a hook runs for."""
    pairs = [
        ("OPEN_PILOT_SESSION_ID", session_id),
        ("OPEN_PILOT_SESSION_NAME", session_name),
        ("OPEN_PILOT_REPO_PATH", repo_path),
        ("OPEN_PILOT_BUILTIN_SKILLS_DIR", builtin_skills_dir),
        ("OPEN_PILOT_HOOK_SOURCE_PATH", hook_source_path),
    ]
    return [f"{key}={value}" for key, value in pairs if value]


def env_to_list(env: Mapping[str, str] | None) -> list[str]:
    """Render a mapping as KEY=VALUE assignments sorted by key."""
    if not env:
        return []
    return [f"{key}={env[key]}" for key in sorted(env)]