"""Adapter that drives the codex command line tool, one process per prompt."""

from __future__ import annotations

import json
import math
import os
import subprocess
import tempfile
import threading
from collections.abc import Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from openpilot.providers.diagnostics import log_provider_diagnostic
from openpilot.providers.events import (
    Adapter,
    Event,
    EventStream,
    EventType,
    PromptRequest,
    SessionHandle,
    StartRequest,
    new_id,
)

CODEX_SCANNER_MAX_TOKEN_SIZE = 8 * 1024 * 1024
PROVIDER = "codex"

_NO_OUTPUT_TYPES = frozenset(
    {"", "thread.started", "turn.started", "turn.completed", "error", "turn.failed"}
)
_STDERR_NOISE = (
    "failed to record rollout items",
    "failed to flush rollout recorder",
    "failed to shutdown rollout recorder",
    "failed to create shell snapshot",
)
_PREVIEW_MARKERS = ("delta", "chunk", "token", "output_text", "message")


def _optional_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string")
    return value


@dataclass(frozen=True)
class CodexJSONEvent:
    """The typed fields of one JSON line printed by codex."""

    type: str = ""
    thread_id: str = ""
    message: str = ""
    delta: str = ""
    text: str = ""
    error_message: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> CodexJSONEvent:
        """Build from a decoded JSON object; raise ValueError on mistyped fields."""
        error = data.get("error")
        if error is None:
            error_message = ""
        elif isinstance(error, dict):
            error_message = _optional_str(error, "message")
        else:
            raise ValueError("field 'error' must be an object")
        return cls(
            type=_optional_str(data, "type"),
            thread_id=_optional_str(data, "thread_id"),
            message=_optional_str(data, "message"),
            delta=_optional_str(data, "delta"),
            text=_optional_str(data, "text"),
            error_message=error_message,
        )


@dataclass
class CodexRunResult:
    """What one codex invocation produced."""

    thread_id: str = ""
    last_message: str = ""
    failure_message: str = ""
    skip_final: bool = False


class _CodexRunError(Exception):
    def __init__(self, message: str, result: CodexRunResult) -> None:
        super().__init__(message)
        self.result = result


@dataclass
class _CodexHandle:
    session_id: str
    repo_path: str
    codex_id: str = ""
    events: EventStream = field(default_factory=EventStream)
    lock: threading.Lock = field(default_factory=threading.Lock)


@dataclass
class _RunState:
    lock: threading.Lock = field(default_factory=threading.Lock)
    last_error_msg: str = ""
    turn_failed_msg: str = ""
    last_stderr_msg: str = ""
    stderr_lines: list[str] = field(default_factory=list)
    stdout_error: Exception | None = None
    stderr_error: Exception | None = None
    streamed: list[str] = field(default_factory=list)


def _iter_lines(stream):
    """Yield decoded lines without their line endings, enforcing the token limit."""
    for raw in stream:
        line = raw.rstrip(b"\n")
        if line.endswith(b"\r"):
            line = line[:-1]
        if len(line) > CODEX_SCANNER_MAX_TOKEN_SIZE:
            raise ValueError("token too long")
        yield line.decode("utf-8", errors="replace")


class CodexCLIAdapter(Adapter):
    """Runs `codex exec` for every prompt, resuming the codex thread when one is known."""

    def __init__(self, binary: str = "codex") -> None:
        self.binary = binary
        self._lock = threading.Lock()
        self._handles: dict[SessionHandle, _CodexHandle] = {}
        self._log_lock = threading.Lock()
        log_path = os.environ.get("OPEN_PILOT_CODEX_DEBUG_LOG", "")
        if not log_path.strip():
            log_path = os.path.join(tempfile.gettempdir(), "open-pilot-codex-debug.log")
        self.log_path = log_path

    def provider_id(self) -> str:
        return PROVIDER

    def start(self, request: StartRequest) -> SessionHandle:
        handle = SessionHandle(new_id("codex"))
        state = _CodexHandle(
            session_id=request.session_id,
            repo_path=request.repo_path,
            codex_id=request.provider_thread_id.strip(),
        )
        with self._lock:
            self._handles[handle] = state
        state.events.put(
            Event(
                type=EventType.READY,
                session_id=request.session_id,
                provider=PROVIDER,
                repo_path=request.repo_path,
                message="codex adapter ready",
            )
        )
        return handle

    def stop(self, handle: SessionHandle) -> None:
        with self._lock:
            state = self._handles.pop(handle, None)
        if state is not None:
            state.events.close()

    def events(self, handle: SessionHandle) -> EventStream:
        with self._lock:
            state = self._handles.get(handle)
        return state.events if state is not None else EventStream.closed_stream()

    def thread_id(self, handle: SessionHandle) -> str:
        """The codex thread the session behind a handle resumes."""
        with self._lock:
            state = self._handles.get(handle)
        if state is None:
            raise LookupError("codex session handle not found")
        with state.lock:
            return state.codex_id

    def send(self, handle: SessionHandle, prompt: PromptRequest) -> None:
        with self._lock:
            state = self._handles.get(handle)
        if state is None:
            raise LookupError("codex session handle not found")
        worker = threading.Thread(target=self._serve_prompt, args=(state, prompt), daemon=True)
        worker.start()

    def _emit(self, state: _CodexHandle, prompt: PromptRequest, event_type: str, **fields) -> None:
        state.events.put(
            Event(
                type=event_type,
                session_id=state.session_id,
                provider=PROVIDER,
                repo_path=prompt.repo_path,
                request_id=prompt.id,
                **fields,
            )
        )

    def _serve_prompt(self, state: _CodexHandle, prompt: PromptRequest) -> None:
        error: BaseException | None = None
        try:
            result = self._run_prompt(
                state,
                prompt,
                lambda chunk: self._emit(state, prompt, EventType.CHUNK, text=chunk),
            )
        except _CodexRunError as exc:
            result = exc.result
            error = exc.__cause__ or exc

        if result.thread_id:
            with state.lock:
                state.codex_id = result.thread_id

        if error is not None:
            message = result.failure_message or "codex exec failed"
            self._emit(state, prompt, EventType.ERROR, message=message, error=error)
            return

        clean = result.last_message.strip()
        if result.skip_final:
            return
        if not clean:
            self._emit(
                state, prompt, EventType.ERROR, message="codex returned no assistant message"
            )
            return
        self._emit(state, prompt, EventType.FINAL, text=clean)

    def _run_prompt(
        self,
        state: _CodexHandle,
        prompt: PromptRequest,
        on_chunk: Callable[[str], None] | None,
    ) -> CodexRunResult:
        result = CodexRunResult()
        with state.lock:
            existing_id = state.codex_id
        if not existing_id:
            existing_id = prompt.provider_thread_id.strip()
        if prompt.disable_resume:
            existing_id = ""

        output_path = ""
        if not existing_id:
            try:
                fd, output_path = tempfile.mkstemp(prefix="open-pilot-codex-last-", suffix=".txt")
                os.close(fd)
            except OSError as exc:
                if output_path:
                    with suppress(OSError):
                        os.remove(output_path)
                raise _CodexRunError(f"create temp output file: {exc}", result) from exc
        try:
            return self._execute(state, prompt, existing_id, output_path, result, on_chunk)
        finally:
            if output_path:
                with suppress(OSError):
                    os.remove(output_path)

    def _execute(
        self,
        state: _CodexHandle,
        prompt: PromptRequest,
        existing_id: str,
        output_path: str,
        result: CodexRunResult,
        on_chunk: Callable[[str], None] | None,
    ) -> CodexRunResult:
        args = codex_args(existing_id, output_path, prompt.text, prompt.repo_path)
        self._log(
            "run",
            f"session={state.session_id} request={prompt.id} repo={prompt.repo_path} "
            f"args={json.dumps(' '.join(args))}",
        )
        try:
            process = subprocess.Popen(
                [self.binary, *args],
                cwd=prompt.repo_path or None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise _CodexRunError(f"start codex: {exc}", result) from exc

        run = _RunState()
        readers = [
            threading.Thread(
                target=self._read_stdout,
                args=(process.stdout, state, prompt, result, run, on_chunk),
                daemon=True,
            ),
            threading.Thread(target=self._read_stderr, args=(process.stderr, run), daemon=True),
        ]
        for reader in readers:
            reader.start()
        # Both pipes are drained before waiting so no output is lost.
        for reader in readers:
            reader.join()
        returncode = process.wait()
        process.stdout.close()
        process.stderr.close()

        if returncode != 0:
            self._log("exit", f"request={prompt.id} err=exit status {returncode}")
        else:
            self._log("exit", f"request={prompt.id} ok")
            if run.stdout_error is not None:
                raise _CodexRunError(
                    f"scan codex stdout: {run.stdout_error}", result
                ) from run.stdout_error
            if run.stderr_error is not None:
                raise _CodexRunError(
                    f"scan codex stderr: {run.stderr_error}", result
                ) from run.stderr_error

        read_error: OSError | None = None
        if output_path:
            try:
                result.last_message = Path(output_path).read_text(encoding="utf-8", errors="replace")
            except OSError as exc:
                read_error = exc
        else:
            result.last_message = "".join(run.streamed)

        if returncode != 0:
            with run.lock:
                failure = summarize_codex_failure(
                    run.turn_failed_msg, run.last_error_msg, run.last_stderr_msg
                )
                if run.stderr_lines:
                    details = "\n".join(run.stderr_lines)
                    if not failure:
                        failure = details
                    elif failure not in details:
                        failure = f"{failure}\n{details}"
            result.failure_message = failure or "codex exec failed"
            self._log("failure", f"request={prompt.id} msg={json.dumps(result.failure_message)}")
            cause = subprocess.CalledProcessError(returncode, [self.binary, *args])
            raise _CodexRunError(str(cause), result) from cause

        if read_error is not None:
            result.failure_message = "failed to read codex output"
            raise _CodexRunError(result.failure_message, result) from read_error

        if not result.last_message.strip() and not result.skip_final:
            result.failure_message = "codex returned no assistant message"
            self._log("failure", f"request={prompt.id} msg={json.dumps(result.failure_message)}")
            raise _CodexRunError(result.failure_message, result)

        streamed_len = sum(len(chunk) for chunk in run.streamed)
        self._log(
            "final",
            f"request={prompt.id} final_len={len(result.last_message.strip())} "
            f"streamed_len={streamed_len}",
        )
        return result

    def _read_stdout(
        self,
        stream,
        state: _CodexHandle,
        prompt: PromptRequest,
        result: CodexRunResult,
        run: _RunState,
        on_chunk: Callable[[str], None] | None,
    ) -> None:
        try:
            for line in _iter_lines(stream):
                self._log("stdout", line)
                trimmed = line.strip()
                parsed = parse_codex_json_line(trimmed)
                if parsed is None:
                    continue
                event, raw = parsed
                with run.lock:
                    self._handle_stdout_event(
                        event, raw, trimmed, state, prompt, result, run, on_chunk
                    )
        except ValueError as exc:
            with run.lock:
                run.stdout_error = exc
            self._log("stdout", f"scan_error={exc}")
            for _ in stream:
                pass

    def _handle_stdout_event(
        self,
        event: CodexJSONEvent,
        raw: dict[str, Any],
        trimmed: str,
        state: _CodexHandle,
        prompt: PromptRequest,
        result: CodexRunResult,
        run: _RunState,
        on_chunk: Callable[[str], None] | None,
    ) -> None:
        if event.type == "thread.started":
            if event.thread_id:
                result.thread_id = event.thread_id.strip()
        elif event.type == "error":
            message = normalize_codex_error_message(event.message)
            if message:
                run.last_error_msg = message
        elif event.type == "turn.failed":
            message = normalize_codex_error_message(event.error_message)
            if message:
                run.turn_failed_msg = message

        normalized = normalize_codex_event(event, raw)
        if normalized is not None and normalized.type:
            if normalized.type == EventType.AGENT_MESSAGE:
                result.skip_final = True
            normalized.session_id = state.session_id
            normalized.provider = PROVIDER
            normalized.repo_path = prompt.repo_path
            normalized.request_id = prompt.id
            state.events.put(normalized)

        chunk = extract_codex_preview_chunk(event, raw)
        if chunk:
            self._log("chunk", f"event_type={event.type} len={len(chunk.encode('utf-8'))}")
            run.streamed.append(chunk)
            if on_chunk is not None:
                on_chunk(chunk)
            return

        if normalized is None and not is_codex_handled_no_output_type(event.type):
            reason = "codex event dropped: no preview/final mapping"
            log_provider_diagnostic(
                PROVIDER, state.session_id, prompt.id, event.type, EventType.UNKNOWN.value,
                reason, trimmed,
            )
            self._emit(
                state,
                prompt,
                EventType.UNKNOWN,
                raw_type=event.type,
                raw_json=trimmed,
                debug_note=reason,
            )

    def _read_stderr(self, stream, run: _RunState) -> None:
        try:
            for line in _iter_lines(stream):
                raw_line = line.strip()
                self._log("stderr", raw_line)
                if not raw_line:
                    continue
                message = normalize_codex_stderr_line(line)
                with run.lock:
                    run.stderr_lines.append(raw_line)
                    if message:
                        run.last_stderr_msg = message
        except ValueError as exc:
            with run.lock:
                run.stderr_error = exc
            self._log("stderr", f"scan_error={exc}")
            for _ in stream:
                pass

    def _log(self, kind: str, text: str) -> None:
        if not self.log_path.strip():
            return
        stamp = datetime.now().astimezone().isoformat()
        entry = f"{stamp} [{kind}] {text}\n"
        with self._log_lock:
            try:
                fd = os.open(self.log_path, os.O_APPEND | os.O_CREAT | os.O_WRONLY, 0o600)
            except OSError:
                return
            with os.fdopen(fd, "a", encoding="utf-8") as handle:
                with suppress(OSError):
                    handle.write(entry)


def codex_args(existing_id: str, output_path: str, prompt: str, repo_path: str) -> list[str]:
    """Command line arguments for one codex invocation."""
    args = ["exec", "--json", "--skip-git-repo-check", "--sandbox", "workspace-write"]
    for directory in codex_writable_dirs(repo_path):
        args += ["--add-dir", directory]
    if existing_id:
        return [*args, "resume", existing_id, prompt]
    return [*args, "--output-last-message", output_path, "--", prompt]


def codex_writable_dirs(repo_path: str) -> list[str]:
    """Extra directories codex may write to, without duplicates, in a stable order."""
    candidates = [tempfile.gettempdir()]
    try:
        home = str(Path.home())
    except (RuntimeError, KeyError):
        home = ""
    if home.strip():
        candidates += [
            os.path.join(home, "go"),
            os.path.join(home, ".cache"),
            os.path.join(home, "Library", "Caches"),
        ]
    candidates += os.environ.get("OPEN_PILOT_CODEX_ADD_DIRS", "").split(os.pathsep)

    dirs: list[str] = []
    for path in candidates:
        path = path.strip()
        if not path:
            continue
        path = os.path.normpath(path)
        if path not in dirs:
            dirs.append(path)
    return dirs


def parse_codex_json_line(line: bytes | str) -> tuple[CodexJSONEvent, dict[str, Any]] | None:
    """Decode one stdout line; None when it is not a typed JSON event."""
    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    trimmed = text.strip()
    if not trimmed.startswith("{"):
        return None
    try:
        raw = json.loads(trimmed)
    except ValueError:
        return None
    if not isinstance(raw, dict):
        return None
    try:
        event = CodexJSONEvent.from_mapping(raw)
    except ValueError:
        return None
    if not event.type:
        return None
    return event, raw


def summarize_codex_failure(turn_failed_msg: str, last_error_msg: str, last_stderr_msg: str) -> str:
    """Pick the most specific failure message available."""
    return turn_failed_msg or last_error_msg or last_stderr_msg or ""


def normalize_codex_error_message(msg: str) -> str:
    """Drop transient reconnect and shutdown noise from error messages."""
    msg = msg.strip()
    if not msg or msg.startswith("Reconnecting..."):
        return ""
    if "failed to shutdown rollout recorder" in msg.lower():
        return ""
    return msg


def normalize_codex_stderr_line(line: str) -> str:
    """Return a stderr line worth reporting, or an empty string for known noise."""
    msg = line.strip()
    if not msg:
        return ""
    lower = msg.lower()
    if any(noise in lower for noise in _STDERR_NOISE):
        return ""
    if lower.startswith("warning: proceeding, even though we could not update path"):
        return ""
    if "warn codex_core::" in lower or "error codex_core::" in lower:
        return ""
    return msg


def extract_codex_preview_chunk(event: CodexJSONEvent, raw: Mapping[str, Any] | None) -> str:
    """Streaming text carried by a preview event, or an empty string."""
    if not is_preview_event_type(event.type):
        return ""
    return event.delta or event.text or find_first_string(raw, "delta", "text")


def extract_completed_agent_message(raw: Mapping[str, Any] | None) -> str:
    """Trimmed text of a completed agent_message item, or an empty string."""
    if not raw or raw.get("type") != "item.completed":
        return ""
    item = raw.get("item")
    if not isinstance(item, dict) or item.get("type") != "agent_message":
        return ""
    text = item.get("text")
    return text.strip() if isinstance(text, str) else ""


def is_preview_event_type(event_type: str) -> bool:
    """Whether an event type carries streaming preview text."""
    kind = event_type.strip().lower()
    if not kind or "error" in kind or "failed" in kind:
        return False
    if kind in ("thread.started", "turn.started", "turn.completed"):
        return False
    return any(marker in kind for marker in _PREVIEW_MARKERS)


def is_codex_handled_no_output_type(event_type: str) -> bool:
    """Whether an event type is consumed without producing output."""
    return event_type.strip().lower() in _NO_OUTPUT_TYPES


def _string_value(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _int_value(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return None


def normalize_codex_event(event: CodexJSONEvent, raw: Mapping[str, Any] | None) -> Event | None:
    """Map a codex event to a normalized event.

    Returns None when the event has no normalized form, and an event with an
    empty type when it is recognised but produces nothing.
    """
    kind = event.type.strip().lower()
    raw = raw or {}
    if kind == "thread.started":
        return Event(
            type=EventType.STATUS,
            message="thread started",
            provider_thread_id=event.thread_id.strip(),
        )
    if kind == "turn.started":
        return Event(type=EventType.STATUS, message="turn started")
    if kind == "turn.completed":
        usage = raw.get("usage")
        usage = usage if isinstance(usage, dict) else {}
        return Event(
            type=EventType.TURN_USAGE,
            usage_input_tokens=_int_value(usage.get("input_tokens")) or 0,
            usage_cached_input_tokens=_int_value(usage.get("cached_input_tokens")) or 0,
            usage_output_tokens=_int_value(usage.get("output_tokens")) or 0,
        )
    if kind not in ("item.started", "item.completed"):
        return None

    item = raw.get("item")
    if not isinstance(item, dict):
        return None
    item_type = _string_value(item.get("type")).strip().lower()
    item_id = _string_value(item.get("id"))
    completed = kind == "item.completed"
    if item_type in ("reasoning", "agent_message"):
        if not completed:
            return Event(type="")
        event_type = EventType.REASONING if item_type == "reasoning" else EventType.AGENT_MESSAGE
        return Event(
            type=event_type,
            item_type=item_type,
            item_id=item_id,
            text=_string_value(item.get("text")).strip(),
        )
    if item_type == "command_execution":
        return Event(
            type=EventType.COMMAND_EXECUTION,
            item_type=item_type,
            item_id=item_id,
            command=_string_value(item.get("command")),
            command_status=_string_value(item.get("status")),
            command_exit_code=_int_value(item.get("exit_code")),
            command_output=_string_value(item.get("aggregated_output")),
        )
    return None


def find_first_string(value: Any, *keys: str) -> str:
    """Depth-first search for the first non-empty string stored under one of keys."""
    if isinstance(value, dict):
        for key in keys:
            found = value.get(key)
            if isinstance(found, str) and found:
                return found
        for nested in value.values():
            found = find_first_string(nested, *keys)
            if found:
                return found
    elif isinstance(value, list):
        for nested in value:
            found = find_first_string(nested, *keys)
            if found:
                return found
    return ""