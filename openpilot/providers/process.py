"""Adapter for provider wrapper processes that speak JSON lines over stdio."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
import threading
from collections.abc import Iterator
from contextlib import suppress
from dataclasses import dataclass, field
from typing import IO, Any

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
    parse_wrapper_event,
)

MAX_LINE_SIZE = 64 * 1024


@dataclass
class ProviderConfig:
    """How to launch one provider; startup_timeout is in seconds, 0 for the default."""

    id: str = ""
    command: str = ""
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    startup_timeout: float = 0.0


@dataclass
class _ProcessHandle:
    session_id: str
    repo_path: str
    process: subprocess.Popen
    events: EventStream = field(default_factory=EventStream)
    wait_done: threading.Event = field(default_factory=threading.Event)
    stdin_lock: threading.Lock = field(default_factory=threading.Lock)
    readers: list[threading.Thread] = field(default_factory=list)


def _lines(stream: IO[bytes]) -> Iterator[str]:
    """Yield decoded lines without line endings; raise ValueError on oversized lines."""
    for raw in stream:
        line = raw.rstrip(b"\n")
        if line.endswith(b"\r"):
            line = line[:-1]
        if len(line) > MAX_LINE_SIZE:
            raise ValueError("token too long")
        yield line.decode("utf-8", errors="replace")


def _drain(stream: IO[bytes]) -> None:
    with suppress(OSError, ValueError):
        for _ in stream:
            pass


class ProcessAdapter(Adapter):
    """Runs one long-lived wrapper process per session and relays its JSON events."""

    def __init__(self, config: ProviderConfig) -> None:
        self.config = config
        self._lock = threading.Lock()
        self._handles: dict[SessionHandle, _ProcessHandle] = {}

    def provider_id(self) -> str:
        return self.config.id

    def start(self, request: StartRequest) -> SessionHandle:
        cfg = self.config
        if not request.repo_path:
            raise ValueError("repo path is required")
        if not cfg.command:
            raise ValueError(f"provider {cfg.id} command is not configured")
        if shutil.which(cfg.command) is None:
            raise FileNotFoundError(
                f'provider {cfg.id} command "{cfg.command}" not found in PATH'
            )

        env = dict(os.environ)
        env.update(cfg.env)
        try:
            process = subprocess.Popen(
                [cfg.command, *cfg.args],
                cwd=request.repo_path,
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise OSError(f"start provider process: {exc}") from exc

        handle = SessionHandle(new_id("handle"))
        proc = _ProcessHandle(
            session_id=request.session_id, repo_path=request.repo_path, process=process
        )
        with self._lock:
            self._handles[handle] = proc

        proc.readers = [
            threading.Thread(target=self._read_stdout, args=(proc,), daemon=True),
            threading.Thread(target=self._read_stderr, args=(proc,), daemon=True),
        ]
        for reader in proc.readers:
            reader.start()
        threading.Thread(target=self._wait_process, args=(handle, proc), daemon=True).start()
        return handle

    def stop(self, handle: SessionHandle) -> None:
        with self._lock:
            proc = self._handles.get(handle)
        if proc is None:
            return
        with suppress(OSError):
            self._send_control(proc, {"type": "shutdown"})
        with suppress(OSError):
            proc.process.kill()
        proc.wait_done.wait()

    def send(self, handle: SessionHandle, prompt: PromptRequest) -> None:
        with self._lock:
            proc = self._handles.get(handle)
        if proc is None:
            raise LookupError("provider handle not found")
        self._send_control(
            proc,
            {
                "type": "prompt",
                "id": prompt.id,
                "text": prompt.text,
                "repo_path": prompt.repo_path,
                "session_id": prompt.session_id,
            },
        )

    def events(self, handle: SessionHandle) -> EventStream:
        with self._lock:
            proc = self._handles.get(handle)
        return proc.events if proc is not None else EventStream.closed_stream()

    @staticmethod
    def _send_control(proc: _ProcessHandle, payload: dict[str, Any]) -> None:
        data = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        try:
            with proc.stdin_lock:
                proc.process.stdin.write((data + "\n").encode("utf-8"))
                proc.process.stdin.flush()
        except (OSError, ValueError) as exc:
            raise OSError(f"write provider control message: {exc}") from exc

    def _event(self, proc: _ProcessHandle, event_type: str, **fields: Any) -> Event:
        return Event(
            type=event_type,
            session_id=proc.session_id,
            provider=self.config.id,
            repo_path=proc.repo_path,
            **fields,
        )

    def _read_stdout(self, proc: _ProcessHandle) -> None:
        stream = proc.process.stdout
        try:
            for line in _lines(stream):
                try:
                    event = parse_wrapper_event(line)
                except ValueError as exc:
                    log_provider_diagnostic(
                        self.config.id, proc.session_id, "", "", EventType.ERROR.value,
                        "invalid wrapper JSON event", line,
                    )
                    proc.events.put(
                        self._event(
                            proc, EventType.ERROR, message="invalid provider JSON event", error=exc
                        )
                    )
                    continue
                event.session_id = proc.session_id
                event.provider = self.config.id
                event.repo_path = proc.repo_path
                if event.type == EventType.UNKNOWN:
                    log_provider_diagnostic(
                        self.config.id, proc.session_id, event.request_id, event.raw_type,
                        EventType.UNKNOWN.value, event.debug_note, event.raw_json,
                    )
                proc.events.put(event)
        except (ValueError, OSError) as exc:
            proc.events.put(
                self._event(proc, EventType.ERROR, message="provider stdout read error", error=exc)
            )
            _drain(stream)

    def _read_stderr(self, proc: _ProcessHandle) -> None:
        stream = proc.process.stderr
        try:
            for line in _lines(stream):
                proc.events.put(self._event(proc, EventType.STATUS, message=line))
        except (ValueError, OSError):
            _drain(stream)

    def _wait_process(self, handle: SessionHandle, proc: _ProcessHandle) -> None:
        returncode = proc.process.wait()
        for reader in proc.readers:
            reader.join()
        error = (
            subprocess.CalledProcessError(returncode, proc.process.args) if returncode else None
        )
        proc.events.put(
            self._event(proc, EventType.EXITED, message="provider process exited", error=error)
        )
        with self._lock:
            self._handles.pop(handle, None)
        for pipe in (proc.process.stdin, proc.process.stdout, proc.process.stderr):
            with suppress(OSError):
                pipe.close()
        proc.events.close()
        proc.wait_done.set()