"""Coordinates provider adapters and merges their events into one stream."""

from __future__ import annotations

import queue
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, replace

from openpilot.providers.codex import CodexCLIAdapter
from openpilot.providers.events import (
    Adapter,
    Event,
    EventStream,
    EventType,
    PromptRequest,
    SessionHandle,
    StartRequest,
)
from openpilot.providers.process import ProcessAdapter, ProviderConfig

DEFAULT_STARTUP_TIMEOUT = 10.0
_SEPARATOR = "\x00"


@dataclass
class SendOptions:
    """Per-prompt options."""

    provider_thread_id: str = ""
    disable_resume: bool = False


class ProviderManager:
    """Starts provider sessions on demand and forwards their events."""

    def __init__(self, providers: Mapping[str, ProviderConfig] | None = None) -> None:
        self._lock = threading.RLock()
        self._configs: dict[str, ProviderConfig] = dict(providers or {})
        self._adapters: dict[str, Adapter] = {}
        self._handles: dict[str, SessionHandle] = {}
        self._events = EventStream()

    def set_provider_config(self, provider_id: str, config: ProviderConfig) -> None:
        """Replace a provider's configuration; its adapter is rebuilt on next use."""
        with self._lock:
            self._configs[provider_id] = config
            self._adapters.pop(provider_id, None)

    def adapter_for(self, provider_id: str) -> tuple[Adapter, ProviderConfig]:
        """Return the adapter for a provider and its configuration, creating it if needed."""
        with self._lock:
            if provider_id not in self._configs:
                raise LookupError(f'provider "{provider_id}" is not configured')
            cfg = self._configs[provider_id]
            adapter = self._adapters.get(provider_id)
            if adapter is not None:
                return adapter, cfg
            cfg = replace(cfg, id=provider_id)
            if provider_id == "codex":
                binary = cfg.command
                if binary in ("", "open-pilot-codex-wrapper"):
                    binary = "codex"
                adapter = CodexCLIAdapter(binary)
            else:
                adapter = ProcessAdapter(cfg)
            self._adapters[provider_id] = adapter
            return adapter, cfg

    def send_prompt(
        self,
        provider_id: str,
        session_id: str,
        repo_path: str,
        request_id: str,
        prompt: str,
        options: SendOptions | None = None,
    ) -> None:
        """Send a prompt, starting the provider session for this repo if needed."""
        if not provider_id or not session_id or not repo_path:
            raise ValueError("provider, session, and repo path are required")
        options = options or SendOptions()

        with self._lock:
            adapter, cfg = self.adapter_for(provider_id)
            key = handle_key(provider_id, session_id, repo_path)
            handle = self._handles.get(key)
            if handle is None:
                handle = adapter.start(
                    StartRequest(
                        session_id=session_id,
                        provider=provider_id,
                        repo_path=repo_path,
                        provider_thread_id=options.provider_thread_id,
                    )
                )
                stream = adapter.events(handle)
                timeout = cfg.startup_timeout if cfg.startup_timeout > 0 else DEFAULT_STARTUP_TIMEOUT
                try:
                    wait_ready(stream, timeout)
                except BaseException:
                    adapter.stop(handle)
                    raise
                self._handles[key] = handle
                self._events.put(
                    Event(
                        type=EventType.READY,
                        session_id=session_id,
                        provider=provider_id,
                        repo_path=repo_path,
                        message="provider ready",
                    )
                )
                threading.Thread(
                    target=self._forward_events, args=(stream, key), daemon=True
                ).start()

        adapter.send(
            handle,
            PromptRequest(
                id=request_id,
                session_id=session_id,
                text=prompt,
                repo_path=repo_path,
                provider_thread_id=options.provider_thread_id,
                disable_resume=options.disable_resume,
            ),
        )

    def events(self) -> EventStream:
        """The merged event stream of every provider session."""
        return self._events

    def stop_all(self) -> None:
        """Stop every running session; re-raise the first failure after trying all."""
        with self._lock:
            entries = []
            for key, handle in self._handles.items():
                try:
                    provider_id, _, _ = parse_handle_key(key)
                except ValueError:
                    continue
                adapter = self._adapters.get(provider_id)
                if adapter is not None:
                    entries.append((adapter, handle))

        first_error: Exception | None = None
        for adapter, handle in entries:
            try:
                adapter.stop(handle)
            except Exception as exc:  # noqa: BLE001 - keep stopping the rest
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error

    def _forward_events(self, stream: EventStream, key: str) -> None:
        for event in stream:
            self._events.put(event)
        with self._lock:
            self._handles.pop(key, None)


def handle_key(provider_id: str, session_id: str, repo_path: str) -> str:
    """Key identifying one provider session for one repository."""
    return _SEPARATOR.join((provider_id, session_id, repo_path))


def parse_handle_key(key: str) -> tuple[str, str, str]:
    """Split a handle key into provider id, session id and repo path."""
    parts = key.split(_SEPARATOR)
    if len(parts) != 3:
        raise ValueError("invalid handle key")
    return parts[0], parts[1], parts[2]


def wait_ready(events: EventStream, timeout: float) -> None:
    """Consume events until a ready event; raise on timeout or end of stream."""
    deadline = time.monotonic() + timeout
    while True:
        remaining = max(deadline - time.monotonic(), 0.0)
        try:
            event = events.get(timeout=remaining)
        except queue.Empty:
            raise TimeoutError("provider startup timeout") from None
        if event is None:
            raise RuntimeError("provider closed before ready")
        if event.type == EventType.READY:
            return