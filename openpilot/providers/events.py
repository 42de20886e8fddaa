"""Normalized provider events, event streams and the adapter interface."""

from __future__ import annotations

import itertools
import json
import queue
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from typing import NewType

SessionHandle = NewType("SessionHandle", str)


class EventType(str, Enum):
    """Kinds of normalized provider events."""

    READY = "ready"
    CHUNK = "chunk"
    FINAL = "final"
    ERROR = "error"
    STATUS = "status"
    EXITED = "exited"
    UNKNOWN = "unknown"
    REASONING = "reasoning"
    COMMAND_EXECUTION = "command_execution"
    AGENT_MESSAGE = "agent_message"
    TURN_USAGE = "turn.usage"


_KNOWN_TYPES = frozenset(t.value for t in EventType if t is not EventType.UNKNOWN)


@dataclass
class Event:
    """A normalized provider event."""

    type: str
    session_id: str = ""
    provider: str = ""
    repo_path: str = ""
    request_id: str = ""
    text: str = ""
    message: str = ""
    raw_type: str = ""
    raw_json: str = ""
    debug_note: str = ""
    item_type: str = ""
    item_id: str = ""
    command: str = ""
    command_status: str = ""
    command_exit_code: int | None = None
    command_output: str = ""
    provider_thread_id: str = ""
    usage_input_tokens: int = 0
    usage_cached_input_tokens: int = 0
    usage_output_tokens: int = 0
    error: BaseException | None = None


@dataclass
class StartRequest:
    """Input for starting a provider session."""

    session_id: str
    provider: str
    repo_path: str
    provider_thread_id: str = ""


@dataclass
class PromptRequest:
    """One user prompt bound to a target repository."""

    id: str
    session_id: str
    text: str
    repo_path: str
    provider_thread_id: str = ""
    disable_resume: bool = False


class EventStream:
    """A thread-safe, closable queue of events.

    Once closed, every reader sees the end of the stream; events put after
    closing are dropped.
    """

    _END = object()

    def __init__(self) -> None:
        self._queue: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def closed_stream(cls) -> EventStream:
        stream = cls()
        stream.close()
        return stream

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: Event) -> bool:
        """Queue an event; return False if the stream is already closed."""
        with self._lock:
            if self._closed:
                return False
            self._queue.put(event)
            return True

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(self._END)

    def get(self, timeout: float | None = None) -> Event | None:
        """Return the next event, or None once the stream has ended.

        Raises queue.Empty if no event arrives within the timeout.
        """
        item = self._queue.get(timeout=timeout)
        if item is self._END:
            self._queue.put(self._END)
            return None
        return item

    def __iter__(self) -> Iterator[Event]:
        while (event := self.get()) is not None:
            yield event


class Adapter(ABC):
    """Provider process lifecycle and IO."""

    @abstractmethod
    def provider_id(self) -> str:
        """Identifier of the provider this adapter serves."""

    @abstractmethod
    def start(self, request: StartRequest) -> SessionHandle:
        """Start a provider session and return its handle."""

    @abstractmethod
    def stop(self, handle: SessionHandle) -> None:
        """Stop the session behind a handle; unknown handles are ignored."""

    @abstractmethod
    def send(self, handle: SessionHandle, prompt: PromptRequest) -> None:
        """Send a prompt to a running session."""

    @abstractmethod
    def events(self, handle: SessionHandle) -> EventStream:
        """Event stream of a session; an ended stream for unknown handles."""


def _string_field(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"field {key!r} must be a string")
    return value


def parse_wrapper_event(line: bytes | str) -> Event:
    """Parse one JSON line emitted by a provider wrapper process."""
    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid event JSON: {exc}") from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("event JSON must be an object")

    event_type = _string_field(data, "type")
    request_id = _string_field(data, "id")
    body = _string_field(data, "text")
    message = _string_field(data, "message")
    if not event_type:
        raise ValueError("missing event type")
    if is_known_event_type(event_type):
        return Event(
            type=EventType(event_type), request_id=request_id, text=body, message=message
        )
    return Event(
        type=EventType.UNKNOWN,
        request_id=request_id,
        text=body,
        message=message,
        raw_type=event_type,
        raw_json=text,
        debug_note="wrapper event type not recognized",
    )


def is_known_event_type(event_type: str) -> bool:
    """Whether a wrapper may emit this event type directly."""
    return event_type in _KNOWN_TYPES


_id_counter = itertools.count(1)
_id_lock = threading.Lock()


def new_id(prefix: str) -> str:
    """Return a process-unique identifier such as 'prefix-7'."""
    with _id_lock:
        n = next(_id_counter)
    return f"{prefix}-{n}"