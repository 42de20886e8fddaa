"""Core data types shared across the application: transcript messages and sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Author of a transcript entry."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class Message:
    """One transcript entry."""

    id: str
    role: str
    content: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    provider_id: str = ""
    repo_id: str = ""
    streaming: bool = False


@dataclass
class RepoRef:
    """A repository attached to a session."""

    id: str
    path: str
    label: str = ""


@dataclass
class Session:
    """Provider context and message history for one working session."""

    id: str
    name: str = ""
    provider_id: str = ""
    codex_thread_id: str = ""
    auto_review_loop_enabled: bool = False
    repos: list[RepoRef] = field(default_factory=list)
    active_repo_id: str = ""
    hooks_blocked: bool = False
    hooks_block_reason: str = ""
    last_hook_run_at: datetime | None = None
    messages: list[Message] = field(default_factory=list)
    created_at: datetime | None = None