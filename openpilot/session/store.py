"""In-memory session state with optional snapshot persistence."""

from __future__ import annotations

import os
import re
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime

from openpilot.domain import Message, RepoRef, Role, Session

_NUMERIC = re.compile(r"[+-]?\d+")


@dataclass
class MessageSnapshot:
    """A persistence-safe transcript entry; timestamps are Unix seconds."""

    id: str
    role: str
    content: str = ""
    timestamp: int = 0
    provider_id: str = ""
    repo_id: str = ""
    streaming: bool = False


@dataclass
class SessionSnapshot:
    """A persistence-safe session; created_at is Unix seconds."""

    id: str
    name: str = ""
    provider_id: str = ""
    codex_thread_id: str = ""
    auto_review_loop_enabled: bool = False
    active_repo_id: str = ""
    created_at: int = 0
    repos: list[RepoRef] = field(default_factory=list)
    messages: list[MessageSnapshot] = field(default_factory=list)


@dataclass
class Snapshot:
    """Everything needed to restore a store."""

    sessions: list[SessionSnapshot] = field(default_factory=list)
    next_id: int = 0


class Persister(ABC):
    """Persists and restores store snapshots."""

    @abstractmethod
    def load(self) -> Snapshot:
        """Return the stored snapshot."""

    @abstractmethod
    def save(self, snapshot: Snapshot) -> None:
        """Replace the stored snapshot."""


def normalize_repo_path(path: str) -> str:
    """Return an absolute, cleaned form of a repository path."""
    if path == "":
        raise ValueError("repo path cannot be empty")
    if not os.path.isabs(path):
        path = os.path.join(os.getcwd(), path)
    return os.path.normpath(path)


def _unix(moment: datetime | None) -> int:
    return int(moment.timestamp()) if moment is not None else 0


def _max_numeric_id(identifier: str) -> int:
    last = identifier.split("-")[-1]
    return int(last) if _NUMERIC.fullmatch(last) else 0


def _display_name(session: Session) -> str:
    return session.name.strip() or session.id


class Store:
    """Sessions, their repositories and transcripts."""

    def __init__(
        self,
        persister: Persister | None = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.sessions: dict[str, Session] = {}
        self.session_order: list[str] = []
        self.active_session_id = ""
        self._next_id = 1
        self._now = now
        self._persister = persister
        self._persistence_error = ""
        self._error_latched = False
        if persister is not None:
            try:
                self.apply_snapshot(persister.load())
            except Exception as exc:  # noqa: BLE001 - any load failure disables persistence
                self._persistence_error = f"Session persistence disabled: {exc}"
                self._error_latched = True
                self._persister = None

    def take_persistence_warning(self) -> str:
        """Return the pending persistence warning and clear it."""
        message, self._persistence_error = self._persistence_error, ""
        return message

    def active_session(self) -> Session | None:
        if not self.active_session_id:
            return None
        return self.sessions.get(self.active_session_id)

    def next_id(self, prefix: str) -> str:
        identifier = f"{prefix}-{self._next_id}"
        self._next_id += 1
        return identifier

    def now(self) -> datetime:
        return self._now()

    def create_session(self, name: str) -> Session:
        session_id = str(uuid.uuid4())
        session = Session(id=session_id, name=name.strip(), created_at=self.now())
        self.sessions[session_id] = session
        self.session_order.append(session_id)
        self.active_session_id = session_id
        self._save_if_enabled()
        return session

    def use_session(self, selector: str) -> bool:
        """Activate a session by id or unique name; False if none matches."""
        match = self._resolve_session_selector(selector)
        if match is None:
            return False
        self.active_session_id = match
        self._save_if_enabled()
        return True

    def delete_session(self, selector: str) -> bool:
        """Delete a session by id or unique name; False if none matches."""
        match = self._resolve_session_selector(selector)
        if match is None:
            return False
        del self.sessions[match]
        self.session_order = [sid for sid in self.session_order if sid != match]
        if self.active_session_id == match:
            self.active_session_id = ""
        self._save_if_enabled()
        return True

    def has_session_name(self, name: str) -> bool:
        name = name.strip()
        if not name:
            return False
        wanted = name.casefold()
        return any(s.name.strip().casefold() == wanted for s in self.sessions.values())

    def _resolve_session_selector(self, selector: str) -> str | None:
        selector = selector.strip()
        if not selector:
            return None
        if selector in self.sessions:
            return selector
        wanted = selector.casefold()
        matches = [
            sid for sid, s in self.sessions.items() if s.name.strip().casefold() == wanted
        ]
        return matches[0] if len(matches) == 1 else None

    def _require_active(self) -> Session:
        active = self.active_session()
        if active is None:
            raise LookupError("no active session")
        return active

    def add_repo_to_active_session(self, path: str = "", label: str = "") -> RepoRef:
        """Attach a repository to the active session; the cwd when path is blank."""
        active = self._require_active()
        if not path.strip():
            path = os.getcwd()
        normalized = normalize_repo_path(path)
        repo = RepoRef(
            id=self.next_id("repo"),
            path=normalized,
            label=label or os.path.basename(normalized) or normalized,
        )
        active.repos.append(repo)
        if not active.active_repo_id:
            active.active_repo_id = repo.id
        self._save_if_enabled()
        return repo

    def set_auto_review_loop_enabled_for_active_session(self, enabled: bool) -> None:
        active = self._require_active()
        active.auto_review_loop_enabled = enabled
        self._save_if_enabled()

    def set_active_repo(self, repo_id: str) -> None:
        active = self._require_active()
        if not any(repo.id == repo_id for repo in active.repos):
            raise LookupError(f"repo not found: {repo_id}")
        active.active_repo_id = repo_id
        self._save_if_enabled()

    def active_repo(self) -> RepoRef | None:
        active = self.active_session()
        if active is None or not active.active_repo_id:
            return None
        return next((r for r in active.repos if r.id == active.active_repo_id), None)

    def _append(self, session: Session, message: Message) -> int:
        session.messages.append(message)
        self._save_if_enabled()
        return len(session.messages) - 1

    def add_system_message(self, text: str) -> None:
        active = self.active_session()
        if active is None:
            return
        self._append(
            active,
            Message(id=self.next_id("msg"), role=Role.SYSTEM.value, content=text, timestamp=self.now()),
        )

    def append_user_message(self, provider_id: str, repo_id: str, text: str) -> None:
        active = self.active_session()
        if active is None:
            return
        self._append(
            active,
            Message(
                id=self.next_id("msg"),
                role=Role.USER.value,
                content=text,
                timestamp=self.now(),
                provider_id=provider_id,
                repo_id=repo_id,
            ),
        )

    def append_assistant_streaming(self, provider_id: str, repo_id: str) -> int | None:
        """Open an empty streaming assistant message; return its index."""
        active = self.active_session()
        if active is None:
            return None
        return self._append(
            active,
            Message(
                id=self.next_id("msg"),
                role=Role.ASSISTANT.value,
                content="",
                timestamp=self.now(),
                provider_id=provider_id,
                repo_id=repo_id,
                streaming=True,
            ),
        )

    def add_assistant_message(self, session_id: str, text: str) -> None:
        self.append_assistant_message(session_id, text)

    def append_system_message(self, session_id: str, text: str) -> int | None:
        session = self.sessions.get(session_id)
        if session is None:
            return None
        return self._append(
            session,
            Message(id=self.next_id("msg"), role=Role.SYSTEM.value, content=text, timestamp=self.now()),
        )

    def append_assistant_message(self, session_id: str, text: str) -> int | None:
        session = self.sessions.get(session_id)
        if session is None:
            return None
        return self._append(
            session,
            Message(
                id=self.next_id("msg"), role=Role.ASSISTANT.value, content=text, timestamp=self.now()
            ),
        )

    def _message_at(self, session_id: str, index: int) -> Session | None:
        session = self.sessions.get(session_id)
        if session is None or not 0 <= index < len(session.messages):
            return None
        return session

    def replace_message_at(self, session_id: str, index: int, text: str) -> bool:
        session = self._message_at(session_id, index)
        if session is None:
            return False
        session.messages[index] = replace(session.messages[index], content=text, streaming=False)
        self._save_if_enabled()
        return True

    def delete_message_at(self, session_id: str, index: int) -> bool:
        session = self._message_at(session_id, index)
        if session is None:
            return False
        del session.messages[index]
        self._save_if_enabled()
        return True

    def finalize_at(self, session_id: str, index: int, text: str) -> bool:
        """End streaming at an index, replacing the content when text is not blank."""
        session = self._message_at(session_id, index)
        if session is None:
            return False
        message = session.messages[index]
        content = text if text.strip() else message.content
        session.messages[index] = replace(message, content=content, streaming=False)
        self._save_if_enabled()
        return True

    def append_chunk_at(self, session_id: str, index: int, chunk: str) -> bool:
        session = self._message_at(session_id, index)
        if session is None:
            return False
        message = session.messages[index]
        session.messages[index] = replace(message, content=message.content + chunk)
        self._save_if_enabled()
        return True

    def add_session_system_message(self, session_id: str, text: str) -> None:
        self.append_system_message(session_id, text)

    def list_sessions_text(self) -> str:
        if not self.session_order:
            return "No sessions"
        lines = []
        for sid in self.session_order:
            session = self.sessions.get(sid)
            if session is None:
                continue
            line = _display_name(session)
            if sid == self.active_session_id:
                line += " (active)"
            lines.append(line)
        return "\n".join(lines)

    def list_repos_text(self) -> str:
        active = self.active_session()
        if active is None:
            return "No active session"
        if not active.repos:
            return "No repos in session"
        lines = []
        for repo in active.repos:
            line = f"{repo.id} {repo.label} -> {repo.path}"
            if repo.id == active.active_repo_id:
                line += " (active)"
            lines.append(line)
        return "\n".join(lines)

    def session_ids(self) -> list[str]:
        return list(self.session_order)

    def session_names(self) -> list[str]:
        return [
            _display_name(self.sessions[sid]) for sid in self.session_order if sid in self.sessions
        ]

    def active_repo_ids(self) -> list[str]:
        active = self.active_session()
        if active is None:
            return []
        return [repo.id for repo in active.repos]

    def _save_if_enabled(self) -> None:
        if self._persister is None:
            return
        try:
            self._persister.save(self.snapshot())
        except Exception as exc:  # noqa: BLE001 - save failures become a warning
            if not self._error_latched:
                self._persistence_error = f"Session persistence warning: {exc}"
                self._error_latched = True
            return
        self._error_latched = False

    def snapshot(self) -> Snapshot:
        snap = Snapshot(next_id=self._next_id)
        for sid in self.session_order:
            session = self.sessions.get(sid)
            if session is None:
                continue
            snap.sessions.append(
                SessionSnapshot(
                    id=session.id,
                    name=session.name,
                    provider_id=session.provider_id,
                    codex_thread_id=session.codex_thread_id,
                    auto_review_loop_enabled=session.auto_review_loop_enabled,
                    active_repo_id=session.active_repo_id,
                    created_at=_unix(session.created_at),
                    repos=[replace(repo) for repo in session.repos],
                    messages=[
                        MessageSnapshot(
                            id=m.id,
                            role=m.role,
                            content=m.content,
                            timestamp=_unix(m.timestamp),
                            provider_id=m.provider_id,
                            repo_id=m.repo_id,
                            streaming=m.streaming,
                        )
                        for m in session.messages
                    ],
                )
            )
        return snap

    def apply_snapshot(self, snapshot: Snapshot) -> None:
        """Replace all state with a snapshot; no session is left active."""
        self.sessions = {}
        self.session_order = []
        self.active_session_id = ""
        max_id = 0
        for item in snapshot.sessions:
            session = Session(
                id=item.id,
                name=item.name,
                provider_id=item.provider_id,
                codex_thread_id=item.codex_thread_id,
                auto_review_loop_enabled=item.auto_review_loop_enabled,
                active_repo_id=item.active_repo_id,
                created_at=datetime.fromtimestamp(item.created_at),
                repos=[replace(repo) for repo in item.repos],
                messages=[
                    Message(
                        id=m.id,
                        role=m.role,
                        content=m.content,
                        timestamp=datetime.fromtimestamp(m.timestamp),
                        provider_id=m.provider_id,
                        repo_id=m.repo_id,
                        streaming=False,
                    )
                    for m in item.messages
                ],
            )
            self.sessions[session.id] = session
            self.session_order.append(session.id)
            ids = [session.id, *(r.id for r in session.repos), *(m.id for m in session.messages)]
            max_id = max(max_id, *(_max_numeric_id(i) for i in ids))

        if snapshot.next_id > 0:
            self._next_id = snapshot.next_id
        else:
            self._next_id = max(max_id + 1, 1)