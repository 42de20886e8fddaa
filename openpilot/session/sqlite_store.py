"""SQLite-backed persistence for session store snapshots."""

from __future__ import annotations

import os
import re
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

import platformdirs

from openpilot.domain import RepoRef
from openpilot.session.store import MessageSnapshot, Persister, SessionSnapshot, Snapshot

__all__ = ["SQLitePersister", "Snapshot", "default_db_path"]

_INTEGER = re.compile(r"[+-]?\d+")

_SCHEMA = (
    "PRAGMA foreign_keys = ON;",
    """CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        provider_id TEXT NOT NULL DEFAULT '',
        codex_thread_id TEXT NOT NULL DEFAULT '',
        active_repo_id TEXT NOT NULL DEFAULT '',
        created_at_unix INTEGER NOT NULL,
        sort_order INTEGER NOT NULL
    );""",
    """CREATE TABLE IF NOT EXISTS repos (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        path TEXT NOT NULL,
        label TEXT NOT NULL,
        sort_order INTEGER NOT NULL,
        FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
    );""",
    """CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        timestamp_unix INTEGER NOT NULL,
        provider_id TEXT NOT NULL DEFAULT '',
        repo_id TEXT NOT NULL DEFAULT '',
        streaming INTEGER NOT NULL DEFAULT 0,
        sort_order INTEGER NOT NULL,
        FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
    );""",
    """CREATE TABLE IF NOT EXISTS app_state (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );""",
)


def default_db_path() -> str:
    """Location of the session database inside the user's configuration directory."""
    return os.path.join(platformdirs.user_config_dir(), "open-pilot", "sessions.db")


@contextmanager
def _context(label: str) -> Iterator[None]:
    """Prefix sqlite errors raised inside the block with a short description."""
    try:
        yield
    except sqlite3.Error as exc:
        raise type(exc)(f"{label}: {exc}") from exc


def _connect(path: str) -> sqlite3.Connection:
    connection = sqlite3.connect(path, isolation_level=None, check_same_thread=False)
    try:
        with _context("init sqlite schema"):
            for statement in _SCHEMA:
                connection.execute(statement)
        _ensure_session_column(connection, "codex_thread_id", "TEXT NOT NULL DEFAULT ''")
    except BaseException:
        connection.close()
        raise
    return connection


def _ensure_session_column(connection: sqlite3.Connection, name: str, ddl: str) -> None:
    with _context("inspect sessions schema"):
        columns = {row[1] for row in connection.execute("PRAGMA table_info(sessions)")}
    if name in columns:
        return
    with _context(f"migrate sessions schema ({name})"):
        connection.execute(f"ALTER TABLE sessions ADD COLUMN {name} {ddl}")


class SQLitePersister(Persister):
    """Stores store snapshots in a SQLite database, replacing them wholesale on save.

    A database file that cannot be opened is moved aside and a fresh one is created.
    """

    def __init__(self, path: str | os.PathLike[str] = "") -> None:
        path = os.fspath(path) or default_db_path()
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, mode=0o755, exist_ok=True)
        self.path = path
        self._lock = threading.Lock()
        try:
            self._db = _connect(path)
        except sqlite3.Error as original:
            backup = f"{path}.corrupt.{datetime.now().strftime('%Y%m%dT%H%M%S')}"
            try:
                os.rename(path, backup)
            except OSError:
                pass
            try:
                self._db = _connect(path)
            except sqlite3.Error as exc:
                raise type(exc)(
                    f"open sqlite persistence after recovery: {exc} (original: {original})"
                ) from exc

    def __enter__(self) -> SQLitePersister:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying database connection."""
        with self._lock:
            self._db.close()

    def save(self, snapshot: Snapshot) -> None:
        """Replace everything stored with the given snapshot, atomically."""
        with self._lock:
            db = self._db
            with _context("begin tx"):
                db.execute("BEGIN")
            try:
                self._write(db, snapshot)
            except BaseException:
                try:
                    db.execute("ROLLBACK")
                except sqlite3.Error:
                    pass
                raise
            with _context("commit tx"):
                db.execute("COMMIT")

    @staticmethod
    def _write(db: sqlite3.Connection, snapshot: Snapshot) -> None:
        with _context("clear tables"):
            for table in ("messages", "repos", "sessions"):
                db.execute(f"DELETE FROM {table}")

        for order, session in enumerate(snapshot.sessions):
            with _context("insert session"):
                db.execute(
                    "INSERT INTO sessions(id, name, provider_id, codex_thread_id, "
                    "active_repo_id, created_at_unix, sort_order) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        session.id,
                        session.name,
                        session.provider_id,
                        session.codex_thread_id,
                        session.active_repo_id,
                        session.created_at,
                        order,
                    ),
                )
            with _context("insert repo"):
                db.executemany(
                    "INSERT INTO repos(id, session_id, path, label, sort_order) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [
                        (repo.id, session.id, repo.path, repo.label, position)
                        for position, repo in enumerate(session.repos)
                    ],
                )
            with _context("insert message"):
                db.executemany(
                    "INSERT INTO messages(id, session_id, role, content, timestamp_unix, "
                    "provider_id, repo_id, streaming, sort_order) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    [
                        (
                            m.id,
                            session.id,
                            m.role,
                            m.content,
                            m.timestamp,
                            m.provider_id,
                            m.repo_id,
                            1 if m.streaming else 0,
                            position,
                        )
                        for position, m in enumerate(session.messages)
                    ],
                )

        with _context("upsert app state"):
            db.execute(
                "INSERT INTO app_state(key, value) VALUES('next_id', ?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (str(snapshot.next_id),),
            )

    def load(self) -> Snapshot:
        """Read the stored snapshot; messages are never restored as streaming."""
        with self._lock:
            db = self._db
            snapshot = Snapshot(sessions=[], next_id=1)

            with _context("load app state"):
                row = db.execute("SELECT value FROM app_state WHERE key='next_id'").fetchone()
            if row is not None:
                value = str(row[0])
                if _INTEGER.fullmatch(value) and int(value) > 0:
                    snapshot.next_id = int(value)

            by_id: dict[str, SessionSnapshot] = {}
            with _context("load sessions"):
                rows = db.execute(
                    "SELECT id, name, provider_id, codex_thread_id, active_repo_id, "
                    "created_at_unix FROM sessions ORDER BY sort_order ASC"
                ).fetchall()
            for sid, name, provider_id, thread_id, active_repo_id, created_at in rows:
                by_id[sid] = SessionSnapshot(
                    id=sid,
                    name=name,
                    provider_id=provider_id,
                    codex_thread_id=thread_id,
                    active_repo_id=active_repo_id,
                    created_at=created_at,
                )

            with _context("load repos"):
                rows = db.execute(
                    "SELECT id, session_id, path, label FROM repos ORDER BY sort_order ASC"
                ).fetchall()
            for repo_id, session_id, path, label in rows:
                owner = by_id.get(session_id)
                if owner is not None:
                    owner.repos.append(RepoRef(id=repo_id, path=path, label=label))

            with _context("load messages"):
                rows = db.execute(
                    "SELECT id, session_id, role, content, timestamp_unix, provider_id, repo_id "
                    "FROM messages ORDER BY sort_order ASC"
                ).fetchall()
            for message_id, session_id, role, content, ts, provider_id, repo_id in rows:
                owner = by_id.get(session_id)
                if owner is not None:
                    owner.messages.append(
                        MessageSnapshot(
                            id=message_id,
                            role=role,
                            content=content,
                            timestamp=ts,
                            provider_id=provider_id,
                            repo_id=repo_id,
                            streaming=False,
                        )
                    )

            snapshot.sessions = list(by_id.values())
            return snapshot