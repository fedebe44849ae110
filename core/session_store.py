"""Saved conversations, one JSON file per session.

Sessions are written whole on every save (never appended). Files live in
~/.parley/sessions by default and are named {id}.json.
"""

import json
import os
import random
import string
import time
from dataclasses import dataclass, field

from core.history import Turn


class SessionStoreError(Exception):
    """A session file exists but cannot be read or parsed."""


def generate_session_id() -> str:
    """Millisecond timestamp plus a short random suffix, e.g. 1718000000000-k3x9qa."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{int(time.time() * 1000)}-{suffix}"


@dataclass
class Session:
    id: str
    turns: list = field(default_factory=list)
    name: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    provider_id: str = ""

    @classmethod
    def create(cls, turns: list, provider_id: str, name: str | None = None) -> "Session":
        now = time.time()
        return cls(id=generate_session_id(), turns=list(turns), name=name,
                   created_at=now, updated_at=now, provider_id=provider_id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "provider_id": self.provider_id,
            "turns": [t.to_dict() for t in self.turns],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(
            id=data["id"],
            name=data.get("name"),
            created_at=data.get("created_at", 0.0),
            updated_at=data.get("updated_at", 0.0),
            provider_id=data.get("provider_id", ""),
            turns=[Turn.from_dict(t) for t in data.get("turns", [])],
        )


class SessionStore:
    """load/save/list/delete over a directory of session files."""

    def __init__(self, directory: str):
        self.directory = os.path.expanduser(directory)

    def _path(self, session_id: str) -> str:
        if not _valid_id(session_id):
            raise SessionStoreError(f"Invalid session id: {session_id!r}")
        return os.path.join(self.directory, f"{session_id}.json")

    def save(self, session: Session) -> str:
        """Write the session as a unit. Returns the file path."""
        os.makedirs(self.directory, exist_ok=True)
        path = self._path(session.id)
        tmp = path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(session.to_dict(), f, indent=2, ensure_ascii=False)
        os.replace(tmp, path)
        return path

    def load(self, session_id: str) -> Session | None:
        """Load a session by id. None if missing; SessionStoreError if corrupt."""
        path = self._path(session_id)
        if not os.path.isfile(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return Session.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise SessionStoreError(f"Cannot read session {session_id}: {e}") from e

    def list(self) -> list[Session]:
        """All readable sessions, most recently updated first. Corrupt files are skipped."""
        if not os.path.isdir(self.directory):
            return []
        sessions = []
        for filename in os.listdir(self.directory):
            if not filename.endswith(".json"):
                continue
            try:
                session = self.load(filename[:-5])
            except SessionStoreError:
                continue
            if session is not None:
                sessions.append(session)
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    def delete(self, session_id: str) -> bool:
        """Delete a session. Returns True if a file was removed."""
        path = self._path(session_id)
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        return True

    def find_by_name(self, name: str) -> Session | None:
        for session in self.list():
            if session.name == name:
                return session
        return None

    def find(self, id_or_name: str) -> Session | None:
        """Resolve an argument that may be either a session id or a name."""
        session = self.load(id_or_name) if _valid_id(id_or_name) else None
        return session or self.find_by_name(id_or_name)

    def most_recent(self) -> Session | None:
        sessions = self.list()
        return sessions[0] if sessions else None


def _valid_id(session_id: str) -> bool:
    # Ids never contain path separators or lead with a dot
    return bool(session_id) and "/" not in session_id and os.sep not in session_id \
        and not session_id.startswith(".")
