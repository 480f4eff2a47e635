"""Session records and their on-disk store.

A session is one conversation bound to a working directory. Each is saved
as ``<config_dir>/sessions/<id>.json``; the token estimate is not stored
and is recomputed when the conversation is loaded.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .conversation import (
    DEFAULT_COMPACTION_THRESHOLD,
    DEFAULT_KEEP_RECENT,
    DEFAULT_MAX_CONTEXT,
    Conversation,
)
from .errors import AgentError, ConfigError

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id(now: datetime | None = None) -> str:
    now = now or _now()
    return f"{now.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"


@dataclass
class Session:
    id: str
    conversation: Conversation
    working_directory: str
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @classmethod
    def new(
        cls,
        system_prompt: str,
        working_directory: str,
        *,
        max_context: int = DEFAULT_MAX_CONTEXT,
        compaction_threshold: float = DEFAULT_COMPACTION_THRESHOLD,
        keep_recent: int = DEFAULT_KEEP_RECENT,
    ) -> "Session":
        now = _now()
        conversation = Conversation(
            system_prompt,
            max_context=max_context,
            compaction_threshold=compaction_threshold,
            keep_recent=keep_recent,
        )
        return cls(
            id=new_session_id(now),
            conversation=conversation,
            working_directory=str(working_directory),
            created_at=now,
            updated_at=now,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "working_directory": self.working_directory,
            "conversation": {"messages": self.conversation.to_dicts()},
        }

    @classmethod
    def from_dict(cls, data: dict, **conversation_kwargs) -> "Session":
        """Rebuild a session; ``conversation_kwargs`` set the context limits."""
        if not isinstance(data, dict):
            raise AgentError("session record is not a JSON object")
        try:
            session_id = data["id"]
            created_at = datetime.fromisoformat(data["created_at"])
            updated_at = datetime.fromisoformat(data["updated_at"])
            working_directory = data["working_directory"]
            messages = data["conversation"]["messages"]
        except KeyError as e:
            raise AgentError(f"session record is missing {e.args[0]!r}") from e
        except (TypeError, ValueError) as e:
            raise AgentError(f"malformed session record: {e}") from e
        if not isinstance(session_id, str) or not isinstance(working_directory, str):
            raise AgentError("malformed session record: id and working_directory must be strings")
        return cls(
            id=session_id,
            conversation=Conversation.from_dicts(messages, **conversation_kwargs),
            working_directory=working_directory,
            created_at=created_at,
            updated_at=updated_at,
        )


class SessionStore:
    """JSON files in one directory, one per session."""

    def __init__(self, root: Path, **conversation_kwargs):
        self.root = Path(root)
        self.conversation_kwargs = conversation_kwargs

    def path_for(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or "\\" in session_id or session_id.startswith("."):
            raise ConfigError(f"invalid session id {session_id!r}")
        return self.root / f"{session_id}.json"

    def save(self, session: Session) -> Path:
        """Write the session, stamping ``updated_at`` with the current time."""
        session.updated_at = _now()
        path = self.path_for(session.id)
        tmp = path.with_suffix(".json.tmp")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(session.to_dict(), indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            try:
                tmp.unlink(missing_ok=True)
            except OSError:
                pass
            raise AgentError(f"failed to save session {session.id}: {e}") from e
        return path

    def load(self, session_id: str) -> Session:
        path = self.path_for(session_id)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise AgentError(f"session not found: {session_id}")
        except OSError as e:
            raise AgentError(f"failed to read session {session_id}: {e}") from e
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise AgentError(f"{path}: invalid JSON: {e}") from e
        return Session.from_dict(data, **self.conversation_kwargs)

    def list_sessions(self) -> list[Session]:
        """All readable sessions, most recently updated first.

        Files that fail to parse are skipped with a warning.
        """
        if not self.root.is_dir():
            return []
        sessions = []
        for path in self.root.glob("*.json"):
            try:
                sessions.append(self.load(path.stem))
            except AgentError as e:
                logger.warning("skipping unreadable session file %s: %s", path, e)
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    def last(self) -> Session | None:
        sessions = self.list_sessions()
        return sessions[0] if sessions else None
