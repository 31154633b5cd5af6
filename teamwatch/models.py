"""In-memory model of agent teams, parsed from the runtime's JSON files.

Three file shapes are understood:

Team config (``teams/<team>/config.json``)::

    {"name", "description", "createdAt" (epoch ms), "leadAgentId",
     "members": [{"agentId", "name", "agentType", "model", "color", "joinedAt"}]}

Inbox (``teams/<team>/inboxes/<agent>.json``)::

    [{"from", "text", "timestamp" (ISO-8601), "color", "read"}, ...]

Task (``tasks/<team>/<id>.json``)::

    {"id", "subject", "description", "activeForm", "status", "owner",
     "blocks": [id], "blockedBy": [id], "metadata": {"_internal": bool}}

Parsers raise ``ParseError`` for anything that is not the expected shape;
callers treat that exactly like malformed JSON (keep the previous value).
"""

import enum
import json
import math
from dataclasses import asdict, dataclass, field
from typing import Any


class ParseError(ValueError):
    """Raised when a watched file does not have the expected shape."""


class MessageType(str, enum.Enum):
    """Classification of an inbox message body."""

    PLAIN_TEXT = "plain_text"
    TASK_ASSIGNMENT = "task_assignment"
    SHUTDOWN_REQUEST = "shutdown_request"
    IDLE_NOTIFICATION = "idle_notification"
    SHUTDOWN_APPROVED = "shutdown_approved"


STRUCTURED_TYPES = frozenset(t.value for t in MessageType if t is not MessageType.PLAIN_TEXT)

TASK_STATUSES = ("pending", "in_progress", "completed", "deleted")


class ChangeKind(str, enum.Enum):
    CONFIG = "config"
    INBOX = "inbox"
    TASK = "task"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Member:
    agent_id: str
    name: str
    agent_type: str = ""
    model: str = ""
    color: str = ""
    joined_at: int | None = None


@dataclass(frozen=True)
class TeamConfig:
    name: str
    created_at: int
    description: str = ""
    lead_agent_id: str = ""
    members: tuple[Member, ...] = ()

    def to_dict(self) -> dict:
        d = asdict(self)
        d["members"] = [asdict(m) for m in self.members]
        return d


@dataclass(frozen=True)
class InboxMessage:
    sender: str
    text: str
    timestamp: str
    color: str = ""
    read: bool = False
    message_type: MessageType = MessageType.PLAIN_TEXT
    structured: dict | None = None

    def to_dict(self) -> dict:
        return {
            "from": self.sender,
            "text": self.text,
            "timestamp": self.timestamp,
            "color": self.color,
            "read": self.read,
            "message_type": self.message_type.value,
            "structured": self.structured,
        }


@dataclass(frozen=True)
class Task:
    id: str
    subject: str = ""
    description: str = ""
    active_form: str = ""
    status: str = "pending"
    owner: str = ""
    blocks: tuple[str, ...] = ()
    blocked_by: tuple[str, ...] = ()
    internal: bool = False

    @property
    def visible(self) -> bool:
        """True if the task belongs in externally facing task listings."""
        return not self.internal and self.status != "deleted"

    def to_dict(self) -> dict:
        d = asdict(self)
        d["blocks"] = list(self.blocks)
        d["blocked_by"] = list(self.blocked_by)
        return d


@dataclass
class Team:
    """One team as currently reconstructed from disk.

    Instances held by the aggregator are never mutated in place; a merge
    builds a new ``Team`` and swaps it in.
    """

    name: str
    config: TeamConfig | None = None
    inboxes: dict[str, tuple[InboxMessage, ...]] = field(default_factory=dict)
    tasks: dict[str, Task] = field(default_factory=dict)

    def visible_tasks(self) -> list[Task]:
        return [t for t in self.tasks.values() if t.visible]

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "config": self.config.to_dict() if self.config else None,
            "inboxes": {
                agent: [m.to_dict() for m in messages]
                for agent, messages in self.inboxes.items()
            },
            "tasks": {t.id: t.to_dict() for t in self.visible_tasks()},
        }


@dataclass(frozen=True)
class TeamChange:
    """Description of one successful merge, handed to downstream consumers.

    Exactly one of *config*, *inbox* or *tasks* is set, matching *kind*.
    For ``INBOX`` changes *agent* names the inbox owner; for ``TASK``
    changes *task_id* names the task that triggered the change and *tasks*
    carries the team's full task mapping after the merge.
    """

    team: str
    kind: ChangeKind
    config: TeamConfig | None = None
    agent: str | None = None
    inbox: tuple[InboxMessage, ...] | None = None
    task_id: str | None = None
    tasks: dict[str, Task] | None = None

    def payload(self) -> dict:
        """Serializable payload for observers."""
        if self.kind is ChangeKind.CONFIG:
            return {"config": self.config.to_dict() if self.config else None}
        if self.kind is ChangeKind.INBOX:
            return {
                "agent": self.agent,
                "messages": [m.to_dict() for m in self.inbox or ()],
            }
        return {
            "task_id": self.task_id,
            "tasks": {
                tid: t.to_dict() for tid, t in (self.tasks or {}).items() if t.visible
            },
        }


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _require_dict(raw: Any, what: str) -> dict:
    if not isinstance(raw, dict):
        raise ParseError(f"{what}: expected a JSON object, got {type(raw).__name__}")
    return raw


def _str(value: Any) -> str:
    return "" if value is None else str(value)


def _id_list(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(v) for v in value)


def _epoch_ms(value: Any) -> int | None:
    """Return *value* as integer epoch ms, or None unless it is a finite number."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


def parse_member(raw: Any) -> Member:
    d = _require_dict(raw, "member")
    agent_id = d.get("agentId") or d.get("name")
    if not agent_id:
        raise ParseError("member: missing agentId")
    return Member(
        agent_id=str(agent_id),
        name=_str(d.get("name") or agent_id),
        agent_type=_str(d.get("agentType")),
        model=_str(d.get("model")),
        color=_str(d.get("color")),
        joined_at=_epoch_ms(d.get("joinedAt")),
    )


def parse_team_config(raw: Any, team: str) -> TeamConfig:
    """Build a ``TeamConfig`` from decoded config JSON.

    *team* (the directory name) is the team identity, whatever ``name``
    the file carries.
    ``createdAt`` is required: it is half of the session identity.
    """
    d = _require_dict(raw, "team config")
    created_at = _epoch_ms(d.get("createdAt"))
    if created_at is None:
        raise ParseError("team config: createdAt must be a finite epoch-ms number")
    members = d.get("members") or []
    if not isinstance(members, list):
        raise ParseError("team config: members must be a list")
    return TeamConfig(
        name=team,
        created_at=created_at,
        description=_str(d.get("description")),
        lead_agent_id=_str(d.get("leadAgentId")),
        members=tuple(parse_member(m) for m in members),
    )


def classify_message_text(text: str) -> tuple[MessageType, dict | None]:
    """Classify a message body.

    A body that decodes to a JSON object whose ``type`` is a recognised
    discriminator is structured; everything else is plain text.
    """
    try:
        decoded = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return MessageType.PLAIN_TEXT, None
    if not isinstance(decoded, dict):
        return MessageType.PLAIN_TEXT, None
    kind = decoded.get("type")
    if isinstance(kind, str) and kind in STRUCTURED_TYPES:
        return MessageType(kind), decoded
    return MessageType.PLAIN_TEXT, None


def parse_inbox_message(raw: Any) -> InboxMessage:
    d = _require_dict(raw, "inbox message")
    text = _str(d.get("text"))
    message_type, structured = classify_message_text(text)
    return InboxMessage(
        sender=_str(d.get("from")),
        text=text,
        timestamp=_str(d.get("timestamp")),
        color=_str(d.get("color")),
        read=bool(d.get("read", False)),
        message_type=message_type,
        structured=structured,
    )


def parse_inbox(raw: Any) -> tuple[InboxMessage, ...]:
    if not isinstance(raw, list):
        raise ParseError(f"inbox: expected a JSON array, got {type(raw).__name__}")
    return tuple(parse_inbox_message(m) for m in raw)


def parse_task(raw: Any, task_id: str) -> Task:
    """Build a ``Task``.  *task_id* (the file stem) is the task's identity."""
    d = _require_dict(raw, "task")
    status = _str(d.get("status") or "pending")
    if status not in TASK_STATUSES:
        raise ParseError(f"task {task_id}: unknown status {status!r}")
    metadata = d.get("metadata")
    internal = bool(metadata.get("_internal")) if isinstance(metadata, dict) else False
    return Task(
        id=task_id,
        subject=_str(d.get("subject")),
        description=_str(d.get("description")),
        active_form=_str(d.get("activeForm")),
        status=status,
        owner=_str(d.get("owner")),
        blocks=_id_list(d.get("blocks")),
        blocked_by=_id_list(d.get("blockedBy")),
        internal=internal,
    )
