"""Core data models for Foreman."""

from __future__ import annotations

import enum
import re
import time
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Record(BaseModel):
    """Base for records persisted to the shared JSON files (camelCase on disk)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ── Capability ───────────────────────────────────────────────────────────────


class Capability(str, enum.Enum):
    """Declared role of an agent. Determines its guard set."""

    SCOUT = "scout"
    BUILDER = "builder"
    REVIEWER = "reviewer"
    LEAD = "lead"
    MERGER = "merger"
    COORDINATOR = "coordinator"
    SUPERVISOR = "supervisor"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, label: str | Capability | None) -> Capability:
        """Map a role label onto the closed set, falling back to UNRECOGNIZED."""
        if isinstance(label, Capability):
            return label
        if not label:
            return cls.UNRECOGNIZED
        try:
            return cls(label.strip().lower())
        except ValueError:
            return cls.UNRECOGNIZED


# Roles whose job is writing files. Everything else is read-only.
IMPLEMENTATION_CAPABILITIES = frozenset({Capability.BUILDER, Capability.MERGER})


# ── Session ──────────────────────────────────────────────────────────────────


class SessionState(str, enum.Enum):
    """Agent session lifecycle states."""

    BOOTING = "booting"
    WORKING = "working"
    STALLED = "stalled"
    COMPLETED = "completed"
    ZOMBIE = "zombie"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


ACTIVE_STATES = frozenset({SessionState.BOOTING, SessionState.WORKING, SessionState.STALLED})


def new_session_id(agent_name: str) -> str:
    """Time-ordered session id, e.g. ``session-1718000000000-builder-1``."""
    return f"session-{time.time_ns() // 1_000_000}-{agent_name}"


class AgentSession(_Record):
    """One spawned agent, as recorded in ``.foreman/sessions.json``."""

    id: str
    agent_name: str
    capability: Capability = Capability.UNRECOGNIZED
    worktree_path: str
    branch_name: str
    bead_id: str = ""
    multiplexer_session_id: str
    state: SessionState = SessionState.BOOTING
    pid: int | None = None
    parent_agent: str | None = None
    depth: int = Field(default=0, ge=0)
    started_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)
    escalation_level: int = 0
    stalled_since: datetime | None = None

    @field_validator("capability", mode="before")
    @classmethod
    def _parse_capability(cls, v: Any) -> Capability:
        return Capability.parse(v)

    @property
    def is_active(self) -> bool:
        return self.state.is_active

    def touch(self) -> None:
        self.last_activity = utcnow()


# ── Merge queue ──────────────────────────────────────────────────────────────


class MergeStatus(str, enum.Enum):
    PENDING = "pending"
    MERGED = "merged"
    FAILED = "failed"


class ResolutionTier(str, enum.Enum):
    """Conflict-resolution strategies, least to most aggressive."""

    CLEAN_MERGE = "clean-merge"
    CONTENT_MERGE = "content-merge"


class MergeQueueEntry(_Record):
    """A branch awaiting integration. Never deleted; kept as an audit trail."""

    branch_name: str
    bead_id: str = ""
    agent_name: str = ""
    files_modified: list[str] = Field(default_factory=list)
    status: MergeStatus = MergeStatus.PENDING
    resolved_tier: ResolutionTier | None = None
    enqueued_at: datetime = Field(default_factory=utcnow)
    error: str | None = None


class MergeResult(_Record):
    """Outcome of integrating a single branch."""

    branch_name: str
    success: bool = False
    status: MergeStatus = MergeStatus.PENDING
    tier: ResolutionTier | None = None
    agent_name: str = ""
    bead_id: str = ""
    files_modified: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)
    error: str | None = None


class BatchMergeResult(_Record):
    results: list[MergeResult] = Field(default_factory=list)
    success_count: int = 0
    fail_count: int = 0
    count: int = 0


# ── Branch naming ────────────────────────────────────────────────────────────

# <namespace>/<agentName>/<beadId>
_BRANCH_RE = re.compile(r"^(?P<namespace>[^/]+)/(?P<agent>[^/]+)/(?P<bead>[^/]+)$")


class BranchIdentity(BaseModel):
    namespace: str = ""
    agent_name: str = ""
    bead_id: str = ""


def parse_branch_name(branch: str) -> BranchIdentity:
    """Split ``foreman/builder-1/bead-42`` into its parts.

    Names that don't follow the three-part convention yield empty fields.
    """
    match = _BRANCH_RE.match(branch.strip())
    if not match:
        return BranchIdentity()
    return BranchIdentity(
        namespace=match.group("namespace"),
        agent_name=match.group("agent"),
        bead_id=match.group("bead"),
    )


def agent_branch_name(namespace: str, agent_name: str, bead_id: str) -> str:
    return f"{namespace}/{agent_name}/{bead_id}"


# ── Mail & Metrics ───────────────────────────────────────────────────────────


class MailType(str, enum.Enum):
    STATUS = "status"
    RESULT = "result"
    QUESTION = "question"
    ERROR = "error"


class MailMessage(_Record):
    """A typed message between agents."""

    id: int | None = None
    sender: str = Field(alias="from")
    recipient: str = Field(alias="to")
    subject: str
    body: str = ""
    type: MailType = MailType.STATUS
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class SessionMetrics(_Record):
    """Summary row written when an agent session ends."""

    agent_name: str
    bead_id: str = ""
    capability: Capability = Capability.UNRECOGNIZED
    parent_agent: str | None = None
    started_at: datetime
    completed_at: datetime = Field(default_factory=utcnow)

    @field_validator("capability", mode="before")
    @classmethod
    def _parse_capability(cls, v: Any) -> Capability:
        return Capability.parse(v)

    @property
    def duration_ms(self) -> int:
        return int((self.completed_at - self.started_at).total_seconds() * 1000)
