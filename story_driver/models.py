"""Core domain models.

The story graph is produced once at the ingestion boundary (parse_story) and
consumed read-only by the state machine, the trigger evaluator and talk
control. Runtime state is the only mutable model; it is sanitized on every
read/write boundary (see story_driver.state).

Raw story JSON accepts a few legacy shapes that are normalized here, never
re-inspected downstream:

    regex patterns    "text", "/source/flags" or {"pattern": ..., "flags": ...}
    trigger           {"type": "regex", "patterns": [...]} | {"type": "timed", "within_turns": N}
    transitions       "from" / "to" keys (aliases of from_id / to_id)
    talk control      {"checkpoints": {"<id>": {"replies": [...]}}}
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from story_driver.text import normalize_name

SCHEMA_VERSION = "1.0"

_REGEX_FROM_SLASHES = re.compile(r"^/(.*)/([dgimsuvy]*)$", re.DOTALL)


class StoryValidationError(ValueError):
    """Raised when raw story data cannot be normalized into a Story."""


# ---------------------------------------------------------------------------
# Checkpoint status
# ---------------------------------------------------------------------------

class CheckpointStatus(str, Enum):
    PENDING = "pending"
    CURRENT = "current"
    COMPLETE = "complete"
    FAILED = "failed"


def is_checkpoint_status(value: Any) -> bool:
    try:
        CheckpointStatus(value)
    except ValueError:
        return False
    return True


# ---------------------------------------------------------------------------
# Transition triggers
# ---------------------------------------------------------------------------

class RegexPattern(BaseModel):
    """A regex as authored: source text plus JS-style flags (default "i")."""

    model_config = ConfigDict(frozen=True)

    pattern: str = Field(min_length=1)
    flags: str = Field(default="i", pattern=r"^[dgimsuvy]*$")

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            m = _REGEX_FROM_SLASHES.match(data)
            if m:
                return {"pattern": m.group(1), "flags": m.group(2)}
            return {"pattern": data}
        if isinstance(data, dict) and data.get("flags") is None:
            data = {k: v for k, v in data.items() if k != "flags"}
        return data

    def __str__(self) -> str:
        return f"/{self.pattern}/{self.flags}"


class RegexTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["regex"] = "regex"
    patterns: list[RegexPattern] = Field(min_length=1)
    condition: str = ""

    @field_validator("patterns", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        if isinstance(value, (str, dict)):
            return [value]
        return value


class TimedTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["timed"] = "timed"
    within_turns: int = Field(ge=1)
    condition: str = ""


Trigger = Annotated[Union[RegexTrigger, TimedTrigger], Field(discriminator="type")]


# ---------------------------------------------------------------------------
# Story graph
# ---------------------------------------------------------------------------

class WorldInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    activate: list[str] = Field(default_factory=list)
    deactivate: list[str] = Field(default_factory=list)

    @field_validator("activate", "deactivate")
    @classmethod
    def _clean(cls, value: list[str]) -> list[str]:
        # trimmed, blanks dropped, first occurrence wins
        seen: dict[str, None] = {}
        for item in value:
            item = item.strip()
            if item:
                seen.setdefault(item, None)
        return list(seen)


class OnActivate(BaseModel):
    """Checkpoint activation effects. Opaque to the engine, applied by the host."""

    model_config = ConfigDict(frozen=True)

    authors_note: dict[str, str] = Field(default_factory=dict)
    world_info: WorldInfo | None = None
    preset_overrides: dict[str, dict[str, Any]] = Field(default_factory=dict)
    automations: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _legacy_shapes(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        note = data.get("authors_note")
        if isinstance(note, str):
            data["authors_note"] = {"chat": note}
        if "preset_override" in data and "preset_overrides" not in data:
            data["preset_overrides"] = data.pop("preset_override")
        return data


class Checkpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    objective: str = ""
    on_activate: OnActivate | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _canonical_id(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return value


class Transition(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    from_id: str = Field(alias="from", min_length=1)
    to_id: str = Field(alias="to", min_length=1)
    trigger: Trigger
    label: str | None = None
    description: str | None = None

    @field_validator("id", "from_id", "to_id", mode="before")
    @classmethod
    def _canonical_id(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return value


# ---------------------------------------------------------------------------
# Talk control
# ---------------------------------------------------------------------------

TalkControlTrigger = Literal["afterSpeak", "beforeArbiter", "afterArbiter", "onEnter", "onExit"]


class StaticContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["static"] = "static"
    text: str = ""


class LlmContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["llm"] = "llm"
    instruction: str = ""


ReplyContent = Annotated[Union[StaticContent, LlmContent], Field(discriminator="kind")]


class TalkControlReply(BaseModel):
    """One autonomous reply registered on a checkpoint.

    member_id is the character that replies (falls back to speaker_id);
    speaker_id is whose speech gates afterSpeak replies (blank = anyone).
    """

    model_config = ConfigDict(frozen=True)

    member_id: str = ""
    speaker_id: str = ""
    enabled: bool = True
    trigger: TalkControlTrigger
    probability: int = Field(default=100, ge=0, le=100)
    content: ReplyContent
    max_triggers: int | None = Field(default=None, ge=1)
    max_length: int | None = Field(default=None, ge=1)

    @property
    def responder_id(self) -> str:
        return self.member_id or self.speaker_id

    @property
    def normalized_id(self) -> str:
        return normalize_name(self.responder_id)

    @property
    def normalized_speaker_id(self) -> str:
        return normalize_name(self.speaker_id)


class TalkControlCheckpoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    replies: list[TalkControlReply] = Field(default_factory=list)

    def replies_for(self, trigger: str) -> list[TalkControlReply]:
        return [r for r in self.replies if r.trigger == trigger]


class TalkControlConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    checkpoints: dict[str, TalkControlCheckpoint] = Field(default_factory=dict)


class Story(BaseModel):
    """A normalized story graph. Checkpoint order is authoritative for indices."""

    model_config = ConfigDict(frozen=True)

    schema_version: str = SCHEMA_VERSION
    title: str = Field(min_length=1)
    description: str = ""
    global_lorebook: str = ""
    roles: dict[str, str] = Field(default_factory=dict)
    checkpoints: list[Checkpoint] = Field(min_length=1)
    transitions: list[Transition] = Field(default_factory=list)
    start: str | None = None
    talk_control: TalkControlConfig | None = None

    @field_validator("roles")
    @classmethod
    def _clean_roles(cls, value: dict[str, str]) -> dict[str, str]:
        return {k: v.strip() for k, v in value.items() if k.strip() and v.strip()}

    @model_validator(mode="after")
    def _check_graph(self) -> Story:
        ids: set[str] = set()
        for cp in self.checkpoints:
            if cp.id in ids:
                raise ValueError(f"Duplicate checkpoint id '{cp.id}'")
            ids.add(cp.id)

        edge_ids: set[str] = set()
        for edge in self.transitions:
            if edge.id in edge_ids:
                raise ValueError(f"Duplicate transition id '{edge.id}'")
            edge_ids.add(edge.id)
            if edge.from_id not in ids:
                raise ValueError(f"Transition {edge.id} references unknown source checkpoint '{edge.from_id}'")
            if edge.to_id not in ids:
                raise ValueError(f"Transition {edge.id} references unknown target checkpoint '{edge.to_id}'")

        if self.start is not None and self.start not in ids:
            raise ValueError(f"Story start references unknown checkpoint id '{self.start}'")
        return self

    @property
    def start_id(self) -> str:
        return self.start or self.checkpoints[0].id

    def checkpoint_index(self, checkpoint_id: str | None) -> int:
        """Index of a checkpoint id, or -1 if absent."""
        for i, cp in enumerate(self.checkpoints):
            if cp.id == checkpoint_id:
                return i
        return -1

    def get_checkpoint(self, checkpoint_id: str | None) -> Checkpoint | None:
        idx = self.checkpoint_index(checkpoint_id)
        return self.checkpoints[idx] if idx >= 0 else None

    def transitions_from(self, checkpoint_id: str | None) -> list[Transition]:
        return [t for t in self.transitions if t.from_id == checkpoint_id]


def parse_story(data: Any) -> Story:
    """Validate and normalize raw story JSON into a Story."""
    try:
        return Story.model_validate(data)
    except ValidationError as e:
        issues = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '(root)'}: {err['msg']}"
            for err in e.errors()
        )
        raise StoryValidationError(f"Invalid story: {issues}") from e


# ---------------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------------

class RuntimeStoryState(BaseModel):
    """Mutable per-chat progress. Build new instances with model_copy(update=...)."""

    checkpoint_index: int = 0
    active_checkpoint_key: str | None = None
    turns_since_eval: int = 0
    checkpoint_turn_count: int = 0
    checkpoint_status_map: dict[str, CheckpointStatus] = Field(default_factory=dict)


class PersistedChatState(BaseModel):
    """The settings-store record for one chat."""

    story_signature: str
    story_key: str | None = None
    checkpoint_index: int
    active_checkpoint_key: str | None = None
    turns_since_eval: int
    checkpoint_turn_count: int = 0
    checkpoint_status_map: dict[str, Any] = Field(default_factory=dict)
    updated_at: int = 0
