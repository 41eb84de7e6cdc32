"""Talk-control event and per-reply bookkeeping types."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from story_driver.models import TalkControlReply, TalkControlTrigger

# speaker id used for messages written by the human player
PLAYER_SPEAKER_ID = "{{user}}"

# key under ChatMessage.extra marking messages injected by talk control
PROVENANCE_KEY = "story_driver_talk_control"


@dataclass(frozen=True)
class TalkControlEvent:
    id: int
    type: TalkControlTrigger
    checkpoint_id: str | None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def speaker_id(self) -> str:
        value = self.metadata.get("speaker_id")
        return value if isinstance(value, str) else ""


@dataclass
class ReplyRuntimeState:
    """Dispatch history for one reply; lives until the story or chat changes."""

    last_action_turn: float = -math.inf
    action_turn_stamp: int = -1
    actions_this_turn: int = 0
    total_trigger_count: int = 0

    def credit(self) -> None:
        self.last_action_turn = self.action_turn_stamp
        self.actions_this_turn += 1
        self.total_trigger_count += 1


@dataclass
class PendingAction:
    event: TalkControlEvent
    checkpoint_id: str
    reply: TalkControlReply
    state: ReplyRuntimeState
    reply_index: int
