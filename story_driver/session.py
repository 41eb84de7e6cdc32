"""StorySession — the live runtime for one story in one chat.

Owns the current RuntimeStoryState and decides when it may be written to the
settings store. A snapshot is persisted only when all of these hold:

    a story is loaded, a chat id is set, the chat is a group chat,
    and the session has been hydrated for that chat

Hydration is what makes writes safe: until the stored snapshot for the chat
has been read (or found absent), writing would overwrite it with the default
state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from story_driver.models import CheckpointStatus, RuntimeStoryState, Story
from story_driver.state import (
    activate_runtime,
    apply_checkpoint_status,
    make_default_state,
    sanitize_runtime,
    sanitize_turns,
)
from story_driver.storage import SettingsStore, load_story_state, persist_story_state

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HydrateResult:
    runtime: RuntimeStoryState
    source: Literal["default", "stored"]


def _sanitize_chat_id(value: str | None) -> str | None:
    if value is None:
        return None
    trimmed = str(value).strip()
    return trimmed or None


class StorySession:
    def __init__(self, settings: SettingsStore) -> None:
        self._settings = settings
        self._story: Story | None = None
        self._story_key: str | None = None
        self._chat_id: str | None = None
        self._group_chat_selected = False
        self._hydrated = False
        self._runtime = make_default_state(None)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def story(self) -> Story | None:
        return self._story

    @property
    def story_key(self) -> str | None:
        return self._story_key

    @property
    def chat_id(self) -> str | None:
        return self._chat_id

    @property
    def group_chat_selected(self) -> bool:
        return self._group_chat_selected

    @property
    def runtime(self) -> RuntimeStoryState:
        return self._runtime

    def can_persist(self) -> bool:
        return bool(self._story and self._chat_id and self._group_chat_selected)

    def is_hydrated(self) -> bool:
        return self._hydrated

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def set_story(self, story: Story | None, story_key: str | None = None) -> RuntimeStoryState:
        """Swap the story; the runtime restarts and must be hydrated again."""
        self._story = story
        self._story_key = story_key if story is not None else None
        self._runtime = make_default_state(story)
        self._hydrated = False
        return self._runtime

    def set_chat_context(self, chat_id: str | None, group_chat_selected: bool | None) -> None:
        """Switch chats. A different chat starts from the default runtime until hydrated."""
        next_id = _sanitize_chat_id(chat_id)
        next_group = bool(group_chat_selected)
        if next_id == self._chat_id and next_group == self._group_chat_selected:
            return
        self._chat_id = next_id
        self._group_chat_selected = next_group
        self._runtime = make_default_state(self._story)
        self._hydrated = False

    def reset_runtime(self) -> RuntimeStoryState:
        self._runtime = make_default_state(self._story)
        self._hydrated = False
        return self._runtime

    def hydrate(self) -> HydrateResult:
        """Load the chat's stored snapshot, or fall back to the default state."""
        if self._story is None or not self._group_chat_selected:
            return HydrateResult(self.reset_runtime(), "default")

        loaded = load_story_state(self._settings, self._chat_id, self._story)
        if loaded.story_key and not self._story_key:
            self._story_key = loaded.story_key
        runtime = self.write_runtime(loaded.state, persist=False, hydrated=True)
        logger.info(
            "Hydrated chat %s from %s state (checkpoint %s)",
            self._chat_id, loaded.source, runtime.active_checkpoint_key,
        )
        return HydrateResult(runtime, loaded.source)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def write_runtime(
        self,
        next_runtime: RuntimeStoryState,
        persist: bool = True,
        hydrated: bool | None = None,
    ) -> RuntimeStoryState:
        """Sanitize and install a runtime, persisting when allowed.

        A persisting write in a group chat marks the session hydrated unless
        `hydrated` says otherwise.
        """
        if persist and self._group_chat_selected and hydrated is None:
            hydrated = True
        self._runtime = sanitize_runtime(next_runtime, self._story)
        if hydrated is not None:
            self._hydrated = hydrated
        if persist and self._hydrated:
            self._persist()
        return self._runtime

    def set_turns_since_eval(self, value: int, persist: bool = True) -> RuntimeStoryState:
        turns = sanitize_turns(value)
        if turns == self._runtime.turns_since_eval:
            return self._runtime
        return self._write_counter({"turns_since_eval": turns}, persist)

    def set_checkpoint_turn_count(self, value: int, persist: bool = True) -> RuntimeStoryState:
        count = sanitize_turns(value)
        if count == self._runtime.checkpoint_turn_count:
            return self._runtime
        return self._write_counter({"checkpoint_turn_count": count}, persist)

    def _write_counter(self, update: dict[str, int], persist: bool) -> RuntimeStoryState:
        self._runtime = self._runtime.model_copy(update=update)
        if persist and self._hydrated:
            self._persist()
        return self._runtime

    def update_checkpoint_status(
        self,
        index: int,
        status: CheckpointStatus | str,
        persist: bool = True,
    ) -> RuntimeStoryState:
        """Override one checkpoint's status. Out-of-range or unknown status is a no-op."""
        if self._story is None:
            return self._runtime
        updated = apply_checkpoint_status(self._story, self._runtime, index, status)
        if updated is self._runtime:
            return self._runtime
        self._runtime = updated
        if persist and self._hydrated:
            self._persist()
        return self._runtime

    def activate_index(self, index: int, persist: bool = True) -> RuntimeStoryState:
        """Make checkpoint `index` (clamped) current and re-derive all statuses."""
        if self._story is None:
            return self._runtime
        return self.write_runtime(activate_runtime(self._story, self._runtime, index), persist=persist)

    def dispose(self) -> None:
        self._story = None
        self._story_key = None
        self._chat_id = None
        self._group_chat_selected = False
        self._hydrated = False
        self._runtime = make_default_state(None)

    def _persist(self) -> bool:
        if not self.can_persist():
            return False
        persist_story_state(self._settings, self._chat_id, self._story, self._runtime, self._story_key)
        return True
