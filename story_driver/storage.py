"""Per-chat runtime persistence in a settings store.

Snapshots live in a single JSON settings document, keyed by chat id:

    {
      "storyState": {
        "<chat_id>": {
          "story_signature": "1.0|Title|3|...",
          "story_key": "library-key" | null,
          "checkpoint_index": 1,
          "active_checkpoint_key": "cp2",
          "turns_since_eval": 0,
          "checkpoint_turn_count": 2,
          "checkpoint_status_map": {"cp1": "complete", "cp2": "current", ...},
          "updated_at": 1700000000000
        }
      }
    }

The story signature covers only structure (ids, names, objectives, trigger
shapes). When the story a snapshot was written for no longer matches the
loaded story, the snapshot is discarded and the chat restarts from the
default state. Loads never raise; saves log and swallow store failures.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Protocol

from story_driver.models import PersistedChatState, RegexTrigger, RuntimeStoryState, Story, TimedTrigger
from story_driver.state import make_default_state, sanitize_runtime

logger = logging.getLogger(__name__)

STATE_SECTION = "storyState"


# ---------------------------------------------------------------------------
# Settings stores
# ---------------------------------------------------------------------------

class SettingsStore(Protocol):
    """A mutable settings document plus a save hook."""

    data: dict[str, Any]

    def save(self) -> None: ...


class JsonSettingsStore:
    """Settings document backed by one JSON file."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self.data: dict[str, Any] = self._load()

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2))

    def _load(self) -> dict[str, Any]:
        if not self._path.is_file():
            return {}
        try:
            data = self._read_json(self._path)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable settings file %s: %s", self._path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def save(self) -> None:
        self._write_json(self._path, self.data)


class MemorySettingsStore:
    """In-process settings document. Counts saves; useful for tests and demos."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self.data: dict[str, Any] = data if data is not None else {}
        self.save_count = 0

    def save(self) -> None:
        self.save_count += 1


# ---------------------------------------------------------------------------
# Signature
# ---------------------------------------------------------------------------

def compute_story_signature(story: Story) -> str:
    """Structural fingerprint; changes whenever a stored snapshot could be invalid."""
    cp_sig = "||".join(f"{cp.id}::{cp.name}::{cp.objective}" for cp in story.checkpoints)

    edges: list[str] = []
    for edge in story.transitions:
        trigger = edge.trigger
        regex_sig = ""
        window_sig = ""
        if isinstance(trigger, RegexTrigger):
            regex_sig = ",".join(f"{p.pattern}/{p.flags}" for p in trigger.patterns)
        elif isinstance(trigger, TimedTrigger):
            window_sig = f"@{trigger.within_turns}"
        edges.append(
            f"{edge.id}->{edge.from_id}|{edge.to_id}|{trigger.type}{window_sig}"
            f"|{trigger.condition}|{regex_sig}"
        )

    return "|".join([
        story.schema_version,
        story.title,
        str(len(story.checkpoints)),
        cp_sig,
        "||".join(edges),
    ])


# ---------------------------------------------------------------------------
# Load / persist
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LoadedStoryState:
    state: RuntimeStoryState
    source: Literal["default", "stored"]
    story_key: str | None = None


def _chat_key(chat_id: str | None) -> str:
    return chat_id.strip() if isinstance(chat_id, str) else ""


def _story_key(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _state_map(settings: SettingsStore, create: bool = False) -> dict[str, Any]:
    section = settings.data.get(STATE_SECTION)
    if not isinstance(section, dict):
        section = {}
        if create:
            settings.data[STATE_SECTION] = section
    return section


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_persisted_chat_state(entry: Any) -> bool:
    """Shape check for a stored record. Values are sanitized separately."""
    if not isinstance(entry, Mapping):
        return False
    if not isinstance(entry.get("story_signature"), str):
        return False
    if not _is_number(entry.get("checkpoint_index")) or not _is_number(entry.get("turns_since_eval")):
        return False
    if "checkpoint_status_map" in entry and not isinstance(entry["checkpoint_status_map"], Mapping):
        return False
    if "checkpoint_turn_count" in entry and not _is_number(entry["checkpoint_turn_count"]):
        return False
    story_key = entry.get("story_key")
    return story_key is None or isinstance(story_key, str)


def load_story_state(
    settings: SettingsStore,
    chat_id: str | None,
    story: Story | None,
) -> LoadedStoryState:
    """Load the stored snapshot for a chat, or the story's default state."""
    default = LoadedStoryState(make_default_state(story), "default")
    key = _chat_key(chat_id)
    if story is None or not key:
        return default

    entry = _state_map(settings).get(key)
    if entry is None:
        return default
    if not is_persisted_chat_state(entry):
        logger.warning("Discarding malformed story state for chat %s", key)
        return default

    if entry["story_signature"] != compute_story_signature(story):
        logger.info("Story changed since chat %s was saved; starting from default state", key)
        return default

    state = sanitize_runtime(entry, story)
    return LoadedStoryState(state, "stored", _story_key(entry.get("story_key")))


def persist_story_state(
    settings: SettingsStore,
    chat_id: str | None,
    story: Story | None,
    state: RuntimeStoryState,
    story_key: str | None = None,
) -> None:
    """Write a sanitized snapshot for a chat and ask the store to save."""
    key = _chat_key(chat_id)
    if story is None or not key:
        return

    sanitized = sanitize_runtime(state, story)
    record = PersistedChatState(
        story_signature=compute_story_signature(story),
        story_key=_story_key(story_key),
        checkpoint_index=sanitized.checkpoint_index,
        active_checkpoint_key=sanitized.active_checkpoint_key,
        turns_since_eval=sanitized.turns_since_eval,
        checkpoint_turn_count=sanitized.checkpoint_turn_count,
        checkpoint_status_map={k: v.value for k, v in sanitized.checkpoint_status_map.items()},
        updated_at=int(time.time() * 1000),
    )
    _state_map(settings, create=True)[key] = record.model_dump(mode="json")

    try:
        settings.save()
    except Exception as e:
        logger.warning("Failed to save story state for chat %s: %s", key, e)


def get_persisted_story_selection(settings: SettingsStore, chat_id: str | None) -> str | None:
    """The story key last persisted for a chat, if any."""
    key = _chat_key(chat_id)
    if not key:
        return None
    entry = _state_map(settings).get(key)
    if not isinstance(entry, Mapping):
        return None
    return _story_key(entry.get("story_key"))
