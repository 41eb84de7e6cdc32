"""Checkpoint state machine — pure helpers over RuntimeStoryState.

Statuses move pending → current → complete; failed is a sticky override that
survives every re-derivation and is only cleared by an explicit status update.

Status derivation for an active index i (derive_status_map):
  j < i    complete   (failed stays failed)
  j == i   current    (failed stays failed)
  k > i    pending    (failed and complete are kept; a stale current is demoted)

sanitize_runtime() is the single point where a stale or tampered snapshot is
made safe against the live story. It accepts a model, a plain mapping or
garbage, and never raises.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel

from story_driver.models import CheckpointStatus, RuntimeStoryState, Story, is_checkpoint_status

DEFAULT_INTERVAL_TURNS = 3


# ---------------------------------------------------------------------------
# Scalar sanitizers
# ---------------------------------------------------------------------------

def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return value


def sanitize_turns(value: Any) -> int:
    """Floor a counter to a non-negative int; anything non-numeric becomes 0."""
    num = _number(value)
    if num is None:
        return 0
    floored = math.floor(num)
    return floored if floored >= 0 else 0


def clamp_checkpoint_index(index: Any, story: Story | None) -> int:
    if story is None:
        return 0
    num = _number(index)
    if num is None or num < 0:
        return 0
    last = max(0, len(story.checkpoints) - 1)
    return min(math.floor(num), last)


def checkpoint_key_at_index(story: Story | None, index: int) -> str:
    if story is not None and 0 <= index < len(story.checkpoints):
        return story.checkpoints[index].id
    return str(index)


def _field(candidate: Any, name: str) -> Any:
    if isinstance(candidate, BaseModel):
        return getattr(candidate, name, None)
    if isinstance(candidate, Mapping):
        return candidate.get(name)
    return None


def _clean_status_map(source: Any) -> dict[str, CheckpointStatus]:
    if isinstance(source, BaseModel) or not isinstance(source, Mapping):
        return {}
    return {
        str(key): CheckpointStatus(value)
        for key, value in source.items()
        if is_checkpoint_status(value)
    }


# ---------------------------------------------------------------------------
# Status derivation
# ---------------------------------------------------------------------------

def derive_status_map(
    story: Story | None,
    checkpoint_index: int,
    previous: Mapping[str, Any] | None,
) -> dict[str, CheckpointStatus]:
    """Recompute the status map for an active index, keeping sticky statuses."""
    if story is None or not story.checkpoints:
        return {}

    index = clamp_checkpoint_index(checkpoint_index, story)
    prev = _clean_status_map(previous)
    result: dict[str, CheckpointStatus] = {}

    for i, cp in enumerate(story.checkpoints):
        before = prev.get(cp.id)
        if before is CheckpointStatus.FAILED:
            result[cp.id] = CheckpointStatus.FAILED
        elif i < index:
            result[cp.id] = CheckpointStatus.COMPLETE
        elif i == index:
            result[cp.id] = CheckpointStatus.CURRENT
        elif before is CheckpointStatus.COMPLETE:
            result[cp.id] = CheckpointStatus.COMPLETE
        else:
            result[cp.id] = CheckpointStatus.PENDING

    return result


def derive_checkpoint_statuses(story: Story | None, runtime: RuntimeStoryState) -> list[CheckpointStatus]:
    """Ordered statuses for display, one per checkpoint."""
    if story is None or not story.checkpoints:
        return []
    active_key = runtime.active_checkpoint_key or checkpoint_key_at_index(story, runtime.checkpoint_index)
    statuses = []
    for cp in story.checkpoints:
        status = runtime.checkpoint_status_map.get(cp.id, CheckpointStatus.PENDING)
        if cp.id == active_key and status is CheckpointStatus.PENDING:
            status = CheckpointStatus.CURRENT
        statuses.append(status)
    return statuses


# ---------------------------------------------------------------------------
# Runtime construction
# ---------------------------------------------------------------------------

def make_default_state(story: Story | None) -> RuntimeStoryState:
    """Fresh runtime positioned on the story's start checkpoint."""
    if story is None or not story.checkpoints:
        return RuntimeStoryState()
    index = max(0, story.checkpoint_index(story.start_id))
    return RuntimeStoryState(
        checkpoint_index=index,
        active_checkpoint_key=story.checkpoints[index].id,
        checkpoint_status_map=derive_status_map(story, index, None),
    )


def sanitize_runtime(candidate: Any, story: Story | None) -> RuntimeStoryState:
    """Coerce any candidate snapshot into a RuntimeStoryState valid for `story`."""
    turns_since_eval = sanitize_turns(_field(candidate, "turns_since_eval"))
    checkpoint_turn_count = sanitize_turns(_field(candidate, "checkpoint_turn_count"))

    if story is None or not story.checkpoints:
        return RuntimeStoryState(
            turns_since_eval=turns_since_eval,
            checkpoint_turn_count=checkpoint_turn_count,
        )

    raw_index = _field(candidate, "checkpoint_index")
    num = _number(raw_index)
    index = math.floor(num) if num is not None else -1

    raw_key = _field(candidate, "active_checkpoint_key")
    key = raw_key.strip() if isinstance(raw_key, str) else ""
    if key:
        match = story.checkpoint_index(key)
        if match >= 0:
            index = match

    if not 0 <= index < len(story.checkpoints):
        index = clamp_checkpoint_index(raw_index, story)

    return RuntimeStoryState(
        checkpoint_index=index,
        active_checkpoint_key=story.checkpoints[index].id,
        turns_since_eval=turns_since_eval,
        checkpoint_turn_count=checkpoint_turn_count,
        checkpoint_status_map=derive_status_map(
            story, index, _field(candidate, "checkpoint_status_map"),
        ),
    )


def activate_runtime(story: Story, runtime: RuntimeStoryState, index: int) -> RuntimeStoryState:
    """Move to checkpoint `index` (clamped); counters restart for the new checkpoint."""
    target = clamp_checkpoint_index(index, story)
    return RuntimeStoryState(
        checkpoint_index=target,
        active_checkpoint_key=checkpoint_key_at_index(story, target),
        turns_since_eval=0,
        checkpoint_turn_count=(
            runtime.checkpoint_turn_count if target == runtime.checkpoint_index else 0
        ),
        checkpoint_status_map=derive_status_map(story, target, runtime.checkpoint_status_map),
    )


def apply_checkpoint_status(
    story: Story,
    runtime: RuntimeStoryState,
    index: int,
    status: CheckpointStatus | str,
) -> RuntimeStoryState:
    """Override one checkpoint's status and re-derive; invalid input is a no-op."""
    if not is_checkpoint_status(status):
        return runtime
    if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < len(story.checkpoints):
        return runtime
    overrides = dict(runtime.checkpoint_status_map)
    overrides[story.checkpoints[index].id] = CheckpointStatus(status)
    return runtime.model_copy(update={
        "checkpoint_status_map": derive_status_map(story, runtime.checkpoint_index, overrides),
    })
