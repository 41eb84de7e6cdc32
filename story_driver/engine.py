"""StoryEngine — the upward interface used by an orchestrator or host adapter.

Wires one StorySession (checkpoint runtime + persistence), the transition
trigger evaluator and one TalkControlScheduler against a single Host:

    set_story ─► session.set_story + scheduler.set_story
    hydrate   ─► session.hydrate; talk control follows the hydrated checkpoint
                 without an onEnter event
    activate_index ─► session.activate_index; talk control gets onExit for the
                      previous checkpoint and onEnter for the new one
    handle_user_text ─► counters +1, persist, talk-control turn, then a
                        TurnEvaluation proposal (timed > trigger > interval)

The engine proposes evaluations; it never commits a transition by itself.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Literal

from story_driver.config import EngineConfig
from story_driver.host import Host
from story_driver.models import CheckpointStatus, RuntimeStoryState, Story, Transition
from story_driver.session import HydrateResult, StorySession
from story_driver.state import derive_checkpoint_statuses
from story_driver.storage import SettingsStore
from story_driver.talk_control import TalkControlScheduler
from story_driver.talk_control.scheduler import AbortFn, ArbiterPhase
from story_driver.text import clamp_text
from story_driver.triggers import (
    TransitionTriggerMatch,
    evaluate_transition_triggers,
    find_timed_transitions,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnEvaluation:
    """A proposal to run checkpoint evaluation for the latest user turn."""

    reason: Literal["timed", "trigger", "interval"]
    turn: int
    text: str
    matches: list[TransitionTriggerMatch] = field(default_factory=list)
    timed: list[Transition] = field(default_factory=list)


class StoryEngine:
    def __init__(
        self,
        host: Host,
        settings: SettingsStore,
        config: EngineConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.host = host
        self.config = config or EngineConfig()
        self.session = StorySession(settings)
        self.scheduler = TalkControlScheduler(
            host,
            config=self.config,
            active_checkpoint=lambda: self.session.runtime.active_checkpoint_key,
            rng=rng,
        )
        self.turn = 0

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def story(self) -> Story | None:
        return self.session.story

    @property
    def runtime(self) -> RuntimeStoryState:
        return self.session.runtime

    def checkpoint_statuses(self) -> list[CheckpointStatus]:
        return derive_checkpoint_statuses(self.session.story, self.session.runtime)

    def active_transitions(self) -> list[Transition]:
        story = self.session.story
        if story is None:
            return []
        return story.transitions_from(self.session.runtime.active_checkpoint_key)

    def configure(self, config: EngineConfig) -> None:
        self.config = config
        self.scheduler.configure(config)

    # ------------------------------------------------------------------
    # Story / chat context
    # ------------------------------------------------------------------

    def set_story(self, story: Story | None, story_key: str | None = None) -> RuntimeStoryState:
        runtime = self.session.set_story(story, story_key)
        self.set_talk_control_story(story)
        self.turn = 0
        self.scheduler.update_turn(0)
        logger.info("Story set: %s", story.title if story else None)
        return runtime

    def set_chat_context(self, chat_id: str | None, group_chat_selected: bool | None) -> None:
        self.session.set_chat_context(chat_id, group_chat_selected)

    def reset_runtime(self) -> RuntimeStoryState:
        return self.session.reset_runtime()

    def hydrate(self) -> HydrateResult:
        result = self.session.hydrate()
        self.set_talk_control_checkpoint(result.runtime.active_checkpoint_key, emit_enter=False)
        return result

    # ------------------------------------------------------------------
    # Runtime writes
    # ------------------------------------------------------------------

    def write_runtime(
        self,
        next_runtime: RuntimeStoryState,
        persist: bool = True,
        hydrated: bool | None = None,
    ) -> RuntimeStoryState:
        return self.session.write_runtime(next_runtime, persist=persist, hydrated=hydrated)

    def set_turns_since_eval(self, value: int, persist: bool = True) -> RuntimeStoryState:
        return self.session.set_turns_since_eval(value, persist=persist)

    def set_checkpoint_turn_count(self, value: int, persist: bool = True) -> RuntimeStoryState:
        return self.session.set_checkpoint_turn_count(value, persist=persist)

    def update_checkpoint_status(
        self,
        index: int,
        status: CheckpointStatus | str,
        persist: bool = True,
    ) -> RuntimeStoryState:
        return self.session.update_checkpoint_status(index, status, persist=persist)

    def activate_index(self, index: int, persist: bool = True) -> RuntimeStoryState:
        previous = self.session.runtime.active_checkpoint_key
        runtime = self.session.activate_index(index, persist=persist)
        if self.session.story is not None:
            self.scheduler.set_checkpoint(runtime.active_checkpoint_key, previous)
            logger.info("Activated checkpoint %s (was %s)", runtime.active_checkpoint_key, previous)
        return runtime

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def evaluate_transition_triggers(self, text: str) -> list[TransitionTriggerMatch]:
        return evaluate_transition_triggers(text, self.active_transitions())

    def handle_user_text(self, raw: str) -> TurnEvaluation | None:
        """Count a user turn and propose an evaluation when one is due."""
        text = (raw or "").strip()
        if not text or self.session.story is None:
            return None

        self.turn += 1
        current = self.session.runtime
        # counters only reach the store once the chat has been hydrated
        runtime = self.session.write_runtime(current.model_copy(update={
            "turns_since_eval": current.turns_since_eval + 1,
            "checkpoint_turn_count": current.checkpoint_turn_count + 1,
        }), persist=self.session.is_hydrated())
        self.update_talk_control_turn(self.turn)
        logger.debug(
            "User turn %d (since eval %d, at checkpoint %d): %r",
            self.turn, runtime.turns_since_eval, runtime.checkpoint_turn_count, clamp_text(text, 80),
        )

        transitions = self.active_transitions()
        timed = find_timed_transitions(transitions, runtime.checkpoint_turn_count)
        if timed:
            return self._propose("timed", text, timed=timed)

        matches = evaluate_transition_triggers(text, transitions)
        if matches:
            return self._propose("trigger", text, matches=matches)

        if runtime.turns_since_eval >= self.config.interval_turns:
            return self._propose("interval", text)
        return None

    def _propose(self, reason, text: str, matches=None, timed=None) -> TurnEvaluation:
        self.session.set_turns_since_eval(0)
        evaluation = TurnEvaluation(reason, self.turn, text, list(matches or []), list(timed or []))
        logger.info(
            "Evaluation proposed (%s) at turn %d: %s",
            reason, self.turn,
            [m.transition.id for m in evaluation.matches] or [t.id for t in evaluation.timed],
        )
        return evaluation

    # ------------------------------------------------------------------
    # Talk control
    # ------------------------------------------------------------------

    def set_talk_control_story(self, story: Story | None) -> None:
        self.scheduler.set_story(story)

    def set_talk_control_checkpoint(
        self,
        checkpoint_id: str | None,
        previous_checkpoint_id: str | None = None,
        emit_enter: bool = True,
    ) -> None:
        self.scheduler.set_checkpoint(checkpoint_id, previous_checkpoint_id, emit_enter=emit_enter)

    def notify_talk_control_arbiter_phase(self, phase: ArbiterPhase) -> None:
        self.scheduler.notify_arbiter_phase(phase)

    def update_talk_control_turn(self, turn: int) -> None:
        self.scheduler.update_turn(turn)

    def talk_control_interceptor(self) -> Callable[[str | None, AbortFn], Awaitable[bool]]:
        return self.scheduler.intercept_generation

    async def pump(self) -> int:
        return await self.scheduler.pump()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.scheduler.start()

    def dispose(self) -> None:
        self.scheduler.dispose()
        self.session.dispose()
        self.turn = 0
