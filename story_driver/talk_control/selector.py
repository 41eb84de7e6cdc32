"""Reply selection for queued talk-control events.

Candidates for an event are the replies its checkpoint registers for the
event's trigger, visited in a fresh random order. The first one that passes
every gate wins:

    enabled
    speaker matches          (afterSpeak with a known speaker only)
    probability roll         rng.random() * 100 < probability
    not yet used this turn
    max_triggers not reached
"""

from __future__ import annotations

import logging
import random

from story_driver.models import TalkControlConfig, TalkControlReply
from story_driver.talk_control.events import (
    PLAYER_SPEAKER_ID,
    PendingAction,
    ReplyRuntimeState,
    TalkControlEvent,
)
from story_driver.talk_control.resolver import CharacterResolver

logger = logging.getLogger(__name__)


class ReplySelector:
    def __init__(
        self,
        config: TalkControlConfig | None,
        resolver: CharacterResolver,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self._resolver = resolver
        self._rng = rng or random.Random()
        self._states: dict[str, ReplyRuntimeState] = {}
        self.current_turn = 0

    def update_turn(self, turn: int) -> None:
        self.current_turn = max(0, int(turn))

    def reset_states(self) -> None:
        self._states.clear()

    def runtime_state(self, checkpoint_id: str, reply_index: int) -> ReplyRuntimeState:
        """State for one reply, with the per-turn counter rolled to the current turn."""
        key = f"{checkpoint_id}::{reply_index}"
        state = self._states.get(key)
        if state is None:
            state = self._states[key] = ReplyRuntimeState()
        if state.action_turn_stamp != self.current_turn:
            state.action_turn_stamp = self.current_turn
            state.actions_this_turn = 0
        return state

    def _shuffled(self, items: list) -> list:
        # Fisher-Yates, driven by the injected rng so tests can seed it
        result = list(items)
        for i in range(len(result) - 1, 0, -1):
            j = self._rng.randrange(i + 1)
            result[i], result[j] = result[j], result[i]
        return result

    def _passes_probability(self, reply: TalkControlReply) -> bool:
        return self._rng.random() * 100 < reply.probability

    def _matches_speaker(self, reply: TalkControlReply, speaker_id: str) -> bool:
        if not reply.normalized_speaker_id:
            return True
        if reply.normalized_speaker_id == PLAYER_SPEAKER_ID:
            return speaker_id == PLAYER_SPEAKER_ID
        if speaker_id == PLAYER_SPEAKER_ID:
            return False
        return speaker_id in self._resolver.expected_speaker_ids(reply)

    def select_action(self, event: TalkControlEvent, active_checkpoint_id: str | None) -> PendingAction | None:
        checkpoint_id = event.checkpoint_id or active_checkpoint_id
        if not checkpoint_id or self.config is None:
            return None
        checkpoint = self.config.checkpoints.get(checkpoint_id)
        if checkpoint is None:
            return None

        candidates = [(i, r) for i, r in enumerate(checkpoint.replies) if r.trigger == event.type]
        if not candidates:
            logger.debug("No %s replies configured for checkpoint %s", event.type, checkpoint_id)
            return None

        for reply_index, reply in self._shuffled(candidates):
            if not reply.enabled:
                continue

            if event.type == "afterSpeak" and event.speaker_id:
                if not self._matches_speaker(reply, event.speaker_id):
                    logger.debug("Skipped reply %s: speaker %s does not match", reply.responder_id, event.speaker_id)
                    continue

            if not self._passes_probability(reply):
                logger.debug("Skipped reply %s: probability gate", reply.responder_id)
                continue

            state = self.runtime_state(checkpoint_id, reply_index)
            if state.last_action_turn == self.current_turn:
                logger.debug("Skipped reply %s: already dispatched this turn", reply.responder_id)
                continue

            if reply.max_triggers is not None and state.total_trigger_count >= reply.max_triggers:
                logger.debug(
                    "Skipped reply %s: max_triggers %d reached",
                    reply.responder_id, reply.max_triggers,
                )
                continue

            logger.debug("Selected reply %s (#%d) for %s at %s", reply.responder_id, reply_index, event.type, checkpoint_id)
            return PendingAction(event, checkpoint_id, reply, state, reply_index)

        logger.debug("No eligible %s replies at checkpoint %s", event.type, checkpoint_id)
        return None
