"""TalkControlScheduler — queues narrative events and dispatches autonomous replies.

Flow:

    host / engine notifications ──► queue_event() ──► FIFO queue
                                                       │
          pump()  (generation idle)  ◄─────────────────┤
          intercept_generation()  (host about to generate)
                                                       ▼
                        ReplySelector.select_action() ──► _execute()
                                                         │ resolve character
                                                         │ static / LLM text
                                                         ▼
                                                  MessageInjector

Every dispatch runs inside _dispatch_scope(), which raises both the
intercept-suppression and self-dispatch depths. While suppressed, host
generations are not intercepted and pump() does nothing; while
self-dispatching, the scheduler ignores the MESSAGE_RECEIVED echo of its own
injected message.

pump() is cooperative: the host (or the engine on its behalf) calls it once
per lifecycle event that may have made dispatch possible. A pass dispatches
at most flush_guard_limit actions and stops early when a generation starts.
"""

from __future__ import annotations

import logging
import random
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any, Literal

from story_driver.config import EngineConfig
from story_driver.host import Host, HostEvent
from story_driver.models import LlmContent, Story, TalkControlConfig, TalkControlTrigger
from story_driver.talk_control.events import (
    PLAYER_SPEAKER_ID,
    PROVENANCE_KEY,
    PendingAction,
    ReplyRuntimeState,
    TalkControlEvent,
)
from story_driver.talk_control.injector import MessageInjector
from story_driver.talk_control.resolver import CharacterResolver
from story_driver.talk_control.selector import ReplySelector
from story_driver.text import normalize_name

logger = logging.getLogger(__name__)

ArbiterPhase = Literal["before", "after"]
AbortFn = Callable[[bool], Any]


class TalkControlScheduler:
    def __init__(
        self,
        host: Host,
        story: Story | None = None,
        config: EngineConfig | None = None,
        active_checkpoint: Callable[[], str | None] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._host = host
        self._config = config or EngineConfig()
        self._active_checkpoint = active_checkpoint or (lambda: None)
        self.talk_control: TalkControlConfig | None = None

        self._resolver = CharacterResolver(story, host)
        self._selector = ReplySelector(None, self._resolver, rng)
        self._injector = MessageInjector(host, self._config)

        self._queue: deque[TalkControlEvent] = deque()
        self._next_event_id = 1
        self._intercept_suppress_depth = 0
        self._self_dispatch_depth = 0
        self.generation_active = False
        self.flush_pending = False
        self._last_chat_id: str | None = None
        self._last_group_selected = False
        self._unsubscribers: list[Callable[[], None]] = []

        self.set_story(story)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def active_checkpoint_id(self) -> str | None:
        return self._active_checkpoint()

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def current_turn(self) -> int:
        return self._selector.current_turn

    @property
    def is_suppressed(self) -> bool:
        return self._intercept_suppress_depth > 0

    @property
    def is_self_dispatching(self) -> bool:
        return self._self_dispatch_depth > 0

    @property
    def is_started(self) -> bool:
        return bool(self._unsubscribers)

    def is_group_active(self) -> bool:
        return bool(self._host.group_id or self._host.characters)

    def configure(self, config: EngineConfig) -> None:
        self._config = config
        self._injector.config = config

    def set_story(self, story: Story | None) -> None:
        """Swap the talk-control config; reply history from the old story is dropped."""
        self.talk_control = story.talk_control if story is not None else None
        self._resolver.rebuild(story)
        self._selector.config = self.talk_control
        self._reset_state()

    def update_turn(self, turn: int) -> None:
        self._selector.update_turn(turn)

    def reply_state(self, checkpoint_id: str, reply_index: int) -> ReplyRuntimeState:
        return self._selector.runtime_state(checkpoint_id, reply_index)

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def queue_event(
        self,
        event_type: TalkControlTrigger,
        checkpoint_id: str | None,
        metadata: Mapping[str, Any] | None = None,
    ) -> TalkControlEvent | None:
        if self.talk_control is None:
            return None
        event = TalkControlEvent(self._next_event_id, event_type, checkpoint_id, dict(metadata or {}))
        self._next_event_id += 1
        self._queue.append(event)
        self.flush_pending = True
        logger.debug(
            "Queued %s for %s (queue=%d) %s",
            event_type, checkpoint_id, len(self._queue), dict(event.metadata),
        )
        return event

    def next_pending_action(self) -> PendingAction | None:
        """Pop events until one yields a dispatchable action; the rest are dropped."""
        while self._queue:
            event = self._queue.popleft()
            action = self._selector.select_action(event, self.active_checkpoint_id)
            if action is not None:
                return action
        return None

    # ------------------------------------------------------------------
    # Notifications from the engine
    # ------------------------------------------------------------------

    def set_checkpoint(
        self,
        checkpoint_id: str | None,
        previous_checkpoint_id: str | None = None,
        emit_enter: bool = True,
    ) -> None:
        if previous_checkpoint_id and previous_checkpoint_id != checkpoint_id:
            self.queue_event("onExit", previous_checkpoint_id)
        if checkpoint_id and emit_enter:
            self.queue_event("onEnter", checkpoint_id)

    def notify_arbiter_phase(self, phase: ArbiterPhase) -> None:
        checkpoint_id = self.active_checkpoint_id
        if not checkpoint_id:
            return
        self.queue_event("beforeArbiter" if phase == "before" else "afterArbiter", checkpoint_id)

    def notify_after_speak(self, speaker_name: str | None = None) -> None:
        checkpoint_id = self.active_checkpoint_id
        if not checkpoint_id:
            return
        self.queue_event("afterSpeak", checkpoint_id, {
            "speaker_id": normalize_name(speaker_name) if speaker_name else "",
            "speaker_name": speaker_name,
        })

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    @contextmanager
    def _dispatch_scope(self) -> Iterator[None]:
        self._intercept_suppress_depth += 1
        self._self_dispatch_depth += 1
        try:
            yield
        finally:
            self._self_dispatch_depth = max(0, self._self_dispatch_depth - 1)
            self._intercept_suppress_depth = max(0, self._intercept_suppress_depth - 1)

    async def _execute(self, action: PendingAction) -> bool:
        """Dispatch one action. Returns True when a message reached the chat."""
        reply = action.reply
        with self._dispatch_scope():
            if not self.is_group_active():
                logger.warning(
                    "Skipped %s reply from %r at %s: group not active",
                    action.event.type, reply.responder_id, action.checkpoint_id,
                )
                return False

            logger.info("Executing %s reply from %r at %s", action.event.type, reply.responder_id, action.checkpoint_id)
            try:
                resolved = self._resolver.resolve_character(reply)
                if resolved is None:
                    return False
                char_id, character = resolved

                if isinstance(reply.content, LlmContent):
                    kind = "llm"
                    text = await self._injector.generate_llm_reply(reply, char_id)
                else:
                    kind = "static"
                    text = self._injector.pick_static_reply_text(reply, character.name)

                if not text:
                    logger.warning("Reply text empty for %r at %s", reply.responder_id, action.checkpoint_id)
                    return False

                dispatched = await self._injector.inject_message(
                    reply, action.checkpoint_id, action.event.type, character, text, kind,
                )
            except Exception as e:
                logger.warning("Talk-control dispatch failed for %r: %s", reply.responder_id, e)
                return False

            if dispatched:
                action.state.credit()
            return dispatched

    async def pump(self) -> int:
        """Drain queued events while generation is idle. Returns dispatch count."""
        if self.talk_control is None or not self.is_group_active():
            return 0
        if self.generation_active or self.is_suppressed:
            return 0

        self.flush_pending = False
        limit = self._config.flush_guard_limit
        dispatched = 0
        attempts = 0

        while attempts < limit:
            action = self.next_pending_action()
            if action is None:
                return dispatched
            attempts += 1
            logger.debug("Dispatching queued %s for %s", action.event.type, action.checkpoint_id)
            if await self._execute(action):
                dispatched += 1

            if self.generation_active:
                logger.info("Flush halted by generation start (%d events pending)", len(self._queue))
                self.flush_pending = bool(self._queue)
                return dispatched

        if self._queue:
            logger.warning("Flush stopped after %d attempts (%d events left)", limit, len(self._queue))
            self.flush_pending = True
        return dispatched

    async def intercept_generation(self, generation_type: str | None, abort: AbortFn) -> bool:
        """Host hook before a generation: replace it with a pending reply if one is due."""
        logger.debug("Intercept check for %s generation", generation_type)
        if self.talk_control is None or not self.is_group_active():
            return False
        if self.is_suppressed or generation_type == "quiet":
            return False

        action = self.next_pending_action()
        if action is None:
            return False

        logger.info(
            "Intercepting %s generation for %s reply from %r",
            generation_type, action.event.type, action.reply.responder_id,
        )
        try:
            abort(True)
        except Exception as e:
            logger.warning("Host abort failed: %s", e)

        return await self._execute(action)

    # ------------------------------------------------------------------
    # Host events
    # ------------------------------------------------------------------

    def on_message_received(self, message_index: int, source: str | None = None) -> None:
        if self.talk_control is None or self.is_self_dispatching:
            return
        chat = self._host.chat
        if not 0 <= message_index < len(chat):
            return
        message = chat[message_index]
        if message.is_system or PROVENANCE_KEY in message.extra:
            return

        if message.is_user:
            speaker_name = speaker_id = PLAYER_SPEAKER_ID
        else:
            speaker_name = message.name
            speaker_id = normalize_name(speaker_name)

        self.queue_event("afterSpeak", self.active_checkpoint_id, {
            "speaker_id": speaker_id,
            "speaker_name": speaker_name,
            "message_index": message_index,
            "source": source,
        })

    def on_generation_started(self, generation_type: str | None = None, options: Any = None, dry_run: bool = False) -> None:
        if generation_type is None or generation_type == "quiet" or dry_run:
            logger.debug("Ignoring generation start (type=%s dry_run=%s)", generation_type, dry_run)
            return
        self.generation_active = True

    async def on_generation_settled(self, *_: Any) -> None:
        self.generation_active = False
        await self.pump()

    def on_chat_changed(self, *_: Any) -> None:
        chat_id = str(self._host.chat_id).strip() if self._host.chat_id else None
        group_selected = bool(self._host.group_id)
        if chat_id == self._last_chat_id and group_selected == self._last_group_selected:
            return
        logger.info(
            "Chat changed %s -> %s (group %s -> %s); resetting talk control",
            self._last_chat_id, chat_id, self._last_group_selected, group_selected,
        )
        self._last_chat_id = chat_id
        self._last_group_selected = group_selected
        self._reset_state()

    def _reset_state(self) -> None:
        self._selector.reset_states()
        self._queue.clear()
        self.generation_active = False
        self.flush_pending = False
        self._intercept_suppress_depth = 0
        self._self_dispatch_depth = 0
        self._next_event_id = 1

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self.is_started:
            return
        events = self._host.events
        self._unsubscribers = [
            events.subscribe(HostEvent.MESSAGE_RECEIVED, self.on_message_received),
            events.subscribe(HostEvent.GENERATION_STARTED, self.on_generation_started),
            events.subscribe(HostEvent.GENERATION_STOPPED, self.on_generation_settled),
            events.subscribe(HostEvent.GENERATION_ENDED, self.on_generation_settled),
            events.subscribe(HostEvent.CHAT_CHANGED, self.on_chat_changed),
        ]
        self.on_chat_changed()

    def dispose(self) -> None:
        while self._unsubscribers:
            self._unsubscribers.pop()()
        self._reset_state()
        self.talk_control = None
        self._selector.config = None
        self._last_chat_id = None
        self._last_group_selected = False
