"""Host ports — what the engine needs from the chat application around it.

The engine never owns the chat. It reads the transcript and character
roster, expands macros, asks for one-off ("quiet") generations and appends
messages through a Host. Host lifecycle notifications arrive on the host's
EventBus:

    message_received            (message_index, source)
    character_message_rendered  (message_index, source)
    generation_started          (generation_type, options, dry_run)
    generation_stopped / generation_ended
    chat_changed                ()

LocalHost is the in-process implementation used by the HTTP backend and the
tests: it keeps the chat in memory and generates through an injected LLM.
"""

from __future__ import annotations

import inspect
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, Field

from story_driver.llm import LLM
from story_driver.prompts import build_quiet_prompt, substitute_macros

logger = logging.getLogger(__name__)

_REASONING_BLOCK = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)


class HostEvent(str, Enum):
    MESSAGE_RECEIVED = "message_received"
    CHARACTER_MESSAGE_RENDERED = "character_message_rendered"
    GENERATION_STARTED = "generation_started"
    GENERATION_STOPPED = "generation_stopped"
    GENERATION_ENDED = "generation_ended"
    CHAT_CHANGED = "chat_changed"


# ---------------------------------------------------------------------------
# Chat data
# ---------------------------------------------------------------------------

def message_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class Character(BaseModel):
    name: str
    avatar: str = "none"


class ChatMessage(BaseModel):
    name: str
    mes: str
    is_user: bool = False
    is_system: bool = False
    send_date: str = Field(default_factory=message_timestamp)
    extra: dict[str, Any] = Field(default_factory=dict)
    swipes: list[str] = Field(default_factory=list)


class QuietPromptRequest(BaseModel):
    """A one-off generation that is returned to the caller, not posted to chat."""

    quiet_prompt: str
    quiet_to_loud: bool = False
    quiet_name: str = ""
    force_character_id: int | None = None
    remove_reasoning: bool = True


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------

Handler = Callable[..., Awaitable[None] | None]


class EventBus:
    """Named events with revocable subscriptions. Handlers run in order."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    async def emit(self, event: str, *args: Any) -> None:
        # snapshot: handlers may unsubscribe while we iterate
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler for %s failed", event)


# ---------------------------------------------------------------------------
# Host protocol
# ---------------------------------------------------------------------------

class Host(Protocol):
    chat: list[ChatMessage]
    characters: list[Character]
    chat_id: str | None
    group_id: str | None
    events: EventBus

    def get_character_id_by_name(self, name: str) -> int | None: ...

    def substitute_params(self, text: str, char_name: str | None = None) -> str: ...

    async def generate_quiet_prompt(self, request: QuietPromptRequest) -> str: ...

    def add_one_message(self, message: ChatMessage) -> None: ...

    async def save_chat(self) -> None: ...


# ---------------------------------------------------------------------------
# LocalHost
# ---------------------------------------------------------------------------

class LocalHost:
    """In-memory chat host generating through an LLM callable."""

    def __init__(
        self,
        llm: LLM,
        user_name: str = "User",
        characters: list[Character] | None = None,
        chat_id: str | None = None,
        group_id: str | None = None,
    ) -> None:
        self._llm = llm
        self.user_name = user_name
        self.characters: list[Character] = list(characters or [])
        self.chat: list[ChatMessage] = []
        self.chat_id = chat_id
        self.group_id = group_id
        self.events = EventBus()
        self.rendered: list[ChatMessage] = []
        self.save_count = 0

    def get_character_id_by_name(self, name: str) -> int | None:
        search = name.strip().lower() if name else ""
        if not search:
            return None
        for i, char in enumerate(self.characters):
            if char.name.strip().lower() == search:
                return i
        return None

    def substitute_params(self, text: str, char_name: str | None = None) -> str:
        return substitute_macros(text, self.user_name, char_name)

    async def generate_quiet_prompt(self, request: QuietPromptRequest) -> str:
        name = request.quiet_name
        if request.force_character_id is not None and 0 <= request.force_character_id < len(self.characters):
            name = self.characters[request.force_character_id].name
        history = [{"name": m.name, "text": m.mes} for m in self.chat if not m.is_system]
        instruction = self.substitute_params(request.quiet_prompt, name)
        prompt = build_quiet_prompt(history, instruction, name)

        text = await self._llm("talk_control", prompt)
        if request.remove_reasoning:
            text = _REASONING_BLOCK.sub("", text)
        return text.strip()

    def add_one_message(self, message: ChatMessage) -> None:
        self.rendered.append(message)

    async def save_chat(self) -> None:
        self.save_count += 1

