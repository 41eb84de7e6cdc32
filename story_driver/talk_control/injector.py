"""Produces reply text and appends talk-control messages to the host chat.

Static replies are expanded through the host's macro substitution. LLM
replies go through the host's quiet generation with the resolved character
forced; output that looks cut off is continued up to
max_continuation_attempts more times.

Injected messages follow the host's normal message lifecycle:

    chat.append -> MESSAGE_RECEIVED -> add_one_message
                -> CHARACTER_MESSAGE_RENDERED -> save_chat
"""

from __future__ import annotations

import logging
import re

from story_driver.config import EngineConfig
from story_driver.host import Character, ChatMessage, Host, HostEvent, QuietPromptRequest, message_timestamp
from story_driver.models import LlmContent, StaticContent, TalkControlReply
from story_driver.talk_control.events import PROVENANCE_KEY
from story_driver.text import truncate_reply

logger = logging.getLogger(__name__)

_ENDS_WITH_PUNCTUATION = re.compile(r"""[.!?:;][\s"'`]*$""")

CONTINUE_INSTRUCTION = (
    "Continue your previous response. Complete it naturally without repeating "
    "what was already said:\n\nPrevious: {previous}"
)


def is_truncated_text(text: str) -> bool:
    """Heuristic: no closing punctuation, very short, or an unbalanced quote."""
    trimmed = text.strip() if text else ""
    if not trimmed:
        return False
    if not _ENDS_WITH_PUNCTUATION.search(trimmed):
        return True
    if len(trimmed) < 20:
        return True
    return trimmed.count('"') % 2 != 0


class MessageInjector:
    def __init__(self, host: Host, config: EngineConfig | None = None) -> None:
        self._host = host
        self.config = config or EngineConfig()

    def _max_length(self, reply: TalkControlReply) -> int:
        return reply.max_length or self.config.reply_max_length

    # ------------------------------------------------------------------
    # Text
    # ------------------------------------------------------------------

    def pick_static_reply_text(self, reply: TalkControlReply, char_name: str | None = None) -> str:
        if not isinstance(reply.content, StaticContent):
            return ""
        text = reply.content.text
        expanded = self._host.substitute_params(text, char_name)
        return truncate_reply(expanded if isinstance(expanded, str) else text, self._max_length(reply))

    async def generate_llm_reply(self, reply: TalkControlReply, char_id: int) -> str:
        """Quiet-generate a reply for the forced character. Failures yield ""."""
        if not isinstance(reply.content, LlmContent) or not reply.content.instruction.strip():
            logger.warning("LLM instruction missing for talk-control reply %r", reply.responder_id)
            return ""

        logger.info("Generating talk-control reply for %r", reply.responder_id)
        try:
            result = await self._quiet(reply.content.instruction, reply, char_id)
        except Exception as e:
            logger.warning("Quiet generation failed for %r: %s", reply.responder_id, e)
            return ""

        if result and self.config.continuation_enabled and is_truncated_text(result):
            result += await self._continue(result, reply, char_id)

        return truncate_reply(result, self._max_length(reply))

    async def _quiet(self, prompt: str, reply: TalkControlReply, char_id: int) -> str:
        return await self._host.generate_quiet_prompt(QuietPromptRequest(
            quiet_prompt=prompt,
            quiet_to_loud=False,
            quiet_name=reply.responder_id,
            force_character_id=char_id,
            remove_reasoning=True,
        ))

    async def _continue(self, previous: str, reply: TalkControlReply, char_id: int) -> str:
        extra = ""
        for attempt in range(self.config.max_continuation_attempts):
            try:
                continued = await self._quiet(
                    CONTINUE_INSTRUCTION.format(previous=previous + extra), reply, char_id,
                )
            except Exception as e:
                logger.warning("Continuation %d failed for %r: %s", attempt + 1, reply.responder_id, e)
                break
            if not continued or not continued.strip():
                break
            extra += continued
            if not is_truncated_text(previous + extra):
                break
        return extra

    # ------------------------------------------------------------------
    # Injection
    # ------------------------------------------------------------------

    async def inject_message(
        self,
        reply: TalkControlReply,
        checkpoint_id: str,
        event_type: str,
        character: Character,
        text: str,
        kind: str,
    ) -> bool:
        """Append the reply to the chat. Returns False when there was nothing to send."""
        content = text.strip() if isinstance(text, str) else ""
        if not content:
            logger.warning(
                "Reply text empty for %r at %s (%s)", reply.responder_id, checkpoint_id, event_type,
            )
            return False

        message = ChatMessage(
            name=character.name or reply.responder_id,
            mes=content,
            is_user=False,
            is_system=False,
            send_date=message_timestamp(),
            extra={
                "api": "storyDriver",
                "model": "talkControl",
                "reason": f"talkControl:{event_type}",
                PROVENANCE_KEY: {
                    "kind": kind,
                    "checkpoint_id": checkpoint_id,
                    "event": event_type,
                },
            },
            swipes=[content],
        )

        host = self._host
        host.chat.append(message)
        message_index = len(host.chat) - 1

        await host.events.emit(HostEvent.MESSAGE_RECEIVED, message_index, "talkControl")
        host.add_one_message(message)
        await host.events.emit(HostEvent.CHARACTER_MESSAGE_RENDERED, message_index, "talkControl")
        await host.save_chat()

        logger.info(
            "Injected %s reply from %s at %s (%s) as message %d",
            kind, message.name, checkpoint_id, event_type, message_index,
        )
        return True
