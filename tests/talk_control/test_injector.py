"""Tests for talk-control reply text production."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from story_driver.config import EngineConfig
from story_driver.host import Character
from story_driver.models import TalkControlReply
from story_driver.talk_control.injector import MessageInjector, is_truncated_text


def _reply(content: dict, **fields) -> TalkControlReply:
    return TalkControlReply.model_validate({"member_id": "bard", "trigger": "onEnter", "content": content, **fields})


def _quiet_host(*outputs) -> MagicMock:
    host = MagicMock()
    host.generate_quiet_prompt = AsyncMock(side_effect=list(outputs))
    return host


class TestTruncationHeuristic:
    @pytest.mark.parametrize("text", [
        "She raises her mug and",
        "Yes.",
        'He said "come here and sit.',
    ])
    def test_truncated(self, text: str):
        assert is_truncated_text(text)

    @pytest.mark.parametrize("text", [
        "",
        "The fire crackles in the hearth tonight.",
        'Lute grins. "Another song, then?"',
    ])
    def test_complete(self, text: str):
        assert not is_truncated_text(text)


class TestStaticText:
    def test_macros_and_length(self, host):
        injector = MessageInjector(host)
        reply = _reply({"kind": "static", "text": "Welcome, {{user}}! I am {{char}}."}, max_length=14)
        assert injector.pick_static_reply_text(reply, "Lute") == "Welcome, Ro..."

    def test_config_default_length(self, host):
        injector = MessageInjector(host, EngineConfig(reply_max_length=8))
        assert injector.pick_static_reply_text(_reply({"kind": "static", "text": "Good evening"})) == "Good..."

    def test_llm_reply_has_no_static_text(self, host):
        injector = MessageInjector(host)
        assert injector.pick_static_reply_text(_reply({"kind": "llm", "instruction": "Greet."})) == ""


class TestLlmText:
    async def test_forces_character(self):
        host = _quiet_host("Well met, traveller, and welcome.")
        injector = MessageInjector(host)
        text = await injector.generate_llm_reply(_reply({"kind": "llm", "instruction": "Greet."}), 3)
        assert text == "Well met, traveller, and welcome."
        request = host.generate_quiet_prompt.call_args[0][0]
        assert request.force_character_id == 3
        assert request.quiet_prompt == "Greet."
        assert request.quiet_to_loud is False

    async def test_continues_truncated_output(self):
        host = _quiet_host("She raises her mug and", " toasts the whole room.")
        injector = MessageInjector(host)
        text = await injector.generate_llm_reply(_reply({"kind": "llm", "instruction": "Toast."}), 0)
        assert text == "She raises her mug and toasts the whole room."
        follow_up = host.generate_quiet_prompt.call_args_list[1][0][0]
        assert "Continue your previous response" in follow_up.quiet_prompt
        assert "She raises her mug and" in follow_up.quiet_prompt

    async def test_continuation_attempts_are_capped(self):
        host = _quiet_host("One", " two", " three", " four")
        injector = MessageInjector(host, EngineConfig(max_continuation_attempts=2))
        text = await injector.generate_llm_reply(_reply({"kind": "llm", "instruction": "Count."}), 0)
        assert text == "One two three"
        assert host.generate_quiet_prompt.await_count == 3

    async def test_continuation_disabled(self):
        host = _quiet_host("She raises her mug and")
        injector = MessageInjector(host, EngineConfig(continuation_enabled=False))
        text = await injector.generate_llm_reply(_reply({"kind": "llm", "instruction": "Toast."}), 0)
        assert text == "She raises her mug and"
        assert host.generate_quiet_prompt.await_count == 1

    async def test_generation_failure_yields_empty(self):
        host = _quiet_host(RuntimeError("backend down"))
        injector = MessageInjector(host)
        assert await injector.generate_llm_reply(_reply({"kind": "llm", "instruction": "Toast."}), 0) == ""

    async def test_blank_instruction(self):
        host = _quiet_host()
        injector = MessageInjector(host)
        assert await injector.generate_llm_reply(_reply({"kind": "llm", "instruction": "  "}), 0) == ""
        host.generate_quiet_prompt.assert_not_called()


class TestInject:
    async def test_blank_text_is_not_sent(self, host):
        injector = MessageInjector(host)
        sent = await injector.inject_message(
            _reply({"kind": "static", "text": ""}), "tavern", "onEnter", Character(name="Lute"), "   ", "static",
        )
        assert sent is False
        assert host.chat == []
        assert host.save_count == 0
