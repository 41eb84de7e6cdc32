"""Maps talk-control replies to host characters through story roles.

A reply names its responder either directly (a character name) or by a story
role key / role display name. The role lookup maps both normalized forms to
the display name, so "bard", "Bard" and "The Bard" can all reach the same
character when the story declares {"bard": "The Bard"}.
"""

from __future__ import annotations

import logging

from story_driver.host import Character, Host
from story_driver.models import Story, TalkControlReply
from story_driver.text import normalize_name

logger = logging.getLogger(__name__)


class CharacterResolver:
    def __init__(self, story: Story | None, host: Host) -> None:
        self._host = host
        self._role_lookup: dict[str, str] = {}
        self.rebuild(story)

    def rebuild(self, story: Story | None) -> None:
        self._role_lookup.clear()
        if story is None:
            return
        for role_key, display_name in story.roles.items():
            for alias in (display_name, role_key):
                norm = normalize_name(alias)
                if norm:
                    self._role_lookup[norm] = display_name

    def candidate_names(self, reply: TalkControlReply) -> list[str]:
        names: list[str] = []
        if reply.responder_id:
            names.append(reply.responder_id)
        mapped = self._role_lookup.get(reply.normalized_id)
        if mapped and mapped not in names:
            names.append(mapped)
        return names

    def resolve_character_id(self, reply: TalkControlReply) -> int | None:
        characters = self._host.characters
        for candidate in self.candidate_names(reply):
            found = self._host.get_character_id_by_name(candidate)
            if found is not None and found >= 0:
                return found
            target = normalize_name(candidate)
            for i, char in enumerate(characters):
                if normalize_name(char.name) == target:
                    return i
        return None

    def resolve_character(self, reply: TalkControlReply) -> tuple[int, Character] | None:
        char_id = self.resolve_character_id(reply)
        if char_id is None:
            logger.warning("Unable to resolve character for talk-control reply %r", reply.responder_id)
            return None
        if not 0 <= char_id < len(self._host.characters):
            logger.warning("Character index %d missing for talk-control reply %r", char_id, reply.responder_id)
            return None
        return char_id, self._host.characters[char_id]

    def expected_speaker_ids(self, reply: TalkControlReply) -> list[str]:
        """Normalized speaker ids that satisfy an afterSpeak reply."""
        expected: list[str] = []
        if reply.normalized_speaker_id:
            expected.append(reply.normalized_speaker_id)
        mapped = self._role_lookup.get(reply.normalized_speaker_id)
        if mapped:
            norm = normalize_name(mapped)
            if norm and norm not in expected:
                expected.append(norm)
        return expected
