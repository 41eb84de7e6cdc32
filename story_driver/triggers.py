"""Transition trigger evaluation.

Regex transitions are matched against chat text; the first pattern of a
transition that matches is reported alongside it. Timed transitions are not
text-driven: find_timed_transitions() returns the ones whose turn threshold
has been reached so the caller can decide when to act on them.

Compiled patterns are cached by (source, flags). A pattern that fails to
compile is logged once and then skipped.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from functools import lru_cache

from story_driver.models import RegexPattern, RegexTrigger, TimedTrigger, Transition
from story_driver.text import clamp_text

logger = logging.getLogger(__name__)

# JS flag letters with an `re` counterpart; g/y/u/d/v have none and are ignored
_FLAG_MAP = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
}


@dataclass(frozen=True)
class TransitionTriggerMatch:
    transition: Transition
    trigger: RegexTrigger
    pattern: RegexPattern


def translate_flags(flags: str) -> re.RegexFlag:
    result = re.RegexFlag(0)
    for letter in flags:
        result |= _FLAG_MAP.get(letter, re.RegexFlag(0))
    return result


@lru_cache(maxsize=512)
def _compile(source: str, flags: str) -> re.Pattern[str] | None:
    try:
        return re.compile(source, translate_flags(flags))
    except re.error as e:
        logger.warning("Skipping malformed trigger pattern /%s/%s: %s", source, flags, e)
        return None


def compile_pattern(pattern: RegexPattern) -> re.Pattern[str] | None:
    """Compile an authored pattern; None when it is not a valid regex."""
    return _compile(pattern.pattern, pattern.flags)


def evaluate_transition_triggers(
    text: str,
    transitions: Iterable[Transition],
) -> list[TransitionTriggerMatch]:
    """Return every regex transition whose patterns match `text`, in input order."""
    if not text or not text.strip():
        return []

    matches: list[TransitionTriggerMatch] = []
    for transition in transitions:
        trigger = transition.trigger
        if not isinstance(trigger, RegexTrigger):
            continue
        for pattern in trigger.patterns:
            compiled = compile_pattern(pattern)
            if compiled is not None and compiled.search(text):
                matches.append(TransitionTriggerMatch(transition, trigger, pattern))
                break

    if matches:
        logger.debug(
            "Trigger matches %s for %r",
            [m.transition.id for m in matches], clamp_text(text, 80),
        )
    return matches


def find_timed_transitions(
    transitions: Iterable[Transition],
    checkpoint_turn_count: int,
) -> list[Transition]:
    """Timed transitions whose threshold is reached, lowest threshold first."""
    due = [
        t for t in transitions
        if isinstance(t.trigger, TimedTrigger)
        and t.trigger.within_turns > 0
        and checkpoint_turn_count >= t.trigger.within_turns
    ]
    # sorted() is stable, so equal thresholds keep authoring order
    return sorted(due, key=lambda t: t.trigger.within_turns)
