"""Talk control: autonomous character replies driven by narrative events.

Replies are registered per checkpoint and trigger (afterSpeak, beforeArbiter,
afterArbiter, onEnter, onExit). TalkControlScheduler queues events, picks an
eligible reply with ReplySelector and dispatches it through MessageInjector,
either in place of a host generation (intercept_generation) or when the host
is idle (pump).
"""

from .events import (  # noqa: F401
    PLAYER_SPEAKER_ID,
    PROVENANCE_KEY,
    PendingAction,
    ReplyRuntimeState,
    TalkControlEvent,
)
from .injector import MessageInjector, is_truncated_text  # noqa: F401
from .resolver import CharacterResolver  # noqa: F401
from .scheduler import TalkControlScheduler  # noqa: F401
from .selector import ReplySelector  # noqa: F401
