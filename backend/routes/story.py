"""Story loading, runtime state, checkpoint and trigger endpoints."""

from fastapi import APIRouter, HTTPException

from backend import services
from story_driver.host import Character, HostEvent
from story_driver.models import StoryValidationError, parse_story

from .models import ArbiterPhaseParam, ChatContextBody, EvaluateBody, LoadStoryBody, StatusBody
from .serializers import match_payload, state_payload

router = APIRouter()


def _require_story():
    engine = services.engine()
    if engine.story is None:
        raise HTTPException(409, "No story loaded")
    return engine


def _require_checkpoint(index: int):
    engine = _require_story()
    if index < 0 or index >= len(engine.story.checkpoints):
        raise HTTPException(404, "Checkpoint not found")
    return engine


@router.post("/story")
async def load_story(body: LoadStoryBody):
    """Validate and load a story, then hydrate the current chat."""
    try:
        story = parse_story(body.story)
    except StoryValidationError as e:
        raise HTTPException(422, str(e))
    engine = services.engine()
    engine.set_story(story, body.story_key)
    hydrated = engine.hydrate()
    return {"source": hydrated.source, **state_payload(engine)}


@router.get("/state")
async def get_state():
    """Runtime snapshot, derived checkpoint statuses and hydration info."""
    return state_payload(services.engine())


@router.put("/chat-context")
async def set_chat_context(body: ChatContextBody):
    """Switch chat (and roster), then hydrate the runtime for it."""
    host = services.host()
    engine = services.engine()
    host.chat_id = body.chat_id
    host.group_id = body.group_id
    if body.characters is not None:
        host.characters = [Character(name=name) for name in body.characters]
    if body.user_name:
        host.user_name = body.user_name
    host.chat = []
    await host.events.emit(HostEvent.CHAT_CHANGED)

    engine.set_chat_context(body.chat_id, bool(body.group_id))
    hydrated = engine.hydrate()
    return {"source": hydrated.source, **state_payload(engine)}


@router.post("/checkpoints/{index}/activate")
async def activate_checkpoint(index: int):
    """Make a checkpoint current; queues onExit/onEnter talk-control events."""
    engine = _require_checkpoint(index)
    engine.activate_index(index)
    await engine.pump()
    return state_payload(engine)


@router.patch("/checkpoints/{index}/status")
async def update_checkpoint_status(index: int, body: StatusBody):
    """Override one checkpoint's status (failed is sticky until changed here)."""
    engine = _require_checkpoint(index)
    engine.update_checkpoint_status(index, body.status)
    return state_payload(engine)


@router.post("/evaluate")
async def evaluate(body: EvaluateBody):
    """Match text against the active checkpoint's regex transitions."""
    engine = _require_story()
    return {"matches": [match_payload(m) for m in engine.evaluate_transition_triggers(body.text)]}


@router.post("/talk-control/arbiter/{phase}")
async def arbiter_phase(phase: ArbiterPhaseParam):
    """Signal the arbiter phase; queues beforeArbiter/afterArbiter replies."""
    engine = _require_story()
    engine.notify_talk_control_arbiter_phase(phase)
    dispatched = await engine.pump()
    return {"dispatched": dispatched, **state_payload(engine)}
