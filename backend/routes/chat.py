"""Chat message and generation lifecycle endpoints.

These stand in for the chat application's own events: posting a message
fires MESSAGE_RECEIVED, and the generation endpoints bracket a host
generation so talk control can intercept it or flush afterwards.
"""

from fastapi import APIRouter, HTTPException

from backend import services
from story_driver.host import ChatMessage, HostEvent

from .models import GenerationBody, MessageBody
from .serializers import evaluation_payload, message_payload

router = APIRouter()


def _messages_since(start: int) -> list[dict]:
    chat = services.host().chat
    return [message_payload(i, chat[i]) for i in range(start, len(chat))]


@router.get("/messages")
async def list_messages():
    """Full chat transcript."""
    return _messages_since(0)


@router.post("/messages", status_code=201)
async def post_message(body: MessageBody):
    """Append a message, count user turns and flush talk control."""
    host = services.host()
    engine = services.engine()
    name = body.name or (host.user_name if body.is_user else "")
    if not name:
        raise HTTPException(422, "Character messages need a name")

    host.chat.append(ChatMessage(name=name, mes=body.text, is_user=body.is_user, is_system=body.is_system))
    index = len(host.chat) - 1
    await host.events.emit(HostEvent.MESSAGE_RECEIVED, index, "api")

    evaluation = engine.handle_user_text(body.text) if body.is_user and not body.is_system else None
    await engine.pump()
    return {
        "message_index": index,
        "evaluation": evaluation_payload(evaluation),
        "messages": _messages_since(index),
    }


@router.post("/generation/start")
async def generation_start(body: GenerationBody):
    """Host is about to generate; talk control may take the turn instead."""
    host = services.host()
    engine = services.engine()
    start = len(host.chat)
    aborted: list[bool] = []

    intercept = engine.talk_control_interceptor()
    intercepted = await intercept(body.type, aborted.append)
    if not aborted:
        await host.events.emit(HostEvent.GENERATION_STARTED, body.type, {}, body.dry_run)
    return {"intercepted": intercepted, "aborted": bool(aborted), "messages": _messages_since(start)}


@router.post("/generation/{phase}")
async def generation_settled(phase: str):
    """Host generation stopped or ended; talk control flushes its queue."""
    events = {"stop": HostEvent.GENERATION_STOPPED, "end": HostEvent.GENERATION_ENDED}
    if phase not in events:
        raise HTTPException(404, "Unknown generation phase")
    host = services.host()
    start = len(host.chat)
    await host.events.emit(events[phase])
    return {"messages": _messages_since(start)}
