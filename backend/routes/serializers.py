"""JSON shapes for engine objects returned by the API."""

from typing import Any

from story_driver.engine import StoryEngine, TurnEvaluation
from story_driver.host import ChatMessage
from story_driver.triggers import TransitionTriggerMatch


def state_payload(engine: StoryEngine) -> dict[str, Any]:
    story = engine.story
    runtime = engine.runtime
    checkpoints = []
    if story is not None:
        for cp, status in zip(story.checkpoints, engine.checkpoint_statuses()):
            checkpoints.append({"id": cp.id, "name": cp.name, "objective": cp.objective, "status": status.value})
    return {
        "story": story.title if story else None,
        "story_key": engine.session.story_key,
        "chat_id": engine.session.chat_id,
        "group_chat_selected": engine.session.group_chat_selected,
        "hydrated": engine.session.is_hydrated(),
        "can_persist": engine.session.can_persist(),
        "turn": engine.turn,
        "runtime": runtime.model_dump(mode="json"),
        "checkpoints": checkpoints,
        "talk_control": {
            "configured": engine.scheduler.talk_control is not None,
            "queue_length": engine.scheduler.queue_length,
            "generation_active": engine.scheduler.generation_active,
        },
    }


def match_payload(match: TransitionTriggerMatch) -> dict[str, Any]:
    return {
        "transition_id": match.transition.id,
        "from": match.transition.from_id,
        "to": match.transition.to_id,
        "pattern": str(match.pattern),
        "condition": match.trigger.condition,
    }


def evaluation_payload(evaluation: TurnEvaluation | None) -> dict[str, Any] | None:
    if evaluation is None:
        return None
    return {
        "reason": evaluation.reason,
        "turn": evaluation.turn,
        "matches": [match_payload(m) for m in evaluation.matches],
        "timed": [
            {"transition_id": t.id, "to": t.to_id, "within_turns": t.trigger.within_turns}
            for t in evaluation.timed
        ],
    }


def message_payload(index: int, message: ChatMessage) -> dict[str, Any]:
    return {"index": index, **message.model_dump(mode="json")}
