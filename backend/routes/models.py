"""Pydantic request/response models for API endpoints."""

from typing import Any, Literal

from pydantic import BaseModel

from story_driver.models import CheckpointStatus


class LoadStoryBody(BaseModel):
    story: dict[str, Any]
    story_key: str | None = None


class ChatContextBody(BaseModel):
    chat_id: str | None = None
    group_id: str | None = None
    characters: list[str] | None = None
    user_name: str | None = None


class StatusBody(BaseModel):
    status: CheckpointStatus


class EvaluateBody(BaseModel):
    text: str


class MessageBody(BaseModel):
    text: str
    name: str = ""
    is_user: bool = False
    is_system: bool = False


class GenerationBody(BaseModel):
    type: str | None = "normal"
    dry_run: bool = False


ArbiterPhaseParam = Literal["before", "after"]
