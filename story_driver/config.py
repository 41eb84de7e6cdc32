"""Engine settings (evaluation cadence, talk-control limits)."""

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from story_driver.state import DEFAULT_INTERVAL_TURNS

logger = logging.getLogger(__name__)


class EngineConfig(BaseModel):
    interval_turns: int = Field(default=DEFAULT_INTERVAL_TURNS, ge=1)
    flush_guard_limit: int = Field(default=20, ge=1)
    reply_max_length: int = Field(default=2000, ge=1)
    continuation_enabled: bool = True
    max_continuation_attempts: int = Field(default=2, ge=0)


def get_config(path: Path) -> EngineConfig:
    """Read config, returning defaults merged with stored values."""
    config = EngineConfig().model_dump()
    if path.is_file():
        try:
            stored = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable engine config %s: %s", path, e)
            return EngineConfig()
        if not isinstance(stored, dict):
            logger.warning("Ignoring engine config %s: expected an object", path)
            return EngineConfig()
        config.update({k: v for k, v in stored.items() if k in config})
    try:
        return EngineConfig.model_validate(config)
    except ValidationError as e:
        logger.warning("Ignoring invalid stored engine config %s: %s", path, e)
        return EngineConfig()


def update_config(path: Path, fields: dict[str, Any]) -> EngineConfig:
    """Merge fields into config and persist. Returns full config.

    Unknown keys are ignored; invalid values raise ValidationError.
    """
    merged = get_config(path).model_dump()
    merged.update({k: v for k, v in fields.items() if k in merged})
    config = EngineConfig.model_validate(merged)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(config.model_dump_json(indent=2))
    return config
