"""Health check and engine settings endpoints."""

from fastapi import APIRouter, HTTPException
from pydantic import ValidationError

from backend import services
from story_driver.config import get_config, update_config

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings():
    """Get engine settings (evaluation interval, talk-control limits)."""
    return get_config(services.config_path())


@router.patch("/settings")
async def update_settings(body: dict):
    """Update engine settings (partial merge) and apply them to the live engine."""
    try:
        config = update_config(services.config_path(), body)
    except ValidationError as e:
        raise HTTPException(422, str(e))
    services.engine().configure(config)
    return config
