"""FastAPI API endpoints under /api.

Endpoint groups: settings (health, engine config), story (load, state,
chat context, checkpoints, trigger evaluation, arbiter phases) and chat
(messages, generation lifecycle). All of them drive the single engine
created by backend.services.init_services().
"""

from fastapi import APIRouter

from .chat import router as chat_router
from .settings import router as settings_router
from .story import router as story_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(story_router)
router.include_router(chat_router)
