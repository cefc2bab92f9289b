"""FastAPI API endpoints under /api.

Endpoint groups: settings (health, config, check-connection), sessions (state,
turns, retry, customization) and the host bridge WebSocket.
"""

from fastapi import APIRouter

from .bridge import router as bridge_router
from .sessions import router as sessions_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(sessions_router)
router.include_router(bridge_router)
