"""HTTP route registry for gateway APIs (mounted under /api)."""

from fastapi import APIRouter

from .routes.chat import router as chat_router
from .routes.sessions import router as sessions_router
from .routes.status import router as status_router

router = APIRouter()

router.include_router(chat_router, tags=["chat"])
router.include_router(sessions_router, tags=["sessions"])
router.include_router(status_router, tags=["status"])
