# pyright: reportMissingImports=false
# pyright: reportUnknownArgumentType=false
# pyright: reportUnknownVariableType=false
from __future__ import annotations

from fastapi import APIRouter

from deepsearch.api.chat import router as chat_router
from deepsearch.api.chats import router as chats_router
from deepsearch.api.health import router as health_router


api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(chat_router)
api_router.include_router(chats_router)
