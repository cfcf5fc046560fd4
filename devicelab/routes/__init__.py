"""Router registration helpers."""
from __future__ import annotations

from typing import List

from fastapi import APIRouter

from .tests import router as tests_router
from .websockets import router as websocket_router


def get_routers() -> List[APIRouter]:
    return [tests_router, websocket_router]
