from __future__ import annotations

import asyncio
import os
from typing import Optional

from fastapi import APIRouter

from .. import db
from ..config import get_settings
from ..redis_util import ping_redis

router = APIRouter(tags=["health"])


def _dependency_state(ok: Optional[bool]) -> str:
    if ok is None:
        return "not_configured"
    return "ok" if ok else "unavailable"


@router.get("/health")
async def health():
    s = get_settings()
    database = await db.ping()
    redis_ok = await asyncio.to_thread(ping_redis)
    return {
        "status": "ok" if database is not False else "degraded",
        "service": s.app_name,
        "env": s.environment,
        "pid": os.getpid(),
        "database": _dependency_state(database),
        "redis": _dependency_state(redis_ok),
    }
