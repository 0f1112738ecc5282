from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings


def _storage_uri() -> str:
    return get_settings().redis_url or "memory://"


limiter = Limiter(key_func=get_remote_address, storage_uri=_storage_uri())


def generation_limit() -> str:
    return get_settings().generation_rate_limit
