from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, Security
from fastapi.security.api_key import APIKeyHeader
from starlette.status import HTTP_403_FORBIDDEN

from .locks import RedisLeaseLock, create_redis_client
from .models import ANONYMOUS_OWNER
from .settings import settings
from .storage import LocalContentStore


api_key_header = APIKeyHeader(name=settings.API_KEY_HEADER, auto_error=False)


async def require_api_key(api_key: str = Security(api_key_header)):
    if not api_key or api_key != settings.API_KEY:
        raise HTTPException(status_code=HTTP_403_FORBIDDEN, detail="Could not validate credentials")
    return True


async def current_owner(owner: Optional[str] = Header(default=None, alias=settings.OWNER_HEADER)) -> str:
    owner = (owner or "").strip()
    return owner or ANONYMOUS_OWNER


async def crate_password(password: Optional[str] = Header(default=None, alias=settings.PASSWORD_HEADER)) -> Optional[str]:
    return password


@lru_cache(maxsize=1)
def get_content_store() -> LocalContentStore:
    return LocalContentStore(settings.STORAGE_DIR, settings.SIGNING_SECRET, base_url="/api/blobs")


@lru_cache(maxsize=1)
def redis_client():
    return create_redis_client(settings.REDIS_URL)


def get_purge_lock() -> RedisLeaseLock:
    # one lock object per request; the lock state itself lives in redis
    return RedisLeaseLock(redis_client())
