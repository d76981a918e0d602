from redis import asyncio as aioredis
from contextlib import asynccontextmanager
from coderunner.core.config import get_settings

settings = get_settings()


@asynccontextmanager
async def get_redis(url: str | None = None):
    r = aioredis.from_url(url or settings.REDIS_URL, decode_responses=False)
    try:
        yield r
    finally:
        await r.aclose()

