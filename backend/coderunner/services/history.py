import json, logging
from datetime import datetime, timezone

from redis.exceptions import RedisError

from coderunner.core.config import Settings, get_settings
from coderunner.queues.redis import get_redis
from coderunner.schemas.enums import RunStatus

logger = logging.getLogger(__name__)


class RunHistory:
    """Appends one record per finished run to a Redis stream."""

    def __init__(self, settings: Settings | None = None, redis_factory=get_redis):
        self.settings = settings or get_settings()
        self.enabled = self.settings.RUN_HISTORY_ENABLED
        self._redis = redis_factory

    async def record(
        self,
        client_id: str,
        language: str,
        status: RunStatus,
        exit_code: int | None,
        wall_ms: int,
    ) -> bool:
        if not self.enabled:
            return False
        payload = {
            "client_id": client_id,
            "language": language,
            "status": status.value,
            "exit_code": exit_code,
            "wall_ms": wall_ms,
            "finished_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            async with self._redis(self.settings.REDIS_URL) as r:
                await r.xadd(
                    self.settings.RUN_HISTORY_STREAM,
                    {b"json": json.dumps(payload).encode()},
                    maxlen=self.settings.RUN_HISTORY_MAXLEN,
                )
        except (RedisError, OSError) as e:
            logger.warning("run history not recorded: %s", e)
            return False
        return True
