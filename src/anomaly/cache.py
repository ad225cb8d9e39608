"""
Redis cache for trained anomaly baselines.
"""

import json

import redis
import structlog

from src.core.models import RedisConfig

from .methods.base import Baseline

logger = structlog.get_logger(__name__)


class BaselineCache:
    """Redis backend keyed by config and algorithm"""

    def __init__(self, config: RedisConfig):
        try:
            self.redis = redis.Redis(
                host=config.redis_host,
                port=config.redis_port,
                db=config.redis_db,
                password=config.redis_password,
                decode_responses=True,
            )
            self.ttl = config.cache_ttl_seconds
            self.redis.ping()
            logger.info("Redis cache initialized", host=config.redis_host, port=config.redis_port)
        except Exception as e:
            logger.error("Failed to initialize Redis", error=str(e))
            raise

    def save_baseline(self, baseline: Baseline) -> bool:
        key = self._make_key(baseline.config_id, baseline.method_name)
        try:
            self.redis.setex(key, self.ttl, json.dumps(baseline.to_dict()))
            logger.debug("Baseline cached", key=key, sample_size=baseline.sample_size)
            return True
        except Exception as e:
            logger.error("Failed to cache baseline", key=key, error=str(e))
            return False

    def load_baseline(self, config_id: int, method_name: str) -> Baseline | None:
        key = self._make_key(config_id, method_name)
        try:
            data = self.redis.get(key)
            if data is None:
                return None
            return Baseline.from_dict(json.loads(data))
        except Exception as e:
            logger.error("Failed to load baseline", key=key, error=str(e))
            return None

    def invalidate(self, config_id: int) -> int:
        """Drop every cached baseline of a config"""
        try:
            keys = list(self.redis.scan_iter(match=f"anomaly:baseline:{config_id}:*"))
            return self.redis.delete(*keys) if keys else 0
        except Exception as e:
            logger.error("Failed to invalidate baselines", config_id=config_id, error=str(e))
            return 0

    def close(self):
        self.redis.close()

    @staticmethod
    def _make_key(config_id: int, method_name: str) -> str:
        return f"anomaly:baseline:{config_id}:{method_name}"
