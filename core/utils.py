import logging
import threading
import time

import redis
from django.conf import settings

logger = logging.getLogger(__name__)

TASK_LOCK_TTL = 300  # seconds

# After a failed connect, callers get None without retrying for this long
REDIS_RETRY_BACKOFF = 30  # seconds


class RedisClient:
    _client = None
    _pubsub_client = None
    _unavailable_until = 0.0
    _connect_lock = threading.Lock()

    @classmethod
    def get_client(cls, max_retries=3):
        """
        Return a shared redis client, or None if redis is unreachable.

        After a failed connect, further calls return None without touching
        the network until REDIS_RETRY_BACKOFF seconds have passed.
        """
        if cls._client is not None:
            return cls._client

        with cls._connect_lock:
            if cls._client is not None or time.monotonic() < cls._unavailable_until:
                return cls._client
            for attempt in range(1, max_retries + 1):
                try:
                    client = redis.Redis(
                        host=getattr(settings, "REDIS_HOST", "localhost"),
                        port=getattr(settings, "REDIS_PORT", 6379),
                        db=getattr(settings, "REDIS_DB", 0),
                        socket_timeout=5,
                        socket_connect_timeout=5,
                        decode_responses=True,
                    )
                    client.ping()
                    cls._client = client
                    logger.info(f"Connected to Redis at {settings.REDIS_HOST}:{settings.REDIS_PORT}")
                    break
                except redis.exceptions.ConnectionError as e:
                    logger.warning(f"Redis connection attempt {attempt}/{max_retries} failed: {e}")
            else:
                cls._unavailable_until = time.monotonic() + REDIS_RETRY_BACKOFF
                logger.error(f"Could not connect to Redis, continuing without it for {REDIS_RETRY_BACKOFF}s")
        return cls._client

    @classmethod
    def publish(cls, channel, message):
        client = cls.get_client()
        if client is None:
            return False
        try:
            client.publish(channel, message)
            return True
        except redis.exceptions.RedisError as e:
            logger.warning(f"Failed to publish to {channel}: {e}")
            return False


def acquire_task_lock(task_name, id):
    """Take a short-lived redis lock so the same periodic task never overlaps itself."""
    redis_client = RedisClient.get_client()
    if redis_client is None:
        return True
    lock_id = f"task_lock_{task_name}_{id}"
    return bool(redis_client.set(lock_id, "locked", ex=TASK_LOCK_TTL, nx=True))


def release_task_lock(task_name, id):
    redis_client = RedisClient.get_client()
    if redis_client is None:
        return
    lock_id = f"task_lock_{task_name}_{id}"
    redis_client.delete(lock_id)
