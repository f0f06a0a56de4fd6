from redis import Redis
from typing import Optional
from redis.lock import Lock

from bustrack.src import exceptions
from bustrack.src.constants import (
    REDIS_HOST,
    REDIS_PORT,
    REDIS_PASSWORD,
    MUTEX_LOCK_TIMEOUT,
    MUTEX_LOCK_MAX_WAIT_TIME,
)

redisClient = Redis(
    host=REDIS_HOST,
    port=REDIS_PORT,
    password=REDIS_PASSWORD,
    decode_responses=True,
)


def acquireLock(
    resourceName: str,
    timeOut: int = MUTEX_LOCK_TIMEOUT,
    blockingTimeOut: int = MUTEX_LOCK_MAX_WAIT_TIME,
) -> Lock:
    """
    Acquire a Redis based mutex lock for a named background job or resource.

    Args:
        resourceName (str): Name of the job or resource to lock, ex:- "location_cleanup".
        timeOut (int): Lock expiration in seconds (auto-released after this).
        blockingTimeOut (int): Maximum time (in seconds) to wait for lock acquisition.

    Returns:
        Lock: A Redis lock object if successfully acquired.

    Raises:
        exceptions.LockAcquireTimeout: If the lock could not be acquired within blockingTimeOut.
        exceptions.RedisDBError: If Redis is unreachable.
    """
    try:
        lock = redisClient.lock(f"lock:{resourceName}", timeout=timeOut)
        if lock.acquire(blocking=True, blocking_timeout=blockingTimeOut):
            return lock
        raise exceptions.LockAcquireTimeout()
    except Exception as e:
        exceptions.handle(e)


def releaseLock(lock: Optional[Lock]) -> None:
    """Release a lock acquired by `acquireLock`. Unowned locks are left alone."""
    if lock and lock.locked() and lock.owned():
        lock.release()
