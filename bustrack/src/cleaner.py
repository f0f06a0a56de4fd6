import datetime, logging, time
from sqlalchemy import delete
from sqlalchemy.orm import Session

from bustrack.src import tracking
from bustrack.src.constants import CLEANER_INTERVAL, LOCATION_RETENTION_DAYS
from bustrack.src.db import RefreshToken, sessionMaker
from bustrack.src.redis import acquireLock, releaseLock

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("Cleaner")


def removeExpiredTokens(session: Session) -> int:
    currentTime = datetime.datetime.now(datetime.timezone.utc)
    result = session.execute(
        delete(RefreshToken).where(RefreshToken.expires_at < currentTime)
    )
    session.commit()
    deletedCount = result.rowcount
    logger.info(f"Removed {deletedCount} expired refresh tokens")
    return deletedCount


def runOnce(retentionDays: int = LOCATION_RETENTION_DAYS) -> None:
    """
    Run one cleaning pass under the cleaner mutex.

    Only one cleaner instance works at a time, others wait for the lock.
    """
    lock = None
    try:
        lock = acquireLock("cleaner")
        with sessionMaker() as session:
            tracking.cleanup(session, retentionDays)
            removeExpiredTokens(session)
    finally:
        releaseLock(lock)


def main():
    while True:
        try:
            runOnce()
        except Exception:
            logger.exception("cleaner.py failed")
        time.sleep(CLEANER_INTERVAL)


if __name__ == "__main__":
    main()
