from logging import getLogger
from typing import Optional
from requests import RequestException

from bustrack.src import openobserve
from bustrack.src.db import User
from bustrack.src.schemas import RequestInfo

logger = getLogger("uvicorn.error")


def logEvent(user: Optional[User], requestInfo: RequestInfo, data: dict) -> None:
    """
    Log an audit event to OpenObserve with request and actor context.

    Args:
        user (User | None): The authenticated user, None for anonymous requests
            such as self registration.
        requestInfo (RequestInfo): Metadata about the current request.
        data (dict): Additional event-specific details to include in the log.

    Notes:
        - Automatically attaches `_method`, `_path`, `_user_id` and `_role`.
        - Password hashes are never shipped.
        - Called after the change is committed, so a failed delivery is logged
          and does not fail the request.
    """
    logDetails = {
        "_method": requestInfo.method,
        "_path": requestInfo.path,
    }
    if user is not None:
        logDetails["_user_id"] = user.id
        logDetails["_role"] = user.role

    logDetails.update({k: v for k, v in data.items() if k != User.password.key})
    try:
        openobserve.logEvent(logDetails)
    except RequestException as e:
        logger.warning(f"Audit event for {requestInfo.path} not delivered: {e}")
