"""
Dependencies for authentication and access to the service components.

Components (queue, scheduler, stores) are built once in the application
lifespan and stored on ``app.state``; endpoints receive them through these
dependencies so tests can swap them out.
"""
import hmac
from typing import Any, Optional

from fastapi import Header, HTTPException, Request, status

from sidekick import config
from sidekick.utils import get_logger

logger = get_logger(__name__)


def require_secret_key(
    request: Request,
    x_secret_key: Optional[str] = Header(None, alias="x-secret-key"),
) -> None:
    """
    Shared-secret check for mutating endpoints.

    Raises:
        HTTPException: 401 when the header is missing, wrong, or no
        SECRET_KEY is configured on the server.
    """
    expected = config.SECRET_KEY
    if not expected:
        logger.error("SECRET_KEY not configured; rejecting mutating request", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    if not x_secret_key or not hmac.compare_digest(x_secret_key.encode(), expected.encode()):
        logger.warning(
            "Secret key check failed",
            path=request.url.path,
            method=request.method,
            request_id=getattr(request.state, "request_id", None),
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def _component(request: Request, name: str) -> Any:
    component = getattr(request.app.state, name, None)
    if component is None:
        logger.error("Service component not initialized", component=name)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} not initialized",
        )
    return component


def get_scheduler(request: Request):
    return _component(request, "scheduler")


def get_queue(request: Request):
    return _component(request, "queue")


def get_transaction_log(request: Request):
    return _component(request, "transaction_log")


def get_attempt_ledger(request: Request):
    return _component(request, "attempt_ledger")


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)
