"""FastAPI dependencies for the API layer."""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from app.core.security import Principal, verify_credential
from app.database import get_db
from app.services.directory import ChatDirectory
from parley.realtime.dispatcher import EventDispatcher
from parley.realtime.services import RealtimeServices

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def get_current_principal(token: str | None = Depends(oauth2_scheme)) -> Principal:
    """Verify the ``Authorization: Bearer`` credential."""

    return verify_credential(token)


def get_stream_principal(request: Request, token: str | None = Depends(oauth2_scheme)) -> Principal:
    """Like :func:`get_current_principal` but also accepts ``?token=``.

    Browser ``EventSource`` cannot set request headers, so the push channel
    takes the credential from the query string as a fallback.
    """

    return verify_credential(token or request.query_params.get("token"))


def get_realtime(request: Request) -> RealtimeServices:
    services = getattr(request.app.state, "realtime", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Realtime services are not running",
        )
    return services


def get_dispatcher(services: RealtimeServices = Depends(get_realtime)) -> EventDispatcher:
    return services.dispatcher


def get_directory(db: Session = Depends(get_db)) -> ChatDirectory:
    return ChatDirectory(db)


def require_known_user(directory: ChatDirectory, user_id: int) -> None:
    """Raise HTTP 404 when *user_id* does not exist."""

    if directory.get_user(user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
