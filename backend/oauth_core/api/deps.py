"""
FastAPI dependencies: database session, current user and token service.
"""

import logging
from typing import Annotated, Generator

from fastapi import Depends, Header, HTTPException, Request, status
from sqlmodel import Session

from oauth_core.core.config import settings
from oauth_core.core.db import engine
from oauth_core.services.token_service import TokenService

logger = logging.getLogger(__name__)

# User reported when running locally without the auth proxy
LOCAL_DEV_USER = "dev-user"


def get_db() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


SessionDep = Annotated[Session, Depends(get_db)]


def get_current_user_id(
    x_forwarded_preferred_username: Annotated[str | None, Header()] = None,
) -> str:
    """
    Identify the user from the header set by the authenticating proxy.

    In the local environment a fixed development user is assumed when the
    header is absent; everywhere else the request is rejected.
    """
    if x_forwarded_preferred_username:
        return x_forwarded_preferred_username
    if settings.ENVIRONMENT == "local":
        return LOCAL_DEV_USER
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
    )


CurrentUserId = Annotated[str, Depends(get_current_user_id)]


def get_token_service(request: Request) -> TokenService:
    """The TokenService built during application startup."""
    return request.app.state.token_service


TokenServiceDep = Annotated[TokenService, Depends(get_token_service)]
