"""
Request-scoped dependencies.

The panel's auth layer terminates the login session upstream and forwards the
caller as `X-User-Id` / `X-User-Email` / `X-User-Role` headers.
"""

from typing import Optional

from fastapi import Depends, Header, Request

from pipeline.container import PaymentPipeline
from pipeline.exceptions import AuthenticationRequiredError, PermissionDeniedError
from schemas.payment_definitions import AuthenticatedUser


def get_pipeline(request: Request) -> PaymentPipeline:
    return request.app.state.pipeline


async def current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Optional[AuthenticatedUser]:
    if not x_user_id or not x_user_id.strip():
        return None
    return AuthenticatedUser(
        user_id=x_user_id.strip(),
        email=x_user_email or "",
        role=x_user_role or "user",
    )


async def require_user(user: Optional[AuthenticatedUser] = Depends(current_user)) -> AuthenticatedUser:
    if user is None:
        raise AuthenticationRequiredError()
    return user


async def require_admin(user: AuthenticatedUser = Depends(require_user)) -> AuthenticatedUser:
    if not user.is_admin:
        raise PermissionDeniedError()
    return user
