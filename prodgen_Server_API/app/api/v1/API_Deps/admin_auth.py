# admin_auth.py
# Description: Shared-secret guard for the /api/admin surface
#
# Imports
import hmac
from typing import Optional
#
# 3rd-party Libraries
from fastapi import Header, HTTPException, Request, status
from loguru import logger
#
# Local Imports
from prodgen_Server_API.app.core.config import get_settings

#######################################################################################################################

def _presented_token(x_admin_token: Optional[str], authorization: Optional[str]) -> Optional[str]:
    if x_admin_token:
        return x_admin_token.strip()
    if authorization:
        scheme, _, credential = authorization.partition(" ")
        if scheme.lower() == "bearer" and credential.strip():
            return credential.strip()
    return None


async def require_admin_token(
    request: Request,
    x_admin_token: Optional[str] = Header(None, alias="x-admin-token"),
    authorization: Optional[str] = Header(None),
) -> None:
    """Accept the request when ADMIN_API_TOKEN is unset or the caller presents it.

    The token is read from ``x-admin-token`` or ``Authorization: Bearer <token>``.
    The expected value comes from the settings the app was built with.
    """
    settings = getattr(request.app.state, "settings", None) or get_settings()
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        return
    presented = _presented_token(x_admin_token, authorization)
    if presented is None or not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected admin request: missing or invalid admin token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

#
# End of admin_auth.py
#######################################################################################################################
