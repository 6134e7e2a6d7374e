"""FastAPI dependencies.

Maps authorization outcomes to HTTP:
- AuthenticationRequired -> 401
- deny -> 403 carrying only the reason code
- StorageUnavailable -> 503

Usage:
    @app.get("/documents/{id}")
    async def read_document(
        id: int,
        decision: AuthorizationDecision = Depends(require("document.read", "Document")),
    ):
        ...
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from aclguard.acl.models import ResourceIdentity
from aclguard.auth.models import Principal
from aclguard.authz.engine import AuthorizationEngine, get_engine
from aclguard.authz.models import AuthorizationDecision, ReasonCode
from aclguard.errors import (
    AccessDenied,
    AuthenticationRequired,
    AuthorizationError,
    ResourceNotFound,
    StorageUnavailable,
)

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "authentication_required", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    engine: AuthorizationEngine = Depends(get_engine),
) -> Principal:
    """Resolve the bearer token to a principal."""
    if not credentials:
        raise _unauthorized("Missing authentication credentials")
    try:
        return engine.identity_resolver.resolve(credentials.credentials)
    except AuthenticationRequired as exc:
        raise _unauthorized(exc.message) from exc


def require(
    operation: str,
    resource_type: str | None = None,
    id_param: str = "id",
) -> Callable[..., Any]:
    """Dependency factory deciding ``operation`` for the current request.

    Args:
        operation: Operation name with a registered rule
        resource_type: If set, the request targets ``(resource_type, <id_param>)``
        id_param: Path (or query) parameter holding the resource id
    """

    async def check(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        engine: AuthorizationEngine = Depends(get_engine),
    ) -> AuthorizationDecision:
        resource = None
        if resource_type is not None:
            resource_id = request.path_params.get(id_param, request.query_params.get(id_param))
            if resource_id is None:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail={"error": "bad_request", "message": f"Missing {id_param}"},
                )
            resource = ResourceIdentity(type=resource_type, id=resource_id)

        decision = engine.decide(principal, operation, resource)
        if decision.granted:
            return decision

        if decision.reason == ReasonCode.STORAGE_UNAVAILABLE:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"error": "storage_unavailable"},
            )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "forbidden", "reason": decision.reason.value},
        )

    return check


_STATUS_BY_ERROR: list[tuple[type[AuthorizationError], int]] = [
    (AuthenticationRequired, status.HTTP_401_UNAUTHORIZED),
    (AccessDenied, status.HTTP_403_FORBIDDEN),
    (ResourceNotFound, status.HTTP_404_NOT_FOUND),
    (StorageUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
]


async def authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    """Render errors raised by guarded functions inside endpoints."""
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break

    content: dict[str, Any] = {"error": exc.code}
    if isinstance(exc, AccessDenied):
        content["reason"] = exc.reason_code
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    if status_code >= 500:
        logger.error("Authorization fault on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def install_exception_handlers(app: FastAPI) -> None:
    """Map aclguard errors to HTTP responses for ``app``."""
    app.add_exception_handler(AuthorizationError, authorization_error_handler)
