# ---------------------------------------------------------------------------
# routes.py
#
# Versioned API routers.
#
# Creates routes like:
# - /api/v1/external/...  public resources
# - /api/v1/internal/...  resources that require an identified caller
#
# Resource routers are attached with `external_router.include_router(...)` /
# `internal_router.include_router(...)` before the app is created, or passed
# to `main.create_app(...)`.
# ---------------------------------------------------------------------------

from __future__ import annotations

from typing import Iterable, Optional

from fastapi import APIRouter, Depends, Request

from .auth import Identity, identify, provider_for
from .errors import AuthorizationError


async def require_identity(request: Request) -> Identity:
    """Internal tier gate: the app's identity provider must recognize the caller."""
    identity = await identify(provider_for(request), request)
    if identity is None:
        raise AuthorizationError("Authentication required", code="UNAUTHORIZED", status_code=401)
    request.state.user_id = identity.context.user_id
    request.state.account_id = identity.context.account_id
    return identity


def build_api_router(
    version: str,
    external: Iterable[APIRouter] = (),
    internal: Iterable[APIRouter] = (),
    *,
    prefix: Optional[str] = None,
) -> APIRouter:
    """Return `/api/<version>` with its external and internal sub-routers."""
    external_router = APIRouter(prefix="/external")
    for router in external:
        external_router.include_router(router)

    internal_router = APIRouter(prefix="/internal", dependencies=[Depends(require_identity)])
    for router in internal:
        internal_router.include_router(router)

    api_router = APIRouter(prefix=prefix if prefix is not None else f"/api/{version}")
    api_router.include_router(external_router)
    api_router.include_router(internal_router)
    return api_router
