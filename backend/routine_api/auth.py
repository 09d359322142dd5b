# ---------------------------------------------------------------------------
# auth.py
#
# Authorization gate for the CRUD pipeline.
#
# This module implements:
# - `SecurityRequirement`: a (securable, permission) pair a controller declares
# - `AuthContext`: the account/user the validated request runs as
# - `IdentityProvider`: resolves the caller of a request to an `Identity`
# - `PermissionAuthorizer`: checks an identity's grants against the
#   requirements that apply to the current CRUD operation
#
# Authentication itself (sessions, tokens) is an external concern: plug a
# provider that reads whatever the surrounding router established. The
# bundled `StaticIdentityProvider` answers every request with one fixed
# identity holding every grant, for local development only.
# ---------------------------------------------------------------------------

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, FrozenSet, Optional, Protocol, Sequence, Union

from fastapi import Request

from .errors import AuthorizationError

if TYPE_CHECKING:
    from .crud import CrudOperation

ALL_PERMISSIONS = "ALL"
WILDCARD = "*"


@dataclass(frozen=True)
class SecurityRequirement:
    """Permission a controller needs on a securable resource.

    `permission` is a CRUD operation name (CREATE, READ, UPDATE, DELETE) or
    `ALL` to apply to every operation.
    """

    securable: str
    permission: str

    def applies_to(self, operation: "CrudOperation") -> bool:
        return self.permission in (ALL_PERMISSIONS, operation.value)


@dataclass(frozen=True)
class AuthContext:
    account_id: int
    user_id: int

    def __post_init__(self) -> None:
        for name in ("account_id", "user_id"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValueError(f"{name} must be a positive integer")


@dataclass(frozen=True)
class Identity:
    """An authenticated caller and the grants it holds.

    Grants are `"<securable>:<permission>"` strings; either side may be `*`.
    """

    context: AuthContext
    grants: FrozenSet[str] = field(default_factory=frozenset)

    def allows(self, securable: str, permission: str) -> bool:
        candidates = {
            f"{securable}:{permission}",
            f"{securable}:{WILDCARD}",
            f"{WILDCARD}:{permission}",
            f"{WILDCARD}:{WILDCARD}",
        }
        return not candidates.isdisjoint(self.grants)


class IdentityProvider(Protocol):
    def identify(self, request: Request) -> Union[Optional[Identity], Awaitable[Optional[Identity]]]:
        """Return the caller's identity, or None when the request is anonymous."""
        ...


class StaticIdentityProvider:
    """Every request is account 1 / user 1 with every grant. Development only."""

    def __init__(self, account_id: int = 1, user_id: int = 1) -> None:
        self._identity = Identity(
            context=AuthContext(account_id=account_id, user_id=user_id),
            grants=frozenset({f"{WILDCARD}:{WILDCARD}"}),
        )

    def identify(self, request: Request) -> Identity:
        return self._identity


def provider_for(request: Request) -> IdentityProvider:
    """The identity provider installed on the request's app, else the static one."""
    app = request.scope.get("app")
    provider = getattr(app.state, "identity_provider", None) if app is not None else None
    return provider or StaticIdentityProvider()


async def identify(provider: IdentityProvider, request: Request) -> Optional[Identity]:
    identity = provider.identify(request)
    if inspect.isawaitable(identity):
        identity = await identity
    return identity


class PermissionAuthorizer:
    """Resolve the caller and check it holds every applicable requirement.

    Without an explicit provider the caller is resolved by the provider
    installed on the app (`app.state.identity_provider`).
    """

    def __init__(self, provider: Optional[IdentityProvider] = None) -> None:
        self.provider = provider

    async def authorize(
        self,
        request: Request,
        requirements: Sequence[SecurityRequirement],
        operation: "CrudOperation",
    ) -> AuthContext:
        identity = await identify(self.provider or provider_for(request), request)
        if identity is None:
            raise AuthorizationError("Authentication required", code="UNAUTHORIZED", status_code=401)

        missing = [
            f"{req.securable}:{operation.value}"
            for req in requirements
            if req.applies_to(operation) and not identity.allows(req.securable, operation.value)
        ]
        if missing:
            raise AuthorizationError(details=missing)
        return identity.context
