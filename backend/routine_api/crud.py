# ---------------------------------------------------------------------------
# crud.py
#
# Validate-then-execute pipeline for CRUD-style endpoints.
#
# Every create/read/update/delete handler starts with the same steps:
# 1. merge path params, query params and the JSON body into one mapping
#    (body overrides query overrides path)
# 2. validate/coerce the mapping against the handler's schema
# 3. resolve the caller and check the controller's security requirements
# 4. return Result.ok(ValidatedRequest) or Result.err(AppError)
#
# The pipeline never raises. Handlers branch on the result and, on error,
# usually `raise outcome.error` so the error handlers answer it:
#
#     outcome = await controller.create(request, ItemCreateIn)
#     if outcome.is_err:
#         raise outcome.error
#     item = await db.execute(ITEM_CREATE.call(outcome.value.params))
# ---------------------------------------------------------------------------

from __future__ import annotations

import enum
import inspect
import logging
from dataclasses import dataclass
from json import JSONDecodeError
from typing import Any, Awaitable, Callable, Generic, Optional, Protocol, Sequence, Type, TypeVar, Union, get_origin

from fastapi import Request
from pydantic import BaseModel, PydanticUserError, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .auth import AuthContext, PermissionAuthorizer, SecurityRequirement
from .errors import AppError, AuthorizationError, InputValidationError
from .result import Result
from .utils import multi_items_to_dict

logger = logging.getLogger(__name__)

P = TypeVar("P")

Schema = Union[Type[BaseModel], TypeAdapter, Callable[[dict], Any], Callable[[dict], Awaitable[Any]]]


class CrudOperation(str, enum.Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ValidatedRequest(Generic[P]):
    """Accepted request: who is calling and the validated parameters."""

    auth: AuthContext
    params: P
    operation: CrudOperation


class Authorizer(Protocol):
    async def authorize(
        self,
        request: Request,
        requirements: Sequence[SecurityRequirement],
        operation: CrudOperation,
    ) -> AuthContext: ...


# ---------------------------------------------------------------------------
# Input merging
# ---------------------------------------------------------------------------


def _body_error(message: str, error_type: str) -> InputValidationError:
    return InputValidationError(details=[{"path": ["body"], "message": message, "type": error_type}])


async def read_json_object(request: Request) -> dict:
    """Return the JSON object body, `{}` when there is no body."""
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = await request.json()
    except (JSONDecodeError, UnicodeDecodeError) as exc:
        raise _body_error("Malformed JSON body", "json_invalid") from exc
    if not isinstance(body, dict):
        raise _body_error("Body must be a JSON object", "dict_type")
    return body


async def merge_request_inputs(request: Request) -> dict:
    """Flatten path, query and body into one mapping. Later sources win."""
    merged: dict = dict(request.path_params)
    merged.update(multi_items_to_dict(request.query_params.multi_items()))
    merged.update(await read_json_object(request))
    return merged


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def violations_from(exc: PydanticValidationError) -> list[dict]:
    """Field-level violations without echoing the submitted values."""
    return [
        {"path": list(error["loc"]), "message": error["msg"], "type": error["type"]}
        for error in exc.errors(include_url=False)
    ]


def _is_validator_callable(schema: Any) -> bool:
    # Classes and generic aliases such as `dict[str, int]` are callable too; those are types.
    return callable(schema) and not isinstance(schema, type) and get_origin(schema) is None


async def apply_schema(schema: Schema, data: dict) -> Any:
    """Validate `data` with a model class, a TypeAdapter or a (async) callable."""
    if isinstance(schema, type) and issubclass(schema, BaseModel):
        return schema.model_validate(data)
    if isinstance(schema, TypeAdapter):
        return schema.validate_python(data)
    if _is_validator_callable(schema):
        result = schema(data)
        if inspect.isawaitable(result):
            result = await result
        return result
    return TypeAdapter(schema).validate_python(data)


class CrudController:
    """Runs the merge/validate/authorize steps for one resource's handlers."""

    def __init__(
        self,
        security: Sequence[SecurityRequirement] = (),
        authorizer: Optional[Authorizer] = None,
    ) -> None:
        self.security = tuple(security)
        self.authorizer = authorizer or PermissionAuthorizer()

    async def create(self, request: Request, schema: Schema) -> Result[ValidatedRequest, AppError]:
        return await self._validate(request, schema, CrudOperation.CREATE)

    async def read(self, request: Request, schema: Schema) -> Result[ValidatedRequest, AppError]:
        return await self._validate(request, schema, CrudOperation.READ)

    async def update(self, request: Request, schema: Schema) -> Result[ValidatedRequest, AppError]:
        return await self._validate(request, schema, CrudOperation.UPDATE)

    async def delete(self, request: Request, schema: Schema) -> Result[ValidatedRequest, AppError]:
        return await self._validate(request, schema, CrudOperation.DELETE)

    async def _validate(
        self, request: Request, schema: Schema, operation: CrudOperation
    ) -> Result[ValidatedRequest, AppError]:
        try:
            merged = await merge_request_inputs(request)
            params = await apply_schema(schema, merged)
        except InputValidationError as exc:
            return Result.err(exc)
        except PydanticValidationError as exc:
            logger.debug("%s %s rejected: %d violation(s)", operation.value, request.url.path, exc.error_count())
            return Result.err(InputValidationError(details=violations_from(exc)))
        except PydanticUserError:
            logger.exception("Unusable schema for %s %s", operation.value, request.url.path)
            return Result.err(AppError())
        except Exception as exc:
            # Custom validators may raise anything; it is still a rejected input.
            logger.debug("%s %s rejected by validator: %r", operation.value, request.url.path, exc)
            return Result.err(InputValidationError(details=[{"path": [], "message": "Invalid input", "type": "invalid"}]))

        try:
            auth = await self.authorizer.authorize(request, self.security, operation)
        except AuthorizationError as exc:
            logger.info("%s %s denied: %s", operation.value, request.url.path, exc.message)
            return Result.err(exc)
        except Exception:
            logger.exception("Authorizer failed for %s %s", operation.value, request.url.path)
            return Result.err(AppError())

        return Result.ok(ValidatedRequest(auth=auth, params=params, operation=operation))
