"""FastAPI wire adapter.

Decodes HTTP requests into runtime Requests and re-encodes Responses:

    GET    /catalog                     exposed surface of the service
    GET    /catalog/Products            READ (query params filter by equality)
    GET    /catalog/Products/p1         READ one
    POST   /catalog/Products            CREATE
    PATCH  /catalog/Products/p1         UPDATE (PUT is accepted too)
    DELETE /catalog/Products/p1         DELETE
    POST   /catalog/placeOrder          invoke an action (JSON body = params)
    GET    /catalog/orderBook?book=b1   invoke a function (query = params)

$top, $skip, $orderby and $expand are honoured on READ. Collections are
returned as {"value": [...]}, errors as {"error": {code, message, target}}.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from servforge.auth.headers import HeaderAuthenticator
from servforge.auth.types import ANONYMOUS, AuthCollaborator, Principal
from servforge.config import RuntimeConfig
from servforge.errors import (
    NotFound,
    OperationNotAllowed,
    ServiceError,
    ValidationError,
)
from servforge.metadata.model import OperationKind
from servforge.runtime.bootstrap import ServiceRuntime, build_runtime_from_config
from servforge.runtime.context import Request as RuntimeRequest
from servforge.services.compiler import CompiledService, ExposedOperation

logger = logging.getLogger(__name__)

_CRUD_METHODS = {
    "POST": "CREATE",
    "PATCH": "UPDATE",
    "PUT": "UPDATE",
    "DELETE": "DELETE",
}


class QueryOptions(BaseModel):
    """System query options on READ."""

    model_config = ConfigDict(populate_by_name=True)

    top: int | None = Field(default=None, alias="$top", ge=0)
    skip: int = Field(default=0, alias="$skip", ge=0)
    orderby: str | None = Field(default=None, alias="$orderby")
    expand: str | None = Field(default=None, alias="$expand")


def error_response(error: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=error.status, content={"error": error.to_dict()})


def create_app(
    runtime: ServiceRuntime,
    authenticator: AuthCollaborator | None = None,
    title: str = "servforge",
) -> FastAPI:
    """Build the FastAPI application serving every service of a runtime.

    Args:
        runtime: The assembled service runtime
        authenticator: Supplies the principal; anonymous when None
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        for warning in runtime.warnings:
            logger.warning("Startup: %s", warning)
        yield
        runtime.close()

    app = FastAPI(title=title, lifespan=lifespan)
    app.state.runtime = runtime

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        return error_response(exc)

    @app.get("/")
    async def list_services() -> dict[str, Any]:
        return {"value": [s.describe() for s in runtime.services.values()]}

    @app.api_route("/{path:path}", methods=["GET", "POST", "PATCH", "PUT", "DELETE"])
    async def dispatch(path: str, request: Request):
        service, segments = _match_service(runtime, path)
        if service is None:
            raise NotFound(f"No service at '/{path}'", target=f"/{path}")

        if not segments:
            if request.method != "GET":
                raise OperationNotAllowed(f"{request.method} is not allowed on {service.path}")
            return service.describe()

        if len(segments) > 2:
            raise NotFound(f"No resource at '/{path}'", target=f"/{path}")

        principal = _authenticate(authenticator, request)
        member = service.member(segments[0])
        if isinstance(member, ExposedOperation):
            if len(segments) != 1:
                raise NotFound(f"No resource at '/{path}'", target=f"/{path}")
            runtime_request = await _operation_request(service, member, request, principal)
        else:
            runtime_request = await _entity_request(service, segments, request, principal)

        result = await runtime.handle(runtime_request)
        if result.error is not None:
            return JSONResponse(
                status_code=result.status, content={"error": result.error.to_dict()}
            )
        if result.status == 204:
            return Response(status_code=204)
        body = {"value": result.result} if isinstance(result.result, list) else result.result
        return JSONResponse(status_code=result.status, content=body)

    return app


def create_app_from_env() -> FastAPI:
    """App factory for ``uvicorn --factory``: runtime and auth from the environment."""
    runtime = build_runtime_from_config(RuntimeConfig.from_env())
    return create_app(runtime, authenticator=HeaderAuthenticator())


def _match_service(runtime: ServiceRuntime, path: str) -> tuple[CompiledService | None, list[str]]:
    """Longest service path that prefixes the request path."""
    segments = [s for s in path.split("/") if s]
    for length in range(len(segments), 0, -1):
        service = runtime.service_for_path("/".join(segments[:length]))
        if service is not None:
            return service, segments[length:]
    return runtime.service_for_path("/"), segments


def _authenticate(authenticator: AuthCollaborator | None, request: Request) -> Principal:
    if authenticator is None:
        return ANONYMOUS
    return authenticator.authenticate(request.headers)


async def _json_body(request: Request) -> Any:
    body = await request.body()
    if not body:
        return None
    try:
        return await request.json()
    except ValueError as e:
        raise ValidationError(f"Request body is not valid JSON: {e}") from e


def _parse_key(segment: str) -> Any:
    """Single keys are given as-is (p1), compound keys as order_ID=o1,pos=1."""
    if "=" not in segment:
        return segment
    key = {}
    for part in segment.split(","):
        name, _, value = part.partition("=")
        key[name.strip()] = value.strip()
    return key


async def _operation_request(
    service: CompiledService,
    member: ExposedOperation,
    request: Request,
    principal: Principal,
) -> RuntimeRequest:
    if member.operation.kind is OperationKind.FUNCTION:
        if request.method != "GET":
            raise OperationNotAllowed(
                f"Function '{member.name}' is invoked with GET", target=member.name
            )
        params = dict(request.query_params)
    else:
        if request.method != "POST":
            raise OperationNotAllowed(
                f"Action '{member.name}' is invoked with POST", target=member.name
            )
        params = await _json_body(request)

    return RuntimeRequest(
        service=service.name,
        target=member.name,
        data=params,
        principal=principal,
    )


async def _entity_request(
    service: CompiledService,
    segments: list[str],
    request: Request,
    principal: Principal,
) -> RuntimeRequest:
    target = segments[0]
    key = _parse_key(segments[1]) if len(segments) == 2 else None

    if request.method == "GET":
        query = dict(request.query_params)
        system = {k: v for k, v in query.items() if k.startswith("$")}
        try:
            options = QueryOptions.model_validate(system)
        except PydanticValidationError as e:
            first = e.errors()[0]
            raise ValidationError(
                f"Invalid query option: {first['msg']}",
                target=str(first["loc"][0]) if first.get("loc") else None,
            ) from e
        filter = {k: v for k, v in query.items() if not k.startswith("$")}
        return RuntimeRequest(
            service=service.name,
            target=target,
            event="READ",
            key=key,
            filter=filter or None,
            expand=options.expand.split(",") if options.expand else [],
            orderby=options.orderby,
            top=options.top,
            skip=options.skip,
            principal=principal,
        )

    event = _CRUD_METHODS[request.method]
    if event == "CREATE" and key is not None:
        raise OperationNotAllowed("POST to a record is not allowed", target=target)
    if event in ("UPDATE", "DELETE") and key is None:
        raise OperationNotAllowed(f"{request.method} needs a record key", target=target)

    data = await _json_body(request) if event != "DELETE" else None
    return RuntimeRequest(
        service=service.name,
        target=target,
        event=event,
        data=data,
        key=key,
        principal=principal,
    )
