"""Request, request context and response types."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from servforge.auth.types import ANONYMOUS, Principal
from servforge.errors import ErrorInfo, ServiceError, make_error

if TYPE_CHECKING:
    from servforge.metadata.registry import ModelRegistry
    from servforge.persistence.transactions import Transaction
    from servforge.runtime.pipeline import RequestPipeline
    from servforge.services.compiler import CompiledService, ExposedEntity, ExposedOperation


def _request_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Request:
    """A decoded inbound request, as handed over by a wire adapter.

    Attributes:
        service: Service name or route path (e.g., "CatalogService" or "/catalog")
        target: Exposed entity alias or custom operation name
        event: CREATE, READ, UPDATE or DELETE. None (or the operation
               name) for custom operations; READ for entities.
        data: Record payload (CREATE/UPDATE) or operation parameters
        key: Key of the addressed record (READ one, UPDATE, DELETE)
        filter: READ filter, see servforge.persistence.filters
        expand: Association/composition names to attach on READ
        orderby: [{"field": ..., "direction": "asc"|"desc"}] or "field desc" strings
        top: Maximum number of records on READ
        skip: Number of records to skip on READ
    """

    service: str
    target: str
    event: str | None = None
    data: dict[str, Any] | None = None
    key: dict[str, Any] | None = None
    filter: dict[str, Any] | None = None
    expand: list[str] = field(default_factory=list)
    orderby: list[Any] | None = None
    top: int | None = None
    skip: int = 0
    principal: Principal = ANONYMOUS
    request_id: str = field(default_factory=_request_id)


class PipelineState(Enum):
    RECEIVED = "Received"
    RESOLVING = "Resolving"
    BEFORE_HOOKS = "BeforeHooks"
    EXECUTING = "Executing"
    AFTER_HOOKS = "AfterHooks"
    COMMITTING = "Committing"
    ROLLING_BACK = "RollingBack"
    RESPONDED = "Responded"


@dataclass
class ReadOptions:
    expand: tuple[str, ...] = ()
    orderby: list[dict[str, str]] | None = None
    top: int | None = None
    skip: int = 0


class RequestContext:
    """Per-request state passed to every hook handler.

    Owned by the request's task and never shared. Handlers read the
    addressed member from ``entity``/``operation``, mutate ``input`` in
    before hooks, and use ``tx`` for persistence inside the request's
    unit of work.
    """

    def __init__(
        self,
        request: Request,
        service: CompiledService,
        model: ModelRegistry,
        pipeline: RequestPipeline,
    ):
        self.id = request.request_id
        self.request = request
        self.service = service
        self.model = model
        self.principal = request.principal
        self.target = request.target
        self.event = request.event or ""

        self.entity: ExposedEntity | None = None
        self.operation: ExposedOperation | None = None
        self.input: dict[str, Any] = {}
        self.key: dict[str, Any] | None = None
        self.filter: dict[str, Any] | None = None
        self.options = ReadOptions()

        self.tx: Transaction | None = None
        self.error: ServiceError | None = None
        self.result: Any = None
        self.state = PipelineState.RECEIVED

        self._pipeline = pipeline

    @property
    def data(self) -> dict[str, Any]:
        return self.input

    @property
    def params(self) -> dict[str, Any]:
        return self.input

    def reject(
        self,
        kind: str | type[ServiceError] | ServiceError = "ValidationError",
        message: str = "",
        target: str | None = None,
    ) -> None:
        """Signal an error. Before hooks short-circuit; the request rolls back."""
        self.error = make_error(kind, message, target)

    def has_role(self, role: str) -> bool:
        return self.principal.has_role(role)

    async def run_default(self) -> Any:
        """Run the generated CRUD implementation for this request.

        Raises:
            Unimplemented: For custom operations, which have no default
        """
        return await self._pipeline.run_default(self)

    def __repr__(self) -> str:
        return (
            f"RequestContext(id={self.id!r}, event={self.event!r}, "
            f"target={self.target!r}, state={self.state.value})"
        )


@dataclass(frozen=True)
class Response:
    request_id: str
    result: Any = None
    error: ErrorInfo | None = None
    status: int = 200

    @property
    def ok(self) -> bool:
        return self.error is None
