"""Request execution pipeline.

Drives one request through

    Received -> Resolving -> BeforeHooks -> Executing -> AfterHooks
             -> Committing -> Responded

with the error path ``* -> RollingBack -> Responded``. Resolving happens
before the transaction opens, so a request that fails to resolve has
nothing to roll back. Every other error rolls the transaction back;
nothing is committed unless all phases succeed.
"""

import asyncio
import logging
from typing import Any, Mapping

from servforge.errors import (
    FatalError,
    Forbidden,
    InternalError,
    NotFound,
    OperationNotAllowed,
    ServiceError,
    Unimplemented,
    ValidationError,
)
from servforge.hooks.dispatcher import HookDispatcher
from servforge.hooks.registry import HookRegistry
from servforge.metadata.model import AssociationDefinition, EntityDefinition
from servforge.metadata.registry import ModelRegistry
from servforge.persistence.filters import matches
from servforge.persistence.transactions import Transaction, TransactionManager
from servforge.runtime.context import (
    PipelineState,
    ReadOptions,
    Request,
    RequestContext,
    Response,
)
from servforge.runtime.input import (
    apply_child_defaults,
    apply_defaults,
    check_expand,
    check_filter,
    check_key_unchanged,
    check_orderby,
    check_paging,
    check_required,
    check_required_children,
    coerce_key,
    coerce_params,
    coerce_record,
    coerce_result,
)
from servforge.services.compiler import CRUD_EVENTS, CompiledService, ExposedEntity

logger = logging.getLogger(__name__)

_SUCCESS_STATUS = {"CREATE": 201, "DELETE": 204}


class RequestPipeline:
    """Executes requests against compiled services.

    Holds no per-request state; one instance serves concurrent requests.
    """

    def __init__(
        self,
        model: ModelRegistry,
        hooks: Mapping[str, HookRegistry],
        transactions: TransactionManager,
    ):
        self.model = model
        self.transactions = transactions
        self._dispatchers = {name: HookDispatcher(registry) for name, registry in hooks.items()}

    async def execute(self, service: CompiledService, request: Request) -> Response:
        ctx = RequestContext(request, service, self.model, self)
        dispatcher = self._dispatchers.get(service.name) or HookDispatcher(HookRegistry(service.name))
        logger.debug(
            "Request %s received: %s %s.%s",
            ctx.id,
            request.event or "-",
            service.name,
            request.target,
        )

        try:
            self._enter(ctx, PipelineState.RESOLVING)
            self._resolve(ctx)
            ctx.tx = await self.transactions.open(ctx.id)

            self._enter(ctx, PipelineState.BEFORE_HOOKS)
            if await dispatcher.run_before(ctx):
                self._finish_input(ctx)

            if ctx.error is None:
                self._enter(ctx, PipelineState.EXECUTING)
                handled, result = await dispatcher.run_on(ctx)
                if not handled:
                    result = await self.run_default(ctx)
                elif ctx.operation is not None and ctx.error is None:
                    result = coerce_result(ctx.operation.operation, result, self.model)
                ctx.result = result

            if ctx.error is None:
                self._enter(ctx, PipelineState.AFTER_HOOKS)
                await dispatcher.run_after(ctx)

            if ctx.error is None:
                self._enter(ctx, PipelineState.COMMITTING)
                await ctx.tx.commit()
                return self._respond(ctx)
        except FatalError:
            logger.exception("Request %s hit a fatal error in %s", ctx.id, ctx.state.value)
            await self._roll_back(ctx)
            raise
        except asyncio.CancelledError:
            logger.info("Request %s cancelled in %s", ctx.id, ctx.state.value)
            await self._roll_back(ctx)
            raise
        except ServiceError as e:
            ctx.error = e
        except Exception as e:
            logger.exception("Request %s failed in %s", ctx.id, ctx.state.value)
            ctx.error = InternalError(str(e) or type(e).__name__)

        await self._roll_back(ctx)
        return self._respond(ctx)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _enter(self, ctx: RequestContext, state: PipelineState) -> None:
        logger.debug("Request %s: %s -> %s", ctx.id, ctx.state.value, state.value)
        ctx.state = state

    def _resolve(self, ctx: RequestContext) -> None:
        """Look up the addressed member, authorize, and check the input.

        Raises:
            NotFound, Forbidden, OperationNotAllowed, ValidationError
        """
        request = ctx.request
        service = ctx.service
        member = service.member(request.target)
        if member is None:
            raise NotFound(
                f"Service '{service.name}' has no member '{request.target}'",
                target=request.target,
            )

        if isinstance(member, ExposedEntity):
            event = (request.event or "READ").upper()
            if event not in CRUD_EVENTS:
                raise NotFound(
                    f"'{event}' is not an operation of {service.name}.{member.name}",
                    target=member.name,
                )
            ctx.entity = member
            ctx.event = event
            self._authorize(ctx, member.requires)
            if not member.allows(event):
                raise OperationNotAllowed(
                    f"{event} is not allowed on {service.name}.{member.name}",
                    target=member.name,
                )
            self._resolve_crud_input(ctx, member)
        else:
            if request.event not in (None, "", member.name):
                raise NotFound(
                    f"'{request.event}' is not an operation of {service.name}.{member.name}",
                    target=member.name,
                )
            ctx.operation = member
            ctx.event = member.name
            self._authorize(ctx, member.requires)
            ctx.input = coerce_params(member.operation, request.data, check_missing=False)

    def _authorize(self, ctx: RequestContext, member_requires: tuple[str, ...]) -> None:
        for requires, scope in (
            (ctx.service.requires, ctx.service.name),
            (member_requires, f"{ctx.service.name}.{ctx.target}"),
        ):
            if requires and not any(ctx.principal.has_role(r) for r in requires):
                raise Forbidden(
                    f"{scope} requires one of: {', '.join(requires)}",
                    target=ctx.target,
                )

    def _resolve_crud_input(self, ctx: RequestContext, exposed: ExposedEntity) -> None:
        request = ctx.request
        entity = exposed.entity
        columns = exposed.columns

        if ctx.event == "CREATE":
            record = coerce_record(entity, request.data or {}, self.model, columns=columns)
            ctx.input = apply_defaults(entity, record, self.model)
            return

        if ctx.event == "READ":
            if request.key is not None:
                ctx.key = coerce_key(entity, request.key)
            ctx.filter = check_filter(entity, request.filter, columns)
            top, skip = check_paging(request.top, request.skip)
            ctx.options = ReadOptions(
                expand=check_expand(entity, request.expand, columns),
                orderby=check_orderby(entity, request.orderby, columns),
                top=top,
                skip=skip,
            )
            return

        key = request.key
        if key is None and isinstance(request.data, dict):
            key = {k: request.data[k] for k in entity.keys if k in request.data} or None
        if key is None:
            raise ValidationError(f"{ctx.event} needs the key of {entity.name}", target="key")
        ctx.key = coerce_key(entity, key)

        if ctx.event == "UPDATE":
            ctx.input = coerce_record(entity, request.data or {}, self.model, columns=columns)
            check_key_unchanged(entity, ctx.key, ctx.input)
            apply_child_defaults(entity, ctx.input, self.model)

    def _finish_input(self, ctx: RequestContext) -> None:
        """Re-check input the before hooks may have changed.

        Hooks may set fields outside the projection's columns, so the
        column restriction is not applied again.
        """
        if ctx.operation is not None:
            ctx.input = coerce_params(ctx.operation.operation, ctx.input)
            return

        entity = ctx.entity.entity
        if ctx.event == "CREATE":
            ctx.input = coerce_record(entity, ctx.input, self.model)
            check_required(entity, ctx.input, self.model)
        elif ctx.event == "UPDATE":
            ctx.input = coerce_record(entity, ctx.input, self.model)
            check_key_unchanged(entity, ctx.key, ctx.input)
            check_required_children(entity, ctx.input, self.model)

    async def _roll_back(self, ctx: RequestContext) -> None:
        self._enter(ctx, PipelineState.ROLLING_BACK)
        if ctx.tx is not None and ctx.tx.is_open:
            await ctx.tx.rollback()

    def _respond(self, ctx: RequestContext) -> Response:
        self._enter(ctx, PipelineState.RESPONDED)
        if ctx.error is not None:
            logger.info(
                "Request %s failed: %s %s", ctx.id, ctx.error.kind, ctx.error.message
            )
            return Response(
                request_id=ctx.id,
                error=ctx.error.info(),
                status=ctx.error.status,
            )
        return Response(
            request_id=ctx.id,
            result=ctx.result,
            status=_SUCCESS_STATUS.get(ctx.event, 200),
        )

    # ------------------------------------------------------------------
    # Default CRUD
    # ------------------------------------------------------------------

    async def run_default(self, ctx: RequestContext) -> Any:
        """Generated CRUD behaviour for the request's entity.

        Raises:
            Unimplemented: For custom operations
            DuplicateKey, NotFound: From the persistence adapter
        """
        if ctx.entity is None:
            raise Unimplemented(
                f"No 'on' handler registered for {ctx.service.name}.{ctx.target}",
                target=ctx.target,
            )

        exposed = ctx.entity
        entity = exposed.entity
        tx = ctx.tx

        if ctx.event == "CREATE":
            created = await self._insert_deep(tx, entity, ctx.input)
            return self._trim(exposed, created)

        if ctx.event == "READ":
            return await self._read(ctx, exposed)

        if ctx.event == "UPDATE":
            patch = {k: v for k, v in ctx.input.items() if entity.get_field(k) is not None}
            updated = await tx.update(entity, ctx.key, patch)
            for link in entity.compositions:
                if link.name in ctx.input:
                    updated[link.name] = await self._replace_children(
                        tx, link, updated, ctx.input[link.name]
                    )
            return self._trim(exposed, updated)

        await self._delete_deep(tx, entity, ctx.key)
        return None

    async def _read(self, ctx: RequestContext, exposed: ExposedEntity) -> Any:
        entity = exposed.entity
        options = ctx.options

        if ctx.key is not None:
            rows = await ctx.tx.read(entity, ctx.key)
            if ctx.filter:
                rows = [r for r in rows if matches(r, ctx.filter)]
            if not rows:
                key = ", ".join(f"{k}={v!r}" for k, v in ctx.key.items())
                raise NotFound(f"{exposed.name} with key {key} not found", target=exposed.name)
            record = rows[0]
            await self._expand(ctx.tx, entity, record, options.expand)
            return self._trim(exposed, record)

        rows = await ctx.tx.read(
            entity,
            ctx.filter,
            orderby=options.orderby,
            top=options.top,
            skip=options.skip,
        )
        for record in rows:
            await self._expand(ctx.tx, entity, record, options.expand)
        return [self._trim(exposed, record) for record in rows]

    async def _insert_deep(
        self, tx: Transaction, entity: EntityDefinition, record: dict[str, Any]
    ) -> dict[str, Any]:
        row = {k: v for k, v in record.items() if entity.get_field(k) is not None}
        created = await tx.insert(entity, row)
        for link in entity.compositions:
            if link.name in record:
                created[link.name] = await self._insert_children(
                    tx, link, created, record[link.name]
                )
        return created

    async def _insert_children(
        self, tx: Transaction, link: AssociationDefinition, parent: dict[str, Any], value: Any
    ) -> Any:
        child_entity = self.model.resolve(link.target)
        items = value if link.many else ([] if value is None else [value])
        created = []
        for child in items:
            child = {**child, **link.join_values(parent)}
            created.append(await self._insert_deep(tx, child_entity, child))
        if link.many:
            return created
        return created[0] if created else None

    async def _replace_children(
        self, tx: Transaction, link: AssociationDefinition, parent: dict[str, Any], value: Any
    ) -> Any:
        child_entity = self.model.resolve(link.target)
        if link.on:
            for child in await tx.read(child_entity, link.join_values(parent)):
                await self._delete_deep(tx, child_entity, child_entity.key_of(child))
        return await self._insert_children(tx, link, parent, value)

    async def _delete_deep(
        self, tx: Transaction, entity: EntityDefinition, key: dict[str, Any]
    ) -> None:
        rows = await tx.read(entity, key)
        if not rows:
            formatted = ", ".join(f"{k}={v!r}" for k, v in key.items())
            raise NotFound(f"{entity.name} with key {formatted} not found", target=entity.name)

        parent = rows[0]
        for link in entity.compositions:
            if not link.on:
                continue
            child_entity = self.model.resolve(link.target)
            for child in await tx.read(child_entity, link.join_values(parent)):
                await self._delete_deep(tx, child_entity, child_entity.key_of(child))
        await tx.delete(entity, key)

    async def _expand(
        self,
        tx: Transaction,
        entity: EntityDefinition,
        record: dict[str, Any],
        names: tuple[str, ...],
    ) -> None:
        for name in names:
            link = entity.get_link(name)
            target = self.model.resolve(link.target)
            related = await tx.read(target, link.join_values(record)) if link.on else []
            record[name] = related if link.many else (related[0] if related else None)

    def _trim(self, exposed: ExposedEntity, record: dict[str, Any]) -> dict[str, Any]:
        if exposed.columns is None:
            return record
        return {k: v for k, v in record.items() if exposed.exposes(k)}

