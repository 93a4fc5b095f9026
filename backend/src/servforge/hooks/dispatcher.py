"""Hook dispatcher.

Runs the handlers matching a request's (phase, event, target) one at a
time, in order, awaiting each. Errors are recorded on the request
context rather than raised, so the pipeline decides where to route.
"""

from __future__ import annotations

import inspect
import logging
from typing import TYPE_CHECKING, Any

from servforge.errors import FatalError, InternalError, ServiceError, make_error
from servforge.hooks.registry import HookRegistry
from servforge.hooks.types import HookRegistration, Phase

if TYPE_CHECKING:
    from servforge.runtime.context import RequestContext

logger = logging.getLogger(__name__)


class HookDispatcher:
    """Invokes before/on/after handlers of one service's HookRegistry.

    Phase semantics:
        before: handlers run in order until one signals an error.
        on:     the first handler returning a value produces the result;
                the remaining on handlers are skipped.
        after:  every handler runs. A returned value replaces ctx.result.
                A failing handler records the first error and the rest
                still run.
    """

    def __init__(self, registry: HookRegistry):
        self.registry = registry

    async def dispatch(self, phase: Phase, ctx: RequestContext) -> Any:
        if phase is Phase.BEFORE:
            return await self.run_before(ctx)
        if phase is Phase.ON:
            return await self.run_on(ctx)
        return await self.run_after(ctx)

    async def run_before(self, ctx: RequestContext) -> bool:
        """Run before handlers. Returns False if one signaled an error."""
        for registration in self.registry.matching(Phase.BEFORE, ctx.event, ctx.target):
            await self._invoke(registration, ctx)
            if ctx.error is not None:
                logger.debug(
                    "Request %s rejected by before hook '%s': %s",
                    ctx.id,
                    registration.name,
                    ctx.error.kind,
                )
                return False
        return True

    async def run_on(self, ctx: RequestContext) -> tuple[bool, Any]:
        """Run on handlers.

        Returns:
            (handled, result). handled is False when no on handler is
            registered for the request's event and target.
        """
        registrations = self.registry.matching(Phase.ON, ctx.event, ctx.target)
        if not registrations:
            return False, None

        for registration in registrations:
            result = await self._invoke(registration, ctx)
            if ctx.error is not None:
                return True, None
            if result is not None:
                return True, result
        return True, None

    async def run_after(self, ctx: RequestContext) -> None:
        for registration in self.registry.matching(Phase.AFTER, ctx.event, ctx.target):
            first_error = ctx.error
            result = await self._invoke(registration, ctx)
            if first_error is not None:
                # keep the first error; later failures are only logged
                ctx.error = first_error
            elif ctx.error is None and result is not None:
                ctx.result = result

    async def _invoke(self, registration: HookRegistration, ctx: RequestContext) -> Any:
        """Call one handler, awaiting it if it is a coroutine function.

        ServiceErrors become ctx.error. Other exceptions become an
        InternalError. FatalErrors propagate.
        """
        try:
            result = registration.handler(ctx)
            if inspect.isawaitable(result):
                result = await result
        except FatalError:
            raise
        except ServiceError as e:
            logger.info(
                "Hook '%s' (%s %s %s) failed: %s",
                registration.name,
                registration.phase.value,
                ctx.event,
                ctx.target,
                e.message,
            )
            ctx.error = e
            return None
        except Exception as e:
            logger.exception(
                "Hook '%s' (%s %s %s) raised an unexpected error",
                registration.name,
                registration.phase.value,
                ctx.event,
                ctx.target,
            )
            ctx.error = InternalError(f"Hook '{registration.name}' failed: {e}")
            return None

        if ctx.error is not None and not isinstance(ctx.error, ServiceError):
            ctx.error = make_error(str(ctx.error))
        return result
