"""Request lifecycle hooks.

Handlers run at three phases of every request:
- before: mutate ctx.input or reject the request
- on:     produce the result (replaces default CRUD; mandatory for
          custom operations)
- after:  transform the result by returning a replacement

Usage (in a service implementation module):

    def register(hooks, model):
        @hooks.before("CREATE", "Orders")
        async def stamp_order_date(ctx):
            ctx.input["orderDate"] = datetime.now(timezone.utc).isoformat()
"""

from servforge.hooks.dispatcher import HookDispatcher
from servforge.hooks.registry import HookRegistry, Registrar
from servforge.hooks.types import (
    WILDCARD,
    Capability,
    HandlerFn,
    HookRegistration,
    Phase,
)

__all__ = [
    "Capability",
    "HandlerFn",
    "HookDispatcher",
    "HookRegistration",
    "HookRegistry",
    "Phase",
    "Registrar",
    "WILDCARD",
]
