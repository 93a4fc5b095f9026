"""Hook registry.

Handlers are registered during startup and the registry is frozen before
the pipeline serves requests. Lookups after freeze are read-only.
"""

import itertools
import logging
from collections.abc import Callable, Iterable
from typing import Any

from servforge.errors import RegistryFrozen
from servforge.hooks.types import WILDCARD, HandlerFn, HookRegistration, Phase

logger = logging.getLogger(__name__)


def _target_name(target: Any) -> str:
    """Accept a target as a string or as an object with a name (e.g. ExposedEntity)."""
    if target is None:
        return WILDCARD
    if isinstance(target, str):
        return target
    name = getattr(target, "name", None)
    if isinstance(name, str):
        return name
    raise TypeError(f"Cannot use {target!r} as a hook target")


def _events(event: str | Iterable[str]) -> list[str]:
    if isinstance(event, str):
        return [event]
    return list(event)


class HookRegistry:
    """Registry of before/on/after handlers for one service.

    Example:
        hooks = HookRegistry("CatalogService")

        @hooks.before("CREATE", "Orders")
        async def stamp_order_date(ctx):
            ctx.input["orderDate"] = datetime.now(timezone.utc).isoformat()

        @hooks.on("placeOrder")
        async def place_order(ctx):
            return {"message": "Order Placed Successfully"}

        hooks.freeze()
    """

    def __init__(self, service: str | None = None):
        self.service = service
        self._registrations: list[HookRegistration] = []
        self._sequence = itertools.count()
        self._frozen = False

    def register(
        self,
        phase: Phase | str,
        event: str | Iterable[str],
        target: Any,
        handler: HandlerFn,
    ) -> list[HookRegistration]:
        """Append a handler for each given event.

        Raises:
            RegistryFrozen: If called after freeze()
        """
        if self._frozen:
            raise RegistryFrozen(
                f"Hook registry for '{self.service}' is frozen; register handlers at startup"
            )
        if not callable(handler):
            raise TypeError(f"Hook handler must be callable, got {handler!r}")

        phase = Phase(phase)
        target_name = _target_name(target)
        added = []
        for ev in _events(event):
            registration = HookRegistration(
                phase=phase,
                event=ev,
                target=target_name,
                handler=handler,
                sequence=next(self._sequence),
            )
            self._registrations.append(registration)
            added.append(registration)
            logger.debug(
                "Registered %s %s %s -> %s", phase.value, ev, target_name, registration.name
            )
        return added

    def before(self, event: str | Iterable[str], target: Any = WILDCARD, handler: HandlerFn | None = None):
        return self._decorate(Phase.BEFORE, event, target, handler)

    def on(self, event: str | Iterable[str], target: Any = WILDCARD, handler: HandlerFn | None = None):
        return self._decorate(Phase.ON, event, target, handler)

    def after(self, event: str | Iterable[str], target: Any = WILDCARD, handler: HandlerFn | None = None):
        return self._decorate(Phase.AFTER, event, target, handler)

    def _decorate(
        self, phase: Phase, event: str | Iterable[str], target: Any, handler: HandlerFn | None
    ) -> Any:
        """Register directly when a handler is given, otherwise act as a decorator."""
        if handler is not None:
            self.register(phase, event, target, handler)
            return handler

        def decorator(fn: HandlerFn) -> HandlerFn:
            self.register(phase, event, target, fn)
            return fn

        return decorator

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def matching(self, phase: Phase, event: str, target: str) -> list[HookRegistration]:
        """Handlers for (phase, event, target): exact target matches first,
        then wildcard matches, each group in registration order."""
        exact = []
        wildcard = []
        for registration in self._registrations:
            if not registration.matches(phase, event, target):
                continue
            if registration.target == target:
                exact.append(registration)
            else:
                wildcard.append(registration)
        return exact + wildcard

    def has_handler(self, phase: Phase, event: str, target: str) -> bool:
        return bool(self.matching(phase, event, target))

    def registrations(self) -> tuple[HookRegistration, ...]:
        return tuple(self._registrations)

    def __len__(self) -> int:
        return len(self._registrations)


Registrar = Callable[[HookRegistry, Any], None]
"""Signature of a service implementation's register(hooks, model) function."""
