"""Hook system types.

Defines the core data structures for request lifecycle hooks:
- Phase: before / on / after
- Capability: what a handler registered for a phase may do
- HookRegistration: one registered handler keyed by (phase, event, target)
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from servforge.runtime.context import RequestContext

# Handler signature: (RequestContext) -> result | None, sync or async
HandlerFn = Callable[["RequestContext"], Awaitable[Any] | Any]

WILDCARD = "*"


class Phase(Enum):
    BEFORE = "before"
    ON = "on"
    AFTER = "after"


class Capability(Enum):
    """What a handler may do, fixed by the phase it is registered for.

    VALIDATE: mutate the input or reject the request (before)
    PRODUCE: produce the operation's result (on)
    TRANSFORM: replace the result by returning a value (after)
    """

    VALIDATE = "validate"
    PRODUCE = "produce"
    TRANSFORM = "transform"


PHASE_CAPABILITY = {
    Phase.BEFORE: Capability.VALIDATE,
    Phase.ON: Capability.PRODUCE,
    Phase.AFTER: Capability.TRANSFORM,
}


@dataclass(frozen=True)
class HookRegistration:
    """A handler registered for a (phase, event, target) triple.

    Attributes:
        phase: Lifecycle phase the handler runs in
        event: CREATE, READ, UPDATE, DELETE or a custom operation name
        target: Exposed entity name, operation name, or "*" for any
        handler: The handler function
        sequence: Registration order across the whole registry
    """

    phase: Phase
    event: str
    target: str
    handler: HandlerFn
    sequence: int

    @property
    def capability(self) -> Capability:
        return PHASE_CAPABILITY[self.phase]

    @property
    def name(self) -> str:
        return getattr(self.handler, "__qualname__", repr(self.handler))

    def matches(self, phase: Phase, event: str, target: str) -> bool:
        return (
            self.phase is phase
            and self.event == event
            and (self.target == target or self.target == WILDCARD)
        )
