"""Type definitions for the auth collaborator."""

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, runtime_checkable


@dataclass(frozen=True)
class Principal:
    """The caller identity a request runs under.

    Attributes:
        id: The authenticated user's ID ("anonymous" when unauthenticated)
        roles: Role names the user has
        attributes: Opaque extra claims supplied by the auth layer
    """

    id: str
    roles: frozenset[str] = frozenset()
    attributes: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_anonymous(self) -> bool:
        return self.id == ANONYMOUS_ID

    def has_role(self, role: str) -> bool:
        # Every caller, anonymous or not, has the pseudo-role "any"
        if role == "any":
            return True
        if role == "authenticated-user":
            return not self.is_anonymous
        return role in self.roles


ANONYMOUS_ID = "anonymous"
ANONYMOUS = Principal(id=ANONYMOUS_ID)


@runtime_checkable
class AuthCollaborator(Protocol):
    """Supplies the principal for an inbound request.

    Token validation lives behind this interface and is not part of the
    runtime.
    """

    def authenticate(self, headers: Mapping[str, str]) -> Principal: ...
