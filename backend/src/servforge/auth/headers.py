"""Header-based authenticator for development and tests.

Trusts the ``X-User-Id`` and ``X-User-Roles`` headers as given. Put a
real AuthCollaborator in front of any deployment that faces untrusted
clients.
"""

from typing import Mapping

from servforge.auth.types import ANONYMOUS, Principal

USER_HEADER = "x-user-id"
ROLES_HEADER = "x-user-roles"


class HeaderAuthenticator:
    def authenticate(self, headers: Mapping[str, str]) -> Principal:
        lowered = {k.lower(): v for k, v in headers.items()}
        user_id = lowered.get(USER_HEADER, "").strip()
        if not user_id:
            return ANONYMOUS

        roles = frozenset(
            r.strip() for r in lowered.get(ROLES_HEADER, "").split(",") if r.strip()
        )
        return Principal(id=user_id, roles=roles)
