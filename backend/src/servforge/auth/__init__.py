"""Auth collaborator interface and the development header authenticator."""

from servforge.auth.headers import HeaderAuthenticator
from servforge.auth.types import ANONYMOUS, AuthCollaborator, Principal

__all__ = [
    "ANONYMOUS",
    "AuthCollaborator",
    "HeaderAuthenticator",
    "Principal",
]
