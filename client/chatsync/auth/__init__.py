"""Authentication module.

Services:
    - CredentialProvider: Interface the connection core reads credentials from.
    - Authenticator: HTTP login/refresh/logout backed by the local store.
"""
from .schemas import Credential, LoginRequest, SessionIdentity
from .service import Authenticator, CredentialProvider, StaticCredentialProvider

__all__ = [
    "Credential",
    "LoginRequest",
    "SessionIdentity",
    "Authenticator",
    "CredentialProvider",
    "StaticCredentialProvider",
]
