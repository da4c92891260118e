from .service import Credential, CredentialService, SqlCredentialStore

__all__ = [
    "Credential",
    "CredentialService",
    "SqlCredentialStore",
]
