"""Worker identities, their loader and the credential pool."""

from .loader import IDENTITY_DESCRIPTOR, IdentityLoader, load_identities
from .models import QUOTA_UNKNOWN, AuthKind, Identity, IdentityQuota
from .pool import CredentialPool
from .quota import QuotaChecker

__all__ = [
    "AuthKind",
    "CredentialPool",
    "IDENTITY_DESCRIPTOR",
    "Identity",
    "IdentityLoader",
    "IdentityQuota",
    "QUOTA_UNKNOWN",
    "QuotaChecker",
    "load_identities",
]
