"""Request/response channel: REST calls, 401 handling and cold-start wake."""

from .endpoints import CodingApi, QuickPracticeApi
from .schema import ApiEnvelope, Identity
from .service import AuthGuard, ColdStartWaker, CredentialStore, RestTransport, classify_status

__all__ = [
    "ApiEnvelope",
    "AuthGuard",
    "CodingApi",
    "ColdStartWaker",
    "CredentialStore",
    "Identity",
    "QuickPracticeApi",
    "RestTransport",
    "classify_status",
]
