"""Caller authentication against the catalog snapshot."""

from __future__ import annotations

import logging
from typing import Optional

from catalog import CatalogSnapshot
from errors import UnauthenticatedError
from models import CallerIdentity

log = logging.getLogger("model_gateway")


def bearer_token(authorization: Optional[str]) -> str:
    """Extract the token of an `Authorization: Bearer <token>` header, or ""."""
    if not authorization:
        return ""
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


class Authenticator:
    """
    Map request credentials to a CallerIdentity.

    Tokens are issued elsewhere; this only looks them up. With
    trust_identity_header the gateway sits behind a proxy that has already
    validated the caller and forwards the email in X-Caller-Email.
    """

    def __init__(self, trust_identity_header: bool = False) -> None:
        self._trust_identity_header = trust_identity_header

    def authenticate(
        self,
        authorization: Optional[str],
        trusted_email: Optional[str],
        snapshot: CatalogSnapshot,
    ) -> CallerIdentity:
        token = bearer_token(authorization)
        email: Optional[str] = None
        if token:
            email = snapshot.caller_email(token)
            if email is None:
                log.warning("Rejected unknown bearer token")
                raise UnauthenticatedError("Invalid credentials")
        elif self._trust_identity_header and trusted_email and trusted_email.strip():
            email = trusted_email.strip()
        else:
            raise UnauthenticatedError("Missing credentials")

        return CallerIdentity(email=email, entitled_models=snapshot.entitlements(email))
