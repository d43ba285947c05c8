"""
Caller-supplied bearer token credential and token claim inspection.

ClientProvidedTokenCredential lets an MCP client that already signed the user
in (for example through its own OAuth flow) hand the bridge a ready-made
access token. It exposes the same get_token() capability as the azure-identity
credentials, so the rest of the bridge does not care where a token came from.

Two rules shape this class:
- The credential is created once and then mutated in place by update_token().
  Adapters already holding a reference to it see new tokens immediately.
- "No token yet" and "expired token" are the same observable state. Without an
  initial token, expires_on is set to the Unix epoch so is_expired() is true.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import jwt
from azure.core.credentials import AccessToken

logger = logging.getLogger("graph-bridge.credentials")

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # Naive datetimes are taken to be UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ClientProvidedTokenCredential:
    """
    Holds a single externally supplied bearer token.

    No network access is ever performed. The token is returned for any scope
    as long as it has not reached its expiry; the caller that supplied it
    attests that it is valid for the APIs being called.

    The default expiry (one hour unless configured otherwise) is a client-side
    liveness window, not the issuer's real expiry. Callers that know the real
    expiry should pass it explicitly.
    """

    def __init__(
        self,
        access_token: str | None = None,
        expires_on: datetime | None = None,
        default_lifetime: timedelta = DEFAULT_TOKEN_LIFETIME,
    ):
        self.default_lifetime = default_lifetime
        self.access_token: str | None
        self.expires_on: datetime
        if access_token:
            self.access_token = access_token
            self.expires_on = self._resolve_expiry(expires_on)
        else:
            self.access_token = None
            self.expires_on = EPOCH

    def _resolve_expiry(self, expires_on: datetime | None) -> datetime:
        if expires_on is None:
            return _utcnow() + self.default_lifetime
        return _as_utc(expires_on)

    def get_token(self, *scopes: str, **kwargs) -> AccessToken | None:
        """
        Return the stored token, or None when none is currently usable.

        None is a normal result here, not an error: it means the token was
        never supplied or has expired. Scopes are accepted for interface
        compatibility with azure-identity and ignored.
        """
        if not self.access_token:
            logger.error("No access token has been provided")
            return None
        if self.is_expired():
            logger.error(
                "Access token has expired",
                extra={"event_data": {"expires_on": self.expires_on.isoformat()}},
            )
            return None
        return AccessToken(self.access_token, int(self.expires_on.timestamp()))

    def update_token(self, access_token: str, expires_on: datetime | None = None) -> None:
        """Replace the stored token and expiry in place."""
        self.access_token = access_token
        self.expires_on = self._resolve_expiry(expires_on)
        logger.info(
            "Access token updated successfully",
            extra={"event_data": {"expires_on": self.expires_on.isoformat()}},
        )

    def is_expired(self) -> bool:
        return self.expires_on <= _utcnow()

    def get_expiration_time(self) -> datetime:
        return self.expires_on


@dataclass(frozen=True)
class TokenClaims:
    """
    Informational view of a bearer token's claims.

    Built from an unverified decode: it is only used to show an operator or an
    agent which permissions a token carries. It must never feed an
    authorization decision.
    """

    scopes: list[str] = field(default_factory=list)
    audience: str | None = None
    expires_on: datetime | None = None


def inspect_token(access_token: str) -> TokenClaims:
    """
    Decode a bearer token without verifying its signature.

    Delegated tokens list scopes space-separated in "scp"; app-only tokens list
    application permissions in "roles". Tokens that are not JWTs (Microsoft
    account tokens can be opaque) yield an empty TokenClaims.
    """
    try:
        claims = jwt.decode(
            access_token,
            options={"verify_signature": False, "verify_exp": False, "verify_aud": False},
        )
    except jwt.InvalidTokenError:
        return TokenClaims()

    scopes: list[str] = []
    scp = claims.get("scp")
    if isinstance(scp, str):
        scopes.extend(scp.split())
    roles = claims.get("roles")
    if isinstance(roles, list):
        scopes.extend(r for r in roles if isinstance(r, str))

    audience = claims.get("aud")
    if isinstance(audience, list):
        audience = audience[0] if audience else None

    expires_on = None
    exp = claims.get("exp")
    if isinstance(exp, (int, float)):
        expires_on = datetime.fromtimestamp(exp, tz=timezone.utc)

    return TokenClaims(scopes=scopes, audience=audience, expires_on=expires_on)
