"""Stateless session tokens (JWT) for authenticated wallets.

Tokens are signed with the current key and carry its id in the ``kid``
header. Keys retired by ``rotate`` keep verifying tokens until those
tokens expire.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Sequence, Tuple

from jose import JWTError, jwt
from pydantic import ValidationError

from ..errors import TokenExpired, TokenInvalidSignature
from ..models.auth_models import Role, SessionClaims
from .nonce_store import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SigningKey:
    kid: str
    secret: str

    def __repr__(self) -> str:
        return f"SigningKey(kid={self.kid!r}, secret='***')"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: SessionClaims


class SessionIssuer:
    def __init__(
        self,
        keys: Sequence[Tuple[str, str]],
        ttl: timedelta = timedelta(hours=24),
        algorithm: str = "HS256",
        clock: Callable[[], datetime] = utc_now,
    ):
        if not keys:
            raise ValueError("SessionIssuer needs at least one signing key")
        if ttl <= timedelta(0):
            raise ValueError("Token lifetime must be positive")
        self._keys: List[SigningKey] = [SigningKey(kid, secret) for kid, secret in keys]
        self.ttl = ttl
        self.algorithm = algorithm
        self._clock = clock

    @property
    def current_key_id(self) -> str:
        return self._keys[0].kid

    @property
    def key_ids(self) -> List[str]:
        return [key.kid for key in self._keys]

    def rotate(self, kid: str, secret: str, keep: int = 2) -> None:
        """Makes ``(kid, secret)`` the signing key; keeps at most ``keep`` older keys for verification."""
        previous = [key for key in self._keys if key.kid != kid][:keep]
        self._keys = [SigningKey(kid, secret)] + previous
        logger.info(f"Rotated session signing key to '{kid}' ({len(previous)} previous keys kept)")

    def issue(self, address: str, roles: Iterable[Role]) -> IssuedToken:
        now = self._clock()
        issued_at = int(now.timestamp())
        expires_at = issued_at + int(self.ttl.total_seconds())
        role_values = sorted({Role(role).value for role in roles})
        key = self._keys[0]
        token = jwt.encode(
            {"sub": address, "iat": issued_at, "exp": expires_at, "roles": role_values},
            key.secret,
            algorithm=self.algorithm,
            headers={"kid": key.kid},
        )
        claims = SessionClaims(
            subject_address=address,
            issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            roles=[Role(value) for value in role_values],
            key_id=key.kid,
        )
        logger.info(f"JWT generated for {address} with roles {role_values}")
        return IssuedToken(token=token, claims=claims)

    def validate(self, token: str) -> SessionClaims:
        """Returns the claims of a valid token.

        Raises TokenInvalidSignature for anything that does not verify
        against a known key, TokenExpired once ``now >= exp``.
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            logger.warning(f"Malformed token: {e}")
            raise TokenInvalidSignature()

        key = next((k for k in self._keys if k.kid == header.get("kid")), None)
        if key is None:
            logger.warning(f"Token signed with unknown key id {header.get('kid')!r}")
            raise TokenInvalidSignature()

        try:
            # Expiry is checked below against the injected clock
            payload = jwt.decode(
                token,
                key.secret,
                algorithms=[self.algorithm],
                options={"verify_exp": False, "verify_iat": False, "verify_nbf": False},
            )
        except JWTError as e:
            logger.warning(f"JWT Error during token decoding: {e}")
            raise TokenInvalidSignature()

        try:
            issued_at = int(payload["iat"])
            expires_at = int(payload["exp"])
            claims = SessionClaims(
                subject_address=payload["sub"],
                issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc),
                expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
                roles=payload.get("roles", []),
                key_id=key.kid,
            )
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            logger.warning(f"JWT payload validation error: {e}")
            raise TokenInvalidSignature()

        if expires_at <= issued_at:
            raise TokenInvalidSignature()
        if self._clock().timestamp() >= expires_at:
            raise TokenExpired()
        return claims
