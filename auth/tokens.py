"""
auth/tokens.py -- Access token codec (JWT, HS256 via python-jose).

Security design decisions:
  Signing: HS256 with the server-held SECRET_KEY. The codec is constructed
       once from Settings and passed to whoever needs it; there is no module
       level key.

  Algorithm confusion: validate() reads the unverified header first and
       rejects anything whose "alg" is not exactly the configured algorithm
       ("none", RS256 with the HMAC key as a "public key", ...). jose's
       algorithms= whitelist is passed as well.

  Time bounds: exp / nbf are checked here against the codec's clock rather
       than by jose, so one injectable clock drives issue and validate alike.

  Statelessness: validate() never touches the session store or the cache.
       A revoked session's access token stays usable until it expires; the
       short TTL bounds that window.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import TokenClaims, User
from core.config import Settings
from core.errors import InvalidToken

_REQUIRED_CLAIMS = ("user_id", "username", "email", "roles", "session_id", "iat", "nbf", "exp")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class TokenCodec:
    """Mint and verify signed, short-lived access tokens.

    Usage:
        codec = TokenCodec.from_settings(get_settings())
        token = codec.issue(user, session_id, ["user"])
        claims = codec.validate(token)
    """

    def __init__(
        self,
        secret: str,
        ttl_seconds: int,
        issuer: str = "hostpanel",
        algorithm: str = "HS256",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret:
            raise ValueError("TokenCodec requires a signing secret.")
        self._secret = secret
        self.ttl = timedelta(seconds=ttl_seconds)
        self.issuer = issuer
        self.algorithm = algorithm
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, clock: Callable[[], datetime] = _utcnow) -> "TokenCodec":
        return cls(
            settings.secret_key,
            settings.access_token_ttl_seconds,
            issuer=settings.token_issuer,
            clock=clock,
        )

    def issue(self, user: User, session_id: str, roles: Sequence[str]) -> str:
        """Encode a signed JWT carrying identity, roles and the owning session."""
        # Whole seconds: the wire format is integer epoch seconds, and
        # truncating here keeps issue -> validate an exact round trip.
        issued_at = self._clock().replace(microsecond=0)
        payload = {
            "sub": str(user.id),
            "user_id": str(user.id),
            "username": user.username,
            "email": user.email,
            "roles": list(roles),
            "session_id": session_id,
            "iss": self.issuer,
            "iat": int(issued_at.timestamp()),
            "nbf": int(issued_at.timestamp()),
            "exp": int((issued_at + self.ttl).timestamp()),
        }
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def validate(self, token: str) -> TokenClaims:
        """Verify signature, algorithm, issuer and time bounds. Raises InvalidToken on any failure."""
        if not token:
            raise InvalidToken()
        try:
            header = jwt.get_unverified_header(token)
            if header.get("alg") != self.algorithm:
                raise InvalidToken("Unexpected token signing algorithm.")
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                options={"verify_exp": False, "verify_nbf": False, "verify_iat": False},
            )
        except JWTError as exc:
            raise InvalidToken() from exc

        if any(name not in payload for name in _REQUIRED_CLAIMS):
            raise InvalidToken("Token is missing required claims.")
        try:
            not_before = _ts(int(payload["nbf"]))
            expires_at = _ts(int(payload["exp"]))
            issued_at = _ts(int(payload["iat"]))
        except (TypeError, ValueError, OverflowError) as exc:
            raise InvalidToken("Token has malformed time claims.") from exc

        now = self._clock()
        if now < not_before:
            raise InvalidToken("Token is not yet valid.")
        if now >= expires_at:
            raise InvalidToken("Token has expired.")
        if not isinstance(payload["roles"], list):
            raise InvalidToken("Token has malformed role claims.")

        return TokenClaims(
            user_id=str(payload["user_id"]),
            username=str(payload["username"]),
            email=str(payload["email"]),
            roles=tuple(str(r) for r in payload["roles"]),
            session_id=str(payload["session_id"]),
            issued_at=issued_at,
            not_before=not_before,
            expires_at=expires_at,
        )
