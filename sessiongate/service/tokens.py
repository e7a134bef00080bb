from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

import jwt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from sessiongate.config import Settings
from sessiongate.logging import get_logger
from sessiongate.service.errors import (
    InvalidTokenError,
    ServerError,
    TokenExpiredError,
    TokenVerificationError,
)
from sessiongate.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_NONCE_BYTES = 12
_TAG_BYTES = 16
_KDF_SALT = b"salt"


@dataclass
class TokenPayload:
    """Claims shared by access and refresh tokens of one session."""

    session_id: str
    user_id: str
    email: str
    fingerprint: Optional[str] = None
    name: Optional[str] = None
    image_url: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    type: Optional[str] = None
    iat: Optional[int] = None
    exp: Optional[int] = None

    def to_claims(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "email": self.email,
            "name": self.name,
            "imageUrl": self.image_url,
            "roles": list(self.roles),
            "fingerprint": self.fingerprint,
        }

    @classmethod
    def for_user(
        cls, user: User, session_id: str, fingerprint: Optional[str]
    ) -> "TokenPayload":
        return cls(
            session_id=session_id,
            user_id=user.id,
            email=user.email,
            fingerprint=fingerprint,
            name=user.name,
            image_url=user.image_url,
            roles=list(user.role_ids),
        )

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "TokenPayload":
        roles = claims.get("roles") or []
        if not isinstance(roles, list):
            raise ValueError("roles claim must be a list")
        return cls(
            session_id=claims.get("sessionId") or "",
            user_id=claims.get("userId") or "",
            email=claims.get("email") or "",
            fingerprint=claims.get("fingerprint"),
            name=claims.get("name"),
            image_url=claims.get("imageUrl"),
            roles=[str(r) for r in roles],
            type=claims.get("type"),
            iat=claims.get("iat"),
            exp=claims.get("exp"),
        )


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


class TokenService:
    """Mint and verify the access (signed JWT) and refresh (AES-GCM) tokens."""

    def __init__(
        self,
        settings: Settings,
        *,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._jwt_secret = settings.jwt_secret
        self._algorithm = settings.jwt_algorithm
        self._access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self._refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)
        # scrypt is deliberately slow; derive the key once per service
        self._refresh_key = Scrypt(salt=_KDF_SALT, length=32, n=2**14, r=8, p=1).derive(
            settings.refresh_token_secret.encode()
        )

    def gen_access_token(self, payload: TokenPayload) -> str:
        now = self._now()
        claims = {
            **payload.to_claims(),
            "type": ACCESS,
            "iat": int(now.timestamp()),
            "exp": int((now + self._access_ttl).timestamp()),
        }
        return jwt.encode(claims, self._jwt_secret, algorithm=self._algorithm)

    def gen_refresh_token(self, payload: TokenPayload) -> str:
        now = self._now()
        claims = {
            **payload.to_claims(),
            "type": REFRESH,
            "iat": int(now.timestamp()),
            "exp": int((now + self._refresh_ttl).timestamp()),
        }
        nonce = os.urandom(_NONCE_BYTES)
        sealed = AESGCM(self._refresh_key).encrypt(
            nonce, json.dumps(claims).encode(), associated_data=None
        )
        ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return f"{nonce.hex()}:{ciphertext.hex()}:{tag.hex()}"

    def gen_token_pair(self, payload: TokenPayload) -> TokenPair:
        snapshot = replace(payload, roles=list(payload.roles))
        return TokenPair(
            access_token=self.gen_access_token(snapshot),
            refresh_token=self.gen_refresh_token(snapshot),
        )

    def verify(self, token: str, required_type: str = ACCESS) -> TokenPayload:
        """Verify a signed token.

        Raises:
            TokenExpiredError: the ``exp`` claim has passed
            TokenVerificationError: bad signature, malformed token or missing claims
            InvalidTokenError: the token's ``type`` is not ``required_type``
            ServerError: any other failure while decoding
        """
        try:
            claims = jwt.decode(
                token,
                self._jwt_secret,
                algorithms=[self._algorithm],
                options={"require": ["exp", "iat"]},
            )
            payload = TokenPayload.from_claims(claims)
        except jwt.ExpiredSignatureError:
            raise TokenExpiredError()
        except (jwt.InvalidTokenError, ValueError) as exc:
            logger.info("access_token_verification_failed", error_type=type(exc).__name__)
            raise TokenVerificationError()
        except Exception as exc:
            logger.error("access_token_decode_error", error=str(exc))
            raise ServerError() from exc
        if payload.type != required_type:
            logger.warning(
                "token_type_mismatch", expected=required_type, actual=payload.type
            )
            raise InvalidTokenError()
        return payload

    def verify_refresh_token(self, token: str) -> Optional[TokenPayload]:
        """Decrypt a refresh token; any failure yields ``None``."""
        try:
            nonce_hex, cipher_hex, tag_hex = token.split(":")
            nonce = bytes.fromhex(nonce_hex)
            sealed = bytes.fromhex(cipher_hex) + bytes.fromhex(tag_hex)
            if len(nonce) != _NONCE_BYTES:
                return None
            plaintext = AESGCM(self._refresh_key).decrypt(nonce, sealed, associated_data=None)
            payload = TokenPayload.from_claims(json.loads(plaintext))
        except (ValueError, InvalidTag, TypeError, AttributeError):
            return None
        if payload.type != REFRESH or payload.exp is None:
            return None
        if payload.exp <= int(self._now().timestamp()):
            return None
        return payload
