from __future__ import annotations

import base64
import json
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from wordnest.logging import get_logger

logger = get_logger(__name__)

KEY_INFO = b"NextAuth.js Generated Encryption Key"
_HEADER = {"alg": "dir", "enc": "A256GCM"}


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64decode(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def derive_encryption_key(secret: str) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"",
        info=KEY_INFO,
    ).derive(secret.encode("utf-8"))


class OAuthSessionCodec:
    """Encrypted session tokens for OAuth sign-ins.

    Tokens are compact JWE (``dir`` + ``A256GCM``) keyed by HKDF over the
    OAuth session secret, the same construction NextAuth.js uses for its
    JWT session cookie. :meth:`decode` returns ``None`` for anything it
    cannot open or that has expired.
    """

    def __init__(
        self,
        secret: str,
        *,
        max_age: timedelta = timedelta(days=30),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret:
            raise ValueError("oauth session secret must be non-empty")
        self._aead = AESGCM(derive_encryption_key(secret))
        self.max_age = max_age
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def encode(
        self,
        *,
        subject: str,
        email: str,
        name: Optional[str] = None,
        picture: Optional[str] = None,
    ) -> str:
        now = self._clock()
        claims = {
            "sub": subject,
            "email": email,
            "name": name,
            "picture": picture,
            "iat": int(now.timestamp()),
            "exp": int((now + self.max_age).timestamp()),
            "jti": str(uuid.uuid4()),
        }
        protected = _b64encode(json.dumps(_HEADER, separators=(",", ":")).encode())
        iv = os.urandom(12)
        sealed = self._aead.encrypt(
            iv, json.dumps(claims, separators=(",", ":")).encode(), protected.encode("ascii")
        )
        ciphertext, tag = sealed[:-16], sealed[-16:]
        return ".".join(
            [protected, "", _b64encode(iv), _b64encode(ciphertext), _b64encode(tag)]
        )

    def decode(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        if not token:
            return None
        parts = token.split(".")
        if len(parts) != 5 or parts[1]:
            return None
        protected, _, iv_b64, ciphertext_b64, tag_b64 = parts
        try:
            header = json.loads(_b64decode(protected))
            if header.get("alg") != "dir" or header.get("enc") != "A256GCM":
                return None
            plaintext = self._aead.decrypt(
                _b64decode(iv_b64),
                _b64decode(ciphertext_b64) + _b64decode(tag_b64),
                protected.encode("ascii"),
            )
            claims = json.loads(plaintext)
        except InvalidTag:
            logger.info("oauth_session_tag_mismatch")
            return None
        except (ValueError, TypeError, AttributeError):
            logger.info("oauth_session_malformed")
            return None
        if not isinstance(claims, dict):
            return None
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or exp <= self._clock().timestamp():
            return None
        return claims
