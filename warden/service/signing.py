from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa

from warden.config import Settings
from warden.logging import get_logger
from warden.service.errors import InvalidToken, SigningFailed

logger = get_logger(__name__)

# Claim semantics (exp/aud/iss/tenant) are checked by the token lifecycle
# manager; the signer only vouches for integrity.
_VERIFY_OPTIONS = {
    "verify_signature": True,
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iat": False,
    "verify_aud": False,
    "verify_iss": False,
}


def _generate_private_key(algorithm: str):
    if algorithm.startswith("RS"):
        return rsa.generate_private_key(public_exponent=65537, key_size=2048)
    if algorithm == "ES256":
        return ec.generate_private_key(ec.SECP256R1())
    if algorithm == "EdDSA":
        return ed25519.Ed25519PrivateKey.generate()
    raise ValueError(f"unsupported signing algorithm {algorithm}")


class SigningAuthority:
    """Asymmetric signer/verifier for session tokens."""

    def __init__(
        self,
        private_key: Any,
        public_key: Any,
        *,
        algorithm: str = "RS256",
        key_id: Optional[str] = None,
    ) -> None:
        self.algorithm = algorithm
        self.key_id = key_id
        self._private_key = private_key
        self._public_key = public_key

    @classmethod
    def generate(cls, algorithm: str = "RS256", *, key_id: Optional[str] = None) -> "SigningAuthority":
        private_key = _generate_private_key(algorithm)
        return cls(private_key, private_key.public_key(), algorithm=algorithm, key_id=key_id)

    @classmethod
    def from_settings(cls, settings: Settings) -> "SigningAuthority":
        if settings.jwt_private_key_path:
            private_key = serialization.load_pem_private_key(
                Path(settings.jwt_private_key_path).read_bytes(), password=None
            )
            if settings.jwt_public_key_path:
                public_key = serialization.load_pem_public_key(
                    Path(settings.jwt_public_key_path).read_bytes()
                )
            else:
                public_key = private_key.public_key()
            return cls(
                private_key,
                public_key,
                algorithm=settings.jwt_algorithm,
                key_id=settings.jwt_key_id,
            )
        if not settings.ephemeral_signing_allowed:
            raise RuntimeError(
                "JWT_PRIVATE_KEY_PATH is required; set TEST_MODE or "
                "ALLOW_EPHEMERAL_SIGNING_KEY for an in-process key"
            )
        logger.warning("ephemeral_signing_key_generated", algorithm=settings.jwt_algorithm)
        return cls.generate(settings.jwt_algorithm, key_id=settings.jwt_key_id)

    def sign(self, claims: Dict[str, Any]) -> str:
        headers = {"kid": self.key_id} if self.key_id else None
        try:
            return jwt.encode(claims, self._private_key, algorithm=self.algorithm, headers=headers)
        except (jwt.PyJWTError, TypeError, ValueError) as exc:
            logger.error("token_signing_failed", error=str(exc), algorithm=self.algorithm)
            raise SigningFailed() from exc

    def verify(self, token: str) -> Dict[str, Any]:
        if not isinstance(token, str) or not token:
            raise InvalidToken()
        try:
            return jwt.decode(
                token,
                self._public_key,
                algorithms=[self.algorithm],
                options=_VERIFY_OPTIONS,
            )
        except jwt.InvalidTokenError as exc:
            logger.info("token_signature_rejected", error=type(exc).__name__)
            raise InvalidToken() from exc

    def public_key_pem(self) -> str:
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode("ascii")
