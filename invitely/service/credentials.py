from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from invitely.config import Settings
from invitely.logging import get_logger
from invitely.service.clock import Clock, SystemClock
from invitely.service.primitives import generate_secure_token

logger = get_logger(__name__)

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"
TOKEN_TYPE_VERIFICATION = "verification"
KNOWN_TOKEN_TYPES = frozenset(
    {TOKEN_TYPE_ACCESS, TOKEN_TYPE_REFRESH, TOKEN_TYPE_VERIFICATION}
)

_REQUIRED_CLAIMS = ["jti", "sub", "type", "iat", "nbf", "exp", "iss", "aud"]
MIN_RSA_KEY_BITS = 2048


class CredentialError(Exception):
    """Any reason a presented credential cannot be trusted."""


class ParseError(CredentialError):
    """Malformed, wrongly signed, not yet valid, or foreign credential."""


class ExpiredError(CredentialError):
    """Signature is fine but ``exp`` has passed."""


class TypeMismatchError(CredentialError):
    """Credential is valid but of a different type than required."""


class SigningError(Exception):
    """The private key could not produce a signature."""


@dataclass(frozen=True)
class Claims:
    jti: str
    sub: str
    device_id: str
    role: str
    type: str
    iat: int
    nbf: int
    exp: int
    iss: str
    aud: str

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)

    def remaining_seconds(self, now: datetime) -> int:
        return max(0, self.exp - int(now.timestamp()))

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Claims":
        aud = payload.get("aud")
        if isinstance(aud, list):
            aud = aud[0] if aud else ""
        try:
            return cls(
                jti=str(payload["jti"]),
                sub=str(payload["sub"]),
                device_id=str(payload.get("device_id") or ""),
                role=str(payload.get("role") or ""),
                type=str(payload["type"]),
                iat=int(payload["iat"]),
                nbf=int(payload["nbf"]),
                exp=int(payload["exp"]),
                iss=str(payload["iss"]),
                aud=str(aud),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ParseError("credential claims malformed") from exc


@dataclass(frozen=True)
class CredentialPair:
    access: str
    refresh: str
    access_jti: str
    refresh_jti: str
    access_exp: datetime
    refresh_exp: datetime


def generate_rsa_key_pair(bits: int = MIN_RSA_KEY_BITS) -> Tuple[str, str]:
    """Return a fresh (private, public) PEM pair, PKCS#8 / SubjectPublicKeyInfo."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_pem, public_pem


def _load_keys(private_pem: str, public_pem: str, algorithm: str):
    # load_pem_private_key reads both PKCS#8 and traditional PKCS#1 blocks
    try:
        private_key = serialization.load_pem_private_key(
            private_pem.encode("ascii"), password=None
        )
        public_key = serialization.load_pem_public_key(public_pem.encode("ascii"))
    except (ValueError, TypeError) as exc:
        raise ValueError("signing keys are not valid PEM material") from exc

    if algorithm.startswith("RS"):
        if not isinstance(private_key, rsa.RSAPrivateKey) or not isinstance(
            public_key, rsa.RSAPublicKey
        ):
            raise ValueError(f"{algorithm} requires an RSA key pair")
        if private_key.key_size < MIN_RSA_KEY_BITS:
            raise ValueError(f"RSA signing key must be at least {MIN_RSA_KEY_BITS} bits")
    elif algorithm.startswith("ES"):
        if not isinstance(private_key, ec.EllipticCurvePrivateKey) or not isinstance(
            public_key, ec.EllipticCurvePublicKey
        ):
            raise ValueError(f"{algorithm} requires an elliptic-curve key pair")
    else:
        raise ValueError(f"unsupported signing algorithm {algorithm}")
    return private_key, public_key


class CredentialService:
    """Mints and validates signed bearer credentials.

    One private key signs every credential; verifiers only need the public
    key. ``nbf`` and ``exp`` are compared against the injected clock with no
    leeway, so PyJWT's own wall-clock checks are switched off.
    """

    def __init__(
        self,
        *,
        private_key_pem: str,
        public_key_pem: str,
        issuer: str,
        audience: str,
        access_lifetime: timedelta,
        refresh_lifetime: timedelta,
        verification_lifetime: timedelta = timedelta(hours=24),
        algorithm: str = "RS256",
        clock: Optional[Clock] = None,
    ) -> None:
        self._private_key, self._public_key = _load_keys(
            private_key_pem, public_key_pem, algorithm
        )
        self.issuer = issuer
        self.audience = audience
        self.access_lifetime = access_lifetime
        self.refresh_lifetime = refresh_lifetime
        self.verification_lifetime = verification_lifetime
        self.algorithm = algorithm
        self.clock: Clock = clock or SystemClock()

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Optional[Clock] = None
    ) -> "CredentialService":
        private_pem = settings.signing_private_key
        public_pem = settings.signing_public_key
        if not (private_pem and public_pem):
            if not (settings.test_mode or settings.allow_redis_fallback_dev):
                raise RuntimeError(
                    "SIGNING_PRIVATE_KEY and SIGNING_PUBLIC_KEY are required outside "
                    "TEST_MODE/ALLOW_REDIS_FALLBACK_DEV"
                )
            if not settings.jwt_algorithm.startswith("RS"):
                raise RuntimeError("ephemeral signing keys are only generated for RS*")
            logger.warning(
                "signing_keys_ephemeral",
                message="No signing keys configured; credentials will not survive a restart.",
            )
            private_pem, public_pem = generate_rsa_key_pair()
        return cls(
            private_key_pem=private_pem,
            public_key_pem=public_pem,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_lifetime=timedelta(seconds=settings.access_lifetime_seconds),
            refresh_lifetime=timedelta(seconds=settings.refresh_lifetime_seconds),
            verification_lifetime=timedelta(
                seconds=settings.verification_lifetime_seconds
            ),
            algorithm=settings.jwt_algorithm,
            clock=clock,
        )

    def _sign(
        self,
        *,
        subject: str,
        device_id: str,
        role: str,
        token_type: str,
        lifetime: timedelta,
        now: datetime,
    ) -> Tuple[str, str, datetime]:
        jti = generate_secure_token()
        issued_at = int(now.timestamp())
        expires_at = issued_at + int(lifetime.total_seconds())
        payload = {
            "jti": jti,
            "sub": subject,
            "device_id": device_id,
            "role": role,
            "type": token_type,
            "iat": issued_at,
            "nbf": issued_at,
            "exp": expires_at,
            "iss": self.issuer,
            "aud": self.audience,
        }
        try:
            token = jwt.encode(payload, self._private_key, algorithm=self.algorithm)
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            logger.error(
                "credential_signing_failed",
                token_type=token_type,
                error_type=type(exc).__name__,
            )
            raise SigningError("failed to sign credential") from exc
        return token, jti, datetime.fromtimestamp(expires_at, tz=timezone.utc)

    def issue_pair(self, user_id: str, device_id: str, role: str) -> CredentialPair:
        now = self.clock.now()
        access, access_jti, access_exp = self._sign(
            subject=user_id,
            device_id=device_id,
            role=role,
            token_type=TOKEN_TYPE_ACCESS,
            lifetime=self.access_lifetime,
            now=now,
        )
        refresh, refresh_jti, refresh_exp = self._sign(
            subject=user_id,
            device_id=device_id,
            role=role,
            token_type=TOKEN_TYPE_REFRESH,
            lifetime=self.refresh_lifetime,
            now=now,
        )
        return CredentialPair(
            access=access,
            refresh=refresh,
            access_jti=access_jti,
            refresh_jti=refresh_jti,
            access_exp=access_exp,
            refresh_exp=refresh_exp,
        )

    def issue_verification_token(self, user_id: str) -> str:
        token, _, _ = self._sign(
            subject=user_id,
            device_id="",
            role="",
            token_type=TOKEN_TYPE_VERIFICATION,
            lifetime=self.verification_lifetime,
            now=self.clock.now(),
        )
        return token

    def parse(self, credential: str) -> Claims:
        if not credential or not isinstance(credential, str):
            raise ParseError("credential missing")
        try:
            payload = jwt.decode(
                credential,
                self._public_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "require": _REQUIRED_CLAIMS,
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                },
            )
        except jwt.PyJWTError as exc:
            raise ParseError("credential rejected") from exc

        claims = Claims.from_payload(payload)
        if claims.type not in KNOWN_TOKEN_TYPES:
            raise ParseError("credential type unknown")
        now_ts = int(self.clock.now().timestamp())
        if now_ts < claims.nbf:
            raise ParseError("credential not yet valid")
        if now_ts >= claims.exp:
            raise ExpiredError("credential expired")
        return claims

    def verify_as(self, credential: str, expected_type: str) -> Claims:
        claims = self.parse(credential)
        if claims.type != expected_type:
            raise TypeMismatchError(
                f"expected {expected_type} credential, got {claims.type}"
            )
        return claims
