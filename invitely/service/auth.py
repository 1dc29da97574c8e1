from __future__ import annotations

import asyncio
import re
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from invitely.logging import get_logger, redact_email
from invitely.service.audit import (
    ACTION_EMAIL_VERIFIED,
    ACTION_LOGIN,
    ACTION_LOGOUT,
    ACTION_PASSWORD_RESET_COMPLETED,
    ACTION_PASSWORD_RESET_REQUESTED,
    ACTION_REGISTER,
    ACTION_REUSE_DETECTED,
    AuditSink,
)
from invitely.service.clock import Clock, SystemClock
from invitely.service.credentials import (
    TOKEN_TYPE_ACCESS,
    TOKEN_TYPE_REFRESH,
    TOKEN_TYPE_VERIFICATION,
    Claims,
    CredentialError,
    CredentialPair,
    CredentialService,
    SigningError,
)
from invitely.service.deadline import Deadline, within
from invitely.service.email import MailSender
from invitely.service.errors import (
    EmailNotVerifiedError,
    ForbiddenError,
    InternalError,
    InvalidCredentialsError,
    InvalidInputError,
    InvalidOrExpiredTokenError,
    TooManyRequestsError,
    UnauthorizedError,
)
from invitely.service.password_policy import PasswordPolicy
from invitely.service.primitives import (
    PasswordHashing,
    constant_time_equals,
    device_fingerprint,
    generate_secure_token,
    hash_token,
)
from invitely.service.rate_limit import RateLimiter
from invitely.storage.errors import ConstraintViolation
from invitely.storage.models import User, UserRole, UserStatus
from invitely.storage.session_store import (
    REFRESH_DENYLIST_KEY,
    SessionStore,
    access_denylist_key,
    password_reset_key,
    refresh_key,
    refresh_prefix,
)

logger = get_logger(__name__)

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def canonical_email(value: str) -> str:
    """NFKC-normalized, trimmed, lower-cased form used for storage and lookup."""
    return unicodedata.normalize("NFKC", value or "").strip().lower()


def validate_email(value: str) -> str:
    """Return the canonical email or raise InvalidInputError."""
    normalized = canonical_email(value)
    if len(normalized) < 3 or len(normalized) > 254:
        raise InvalidInputError("invalid email address", detail={"field": "email"})
    local, sep, domain = normalized.partition("@")
    if not sep or not local or len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise InvalidInputError("invalid email address", detail={"field": "email"})
    labels = domain.split(".")
    if len(labels) < 2 or not all(
        len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels
    ):
        raise InvalidInputError("invalid email address", detail={"field": "email"})
    return normalized


class UserRepository(Protocol):
    def find_by_email(
        self, email: str, *, deadline: Optional[Deadline] = None
    ) -> Optional[User]: ...

    def find_by_id(
        self, user_id: str, *, deadline: Optional[Deadline] = None
    ) -> Optional[User]: ...

    def insert(self, user: User, *, deadline: Optional[Deadline] = None) -> User: ...

    def update_password_hash(
        self, user_id: str, password_hash: str, *, deadline: Optional[Deadline] = None
    ) -> Optional[User]: ...

    def update_status(
        self, user_id: str, status: UserStatus, *, deadline: Optional[Deadline] = None
    ) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    device_id: str
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class IssuedSession:
    user: User
    credentials: CredentialPair


class AuthService:
    """Register, login, refresh, logout and password reset flows.

    The service holds no per-user state of its own: credentials carry signed
    claims and every piece of server-side bookkeeping lives in the session
    store. Each flow takes an optional deadline that is handed to every
    store and repository call.
    """

    def __init__(
        self,
        *,
        users: UserRepository,
        store: SessionStore,
        credentials: CredentialService,
        hashing: PasswordHashing,
        policy: PasswordPolicy,
        login_limiter: RateLimiter,
        reset_limiter: RateLimiter,
        mailer: MailSender,
        audit: AuditSink,
        register_limiter: Optional[RateLimiter] = None,
        password_reset_lifetime: timedelta = timedelta(hours=1),
        refresh_denylist_ttl: Optional[timedelta] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.users = users
        self.store = store
        self.credentials = credentials
        self.hashing = hashing
        self.policy = policy
        self.login_limiter = login_limiter
        self.reset_limiter = reset_limiter
        self.register_limiter = register_limiter
        self.mailer = mailer
        self.audit = audit
        self.password_reset_lifetime = password_reset_lifetime
        self.refresh_denylist_ttl = refresh_denylist_ttl or credentials.refresh_lifetime
        if self.refresh_denylist_ttl < credentials.refresh_lifetime:
            raise ValueError("refresh denylist TTL must cover the refresh lifetime")
        self.clock: Clock = clock or SystemClock()
        self._dummy_hash: Optional[str] = None

    # -- helpers -----------------------------------------------------------

    async def _hash_password(self, password: str, deadline: Optional[Deadline]) -> str:
        return await within(asyncio.to_thread(self.hashing.hash, password), deadline)

    async def _verify_password(
        self, password_hash: str, password: str, deadline: Optional[Deadline]
    ) -> bool:
        return await within(
            asyncio.to_thread(self.hashing.verify, password_hash, password), deadline
        )

    async def _absorb_missing_user(self, password: str, deadline: Optional[Deadline]) -> None:
        # Unknown emails pay for one verification too, keeping latency flat
        if self._dummy_hash is None:
            self._dummy_hash = await self._hash_password(generate_secure_token(), deadline)
        await self._verify_password(self._dummy_hash, password, deadline)

    def _check_password_policy(self, password: str) -> None:
        violation = self.policy.check(password)
        if violation is not None:
            raise InvalidInputError(
                violation.reason, detail={"field": "password", "rule": violation.rule}
            )

    def _issue_pair(self, user: User, device_id: str) -> CredentialPair:
        try:
            return self.credentials.issue_pair(user.id, device_id, user.role)
        except SigningError as exc:
            raise InternalError("failed to issue credentials") from exc

    def _lifetime_seconds(self, value: timedelta) -> int:
        return int(value.total_seconds())

    def _verify_credential(self, credential: Optional[str], expected_type: str) -> Claims:
        try:
            return self.credentials.verify_as(credential or "", expected_type)
        except CredentialError as exc:
            logger.info(
                "credential_rejected",
                expected_type=expected_type,
                reason=type(exc).__name__,
            )
            raise UnauthorizedError() from exc

    async def revoke_all_sessions(
        self, user_id: str, *, deadline: Optional[Deadline] = None
    ) -> int:
        """Delete every session record for ``user_id``; returns how many went."""
        keys = [key async for key in self.store.scan(refresh_prefix(user_id), deadline=deadline)]
        if not keys:
            return 0
        removed = await self.store.delete(*keys, deadline=deadline)
        logger.info("sessions_revoked", user_id=user_id, count=removed)
        return removed

    async def _handle_reuse(
        self, claims: Claims, reason: str, deadline: Optional[Deadline]
    ) -> None:
        revoked = await self.revoke_all_sessions(claims.sub, deadline=deadline)
        logger.warning(
            "refresh_reuse_detected",
            user_id=claims.sub,
            jti=claims.jti,
            reason=reason,
            sessions_revoked=revoked,
        )
        self.audit.log(
            claims.sub,
            ACTION_REUSE_DETECTED,
            {"jti": claims.jti, "reason": reason, "sessions_revoked": revoked},
        )

    # -- flows -------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        *,
        name: str = "",
        device_info: str = "",
        user_agent: str = "",
        ip: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> None:
        """Create an unverified account and mail a verification link.

        Returns the same way whether or not the email was already taken.
        """
        email = validate_email(email)
        self._check_password_policy(password)
        if self.register_limiter is not None and ip:
            if not await self.register_limiter.allow(ip, deadline=deadline):
                raise TooManyRequestsError()
            await self.register_limiter.record_failure(ip, deadline=deadline)

        # Hash before the lookup so both outcomes cost the same
        password_hash = await self._hash_password(password, deadline)
        if self.users.find_by_email(email, deadline=deadline) is not None:
            logger.info("register_existing_email", email=redact_email(email))
            return

        user = User.new(email, password_hash, name=name.strip(), now=self.clock.now())
        try:
            self.users.insert(user, deadline=deadline)
        except ConstraintViolation:
            logger.info("register_email_race", email=redact_email(email))
            return

        try:
            token = self.credentials.issue_verification_token(user.id)
        except SigningError as exc:
            raise InternalError("failed to issue verification token") from exc
        self.mailer.send_verification(user.email, token)
        self.audit.log(
            user.id,
            ACTION_REGISTER,
            {"ip": ip, "device_id": device_fingerprint(device_info, user_agent)},
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        device_info: str = "",
        user_agent: str = "",
        ip: str = "unknown",
        deadline: Optional[Deadline] = None,
    ) -> IssuedSession:
        if not await self.login_limiter.allow(ip, deadline=deadline):
            raise TooManyRequestsError()

        user = self.users.find_by_email(canonical_email(email), deadline=deadline)
        if user is None:
            await self._absorb_missing_user(password, deadline)
            verified = False
        else:
            verified = await self._verify_password(user.password_hash, password, deadline)
        if not verified:
            await self.login_limiter.record_failure(ip, deadline=deadline)
            logger.info("login_failed", email=redact_email(email), client_ip=ip)
            raise InvalidCredentialsError()

        if user.status == UserStatus.UNVERIFIED:
            raise EmailNotVerifiedError()
        if not user.is_active:
            logger.info("login_inactive_account", user_id=user.id, status=user.status.value)
            raise ForbiddenError("account disabled")

        if self.hashing.needs_rehash(user.password_hash):
            new_hash = await self._hash_password(password, deadline)
            self.users.update_password_hash(user.id, new_hash, deadline=deadline)

        device_id = device_fingerprint(device_info, user_agent)
        pair = self._issue_pair(user, device_id)
        await self.store.put(
            refresh_key(user.id, pair.refresh_jti),
            device_id,
            self._lifetime_seconds(self.credentials.refresh_lifetime),
            deadline=deadline,
        )
        self.audit.log(user.id, ACTION_LOGIN, {"ip": ip, "device_id": device_id})
        return IssuedSession(user=user, credentials=pair)

    async def refresh(
        self, refresh_token: Optional[str], *, deadline: Optional[Deadline] = None
    ) -> IssuedSession:
        """Rotate a refresh credential, revoking everything on reuse.

        A jti that is already denylisted, or a session record whose device
        differs from the claim, means the credential was replayed after a
        rotation: every session of that user is revoked.
        """
        claims = self._verify_credential(refresh_token, TOKEN_TYPE_REFRESH)

        if await self.store.set_has(REFRESH_DENYLIST_KEY, claims.jti, deadline=deadline):
            await self._handle_reuse(claims, "denylisted", deadline)
            raise UnauthorizedError()

        old_key = refresh_key(claims.sub, claims.jti)
        stored_device = await self.store.get(old_key, deadline=deadline)
        if stored_device is None:
            raise UnauthorizedError()
        if not constant_time_equals(stored_device, claims.device_id):
            await self._handle_reuse(claims, "device_mismatch", deadline)
            raise UnauthorizedError()

        user = self.users.find_by_id(claims.sub, deadline=deadline)
        if user is None or not user.is_active:
            raise UnauthorizedError()

        pair = self._issue_pair(user, claims.device_id)
        rotated = await self.store.rotate(
            denylist_key=REFRESH_DENYLIST_KEY,
            old_member=claims.jti,
            denylist_ttl=self._lifetime_seconds(self.refresh_denylist_ttl),
            old_key=old_key,
            new_key=refresh_key(user.id, pair.refresh_jti),
            new_value=claims.device_id,
            ttl=self._lifetime_seconds(self.credentials.refresh_lifetime),
            deadline=deadline,
        )
        if not rotated:
            # A concurrent refresh with the same credential won
            raise UnauthorizedError()
        logger.info("refresh_rotated", user_id=user.id)
        return IssuedSession(user=user, credentials=pair)

    async def logout(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        *,
        deadline: Optional[Deadline] = None,
    ) -> None:
        """Denylist whatever valid credentials were presented. Never fails on
        missing or invalid credentials."""
        actor_id: Optional[str] = None
        now = self.clock.now()

        try:
            if access_token:
                try:
                    access = self.credentials.verify_as(access_token, TOKEN_TYPE_ACCESS)
                except CredentialError:
                    access = None
                if access is not None:
                    actor_id = access.sub
                    remaining = access.remaining_seconds(now)
                    if remaining > 0:
                        await self.store.put(
                            access_denylist_key(access.jti), "1", remaining, deadline=deadline
                        )

            if refresh_token:
                try:
                    refresh = self.credentials.verify_as(refresh_token, TOKEN_TYPE_REFRESH)
                except CredentialError:
                    refresh = None
                if refresh is not None:
                    actor_id = actor_id or refresh.sub
                    await self.store.set_add(
                        REFRESH_DENYLIST_KEY, refresh.jti, deadline=deadline
                    )
                    await self.store.expire(
                        REFRESH_DENYLIST_KEY,
                        self._lifetime_seconds(self.refresh_denylist_ttl),
                        deadline=deadline,
                    )
                    await self.store.delete(
                        refresh_key(refresh.sub, refresh.jti), deadline=deadline
                    )
        finally:
            # Store failures still leave a logout record
            self.audit.log(actor_id, ACTION_LOGOUT)

    async def forgot_password(
        self, email: str, *, ip: str = "unknown", deadline: Optional[Deadline] = None
    ) -> None:
        """Mail a reset link when the account exists; silent otherwise."""
        if not await self.reset_limiter.allow(ip, deadline=deadline):
            raise TooManyRequestsError()
        # Every request counts against the address, found or not
        await self.reset_limiter.record_failure(ip, deadline=deadline)

        email = validate_email(email)
        user = self.users.find_by_email(email, deadline=deadline)
        if user is None:
            logger.info("password_reset_unknown_email", email=redact_email(email))
            return

        token = generate_secure_token()
        await self.store.put(
            password_reset_key(hash_token(token)),
            user.id,
            self._lifetime_seconds(self.password_reset_lifetime),
            deadline=deadline,
        )
        self.mailer.send_reset(user.email, token)
        self.audit.log(user.id, ACTION_PASSWORD_RESET_REQUESTED, {"ip": ip})

    async def reset_password(
        self, token: str, new_password: str, *, deadline: Optional[Deadline] = None
    ) -> None:
        self._check_password_policy(new_password)

        reset_key = password_reset_key(hash_token(token or ""))
        user_id = await self.store.get(reset_key, deadline=deadline)
        if user_id is None:
            raise InvalidOrExpiredTokenError()
        user = self.users.find_by_id(user_id, deadline=deadline)
        if user is None:
            await self.store.delete(reset_key, deadline=deadline)
            logger.warning("password_reset_user_missing", user_id=user_id)
            raise InvalidOrExpiredTokenError()

        password_hash = await self._hash_password(new_password, deadline)
        self.users.update_password_hash(user.id, password_hash, deadline=deadline)
        await self.store.delete(reset_key, deadline=deadline)
        await self.revoke_all_sessions(user.id, deadline=deadline)

        self.mailer.send_password_changed(user.email)
        self.audit.log(user.id, ACTION_PASSWORD_RESET_COMPLETED)
        logger.info("password_reset_completed", user_id=user.id)

    async def verify_email(self, token: str, *, deadline: Optional[Deadline] = None) -> User:
        try:
            claims = self.credentials.verify_as(token or "", TOKEN_TYPE_VERIFICATION)
        except CredentialError as exc:
            raise InvalidOrExpiredTokenError() from exc
        user = self.users.find_by_id(claims.sub, deadline=deadline)
        if user is None:
            raise InvalidOrExpiredTokenError()
        if user.status == UserStatus.UNVERIFIED:
            user = self.users.update_status(user.id, UserStatus.ACTIVE, deadline=deadline) or user
            self.audit.log(user.id, ACTION_EMAIL_VERIFIED)
        return user

    async def authenticate_access(
        self, access_token: Optional[str], *, deadline: Optional[Deadline] = None
    ) -> AuthContext:
        claims = self._verify_credential(access_token, TOKEN_TYPE_ACCESS)
        if await self.store.get(access_denylist_key(claims.jti), deadline=deadline):
            raise UnauthorizedError()
        return AuthContext(
            user_id=claims.sub,
            role=claims.role,
            device_id=claims.device_id,
            jti=claims.jti,
            expires_at=claims.expires_at,
        )

    def require_role(self, ctx: AuthContext, role: str) -> AuthContext:
        if ctx.role == role or ctx.role == UserRole.ADMIN.value:
            return ctx
        raise ForbiddenError("insufficient role")
