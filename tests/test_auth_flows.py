"""Tests for the auth flows: register, login, refresh, logout and reset.

Each test builds an AuthService on in-memory collaborators with a manual
clock so expiry can be driven without sleeping.
"""

import asyncio
from datetime import timedelta

import pytest

from invitely.config import RateLimitPolicy
from invitely.service.audit import (
    ACTION_EMAIL_VERIFIED,
    ACTION_LOGIN,
    ACTION_LOGOUT,
    ACTION_PASSWORD_RESET_COMPLETED,
    ACTION_PASSWORD_RESET_REQUESTED,
    ACTION_REGISTER,
    ACTION_REUSE_DETECTED,
    MemoryAuditSink,
)
from invitely.service.auth import AuthContext, AuthService
from invitely.service.clock import ManualClock
from invitely.service.credentials import CredentialService
from invitely.service.errors import (
    EmailNotVerifiedError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidInputError,
    InvalidOrExpiredTokenError,
    StoreUnavailableError,
    TooManyRequestsError,
    UnauthorizedError,
)
from invitely.service.password_policy import PasswordPolicy
from invitely.service.primitives import PasswordHashing, device_fingerprint, hash_token
from invitely.service.rate_limit import RateLimiter
from invitely.storage.memory import MemorySessionStore, MemoryUserRepository
from invitely.storage.models import User, UserStatus
from invitely.storage.session_store import (
    REFRESH_DENYLIST_KEY,
    access_denylist_key,
    password_reset_key,
    refresh_key,
    refresh_prefix,
)

EMAIL = "a@b.c"
PASSWORD = "Aa1!aaaa"
NEW_PASSWORD = "Bb2@bbbb"
ACCESS_LIFETIME = timedelta(minutes=15)
REFRESH_LIFETIME = timedelta(days=7)


class AuthHarness:
    def __init__(self, rsa_keys, mailer):
        private_pem, public_pem = rsa_keys
        self.clock = ManualClock()
        self.store = MemorySessionStore(clock=self.clock)
        self.users = MemoryUserRepository(clock=self.clock)
        self.audit = MemoryAuditSink(clock=self.clock)
        self.mailer = mailer
        self.hashing = PasswordHashing(1, memory_cost=1024, parallelism=1)
        self.credentials = CredentialService(
            private_key_pem=private_pem,
            public_key_pem=public_pem,
            issuer="invitely",
            audience="invitely-web",
            access_lifetime=ACCESS_LIFETIME,
            refresh_lifetime=REFRESH_LIFETIME,
            clock=self.clock,
        )
        self.auth = AuthService(
            users=self.users,
            store=self.store,
            credentials=self.credentials,
            hashing=self.hashing,
            policy=PasswordPolicy(),
            login_limiter=RateLimiter(
                "login", RateLimitPolicy(900, 5), self.store, clock=self.clock
            ),
            reset_limiter=RateLimiter(
                "password_reset", RateLimitPolicy(3600, 3), self.store, clock=self.clock
            ),
            register_limiter=RateLimiter(
                "register", RateLimitPolicy(3600, 10), self.store, clock=self.clock
            ),
            mailer=mailer,
            audit=self.audit,
            clock=self.clock,
        )

    def add_user(self, email=EMAIL, password=PASSWORD, status=UserStatus.ACTIVE, hashing=None):
        user = User.new(
            email,
            (hashing or self.hashing).hash(password),
            name="Alex",
            status=status,
            now=self.clock.now(),
        )
        return self.users.insert(user)

    async def keys(self, prefix):
        return sorted([key async for key in self.store.scan(prefix)])

    async def login(self, email=EMAIL, password=PASSWORD, device="dev-1", agent="ua-1", ip="10.0.0.1"):
        return await self.auth.login(
            email, password, device_info=device, user_agent=agent, ip=ip
        )


@pytest.fixture
def harness(rsa_keys, mailer):
    return AuthHarness(rsa_keys, mailer)


class TestRegister:
    """Account creation and enumeration resistance."""

    async def test_register_creates_unverified_user_and_mails_token(self, harness):
        await harness.auth.register(EMAIL, PASSWORD, name="Alex", ip="10.0.0.1")
        user = harness.users.find_by_email(EMAIL)
        assert user is not None
        assert user.status == UserStatus.UNVERIFIED
        assert user.name == "Alex"
        assert harness.hashing.verify(user.password_hash, PASSWORD)
        assert [email for email, _ in harness.mailer.verifications] == [EMAIL]
        assert len(harness.audit.actions(ACTION_REGISTER)) == 1

    async def test_register_existing_email_is_silent(self, harness):
        existing = harness.add_user()
        result = await harness.auth.register(EMAIL.upper(), "Cc3#cccc", ip="10.0.0.1")
        assert result is None
        assert harness.users.find_by_email(EMAIL).id == existing.id
        assert harness.hashing.verify(existing.password_hash, PASSWORD)
        assert harness.mailer.verifications == []
        assert harness.audit.actions(ACTION_REGISTER) == []

    async def test_register_existing_email_still_hashes(self, harness, monkeypatch):
        harness.add_user()
        calls = []
        original = harness.hashing.hash

        def _counting_hash(password):
            calls.append(password)
            return original(password)

        monkeypatch.setattr(harness.hashing, "hash", _counting_hash)
        await harness.auth.register(EMAIL, PASSWORD, ip="10.0.0.1")
        await harness.auth.register("new@b.c", PASSWORD, ip="10.0.0.1")
        assert len(calls) == 2

    @pytest.mark.parametrize("password, rule", [("short", "min_length"), ("aa1!aaaa", "uppercase")])
    async def test_register_rejects_weak_password(self, harness, password, rule):
        with pytest.raises(InvalidInputError) as exc_info:
            await harness.auth.register(EMAIL, password)
        assert exc_info.value.detail["rule"] == rule
        assert harness.users.find_by_email(EMAIL) is None

    @pytest.mark.parametrize("email", ["not-an-email", "a@b", "@b.c", "a b@c.d"])
    async def test_register_rejects_malformed_email(self, harness, email):
        with pytest.raises(InvalidInputError):
            await harness.auth.register(email, PASSWORD)

    async def test_register_is_rate_limited(self, harness):
        for i in range(10):
            await harness.auth.register(f"user{i}@b.c", PASSWORD, ip="10.0.0.9")
        with pytest.raises(TooManyRequestsError):
            await harness.auth.register("late@b.c", PASSWORD, ip="10.0.0.9")


class TestVerifyEmail:
    """Verification credentials activate the account."""

    async def test_verification_activates_user(self, harness):
        await harness.auth.register(EMAIL, PASSWORD)
        _, token = harness.mailer.verifications[0]
        user = await harness.auth.verify_email(token)
        assert user.status == UserStatus.ACTIVE
        assert len(harness.audit.actions(ACTION_EMAIL_VERIFIED)) == 1
        issued = await harness.login()
        assert issued.user.id == user.id

    async def test_verification_is_idempotent(self, harness):
        await harness.auth.register(EMAIL, PASSWORD)
        _, token = harness.mailer.verifications[0]
        await harness.auth.verify_email(token)
        await harness.auth.verify_email(token)
        assert len(harness.audit.actions(ACTION_EMAIL_VERIFIED)) == 1

    async def test_expired_verification_token(self, harness):
        await harness.auth.register(EMAIL, PASSWORD)
        _, token = harness.mailer.verifications[0]
        harness.clock.advance(hours=25)
        with pytest.raises(InvalidOrExpiredTokenError):
            await harness.auth.verify_email(token)

    async def test_access_credential_is_not_a_verification_token(self, harness):
        harness.add_user()
        issued = await harness.login()
        with pytest.raises(InvalidOrExpiredTokenError):
            await harness.auth.verify_email(issued.credentials.access)


class TestLogin:
    """Password login, session records and failure handling."""

    async def test_login_happy_path(self, harness):
        user = harness.add_user()
        issued = await harness.login()

        assert issued.user.id == user.id
        assert issued.user.view()["email"] == EMAIL
        stored = await harness.store.get(refresh_key(user.id, issued.credentials.refresh_jti))
        assert stored == device_fingerprint("dev-1", "ua-1")
        assert await harness.store.ttl(
            refresh_key(user.id, issued.credentials.refresh_jti)
        ) == int(REFRESH_LIFETIME.total_seconds())
        logins = harness.audit.actions(ACTION_LOGIN)
        assert len(logins) == 1
        assert logins[0].actor_id == user.id

    async def test_wrong_password(self, harness):
        user = harness.add_user()
        with pytest.raises(InvalidCredentialsError):
            await harness.login(password="wrong")
        assert await harness.keys(refresh_prefix(user.id)) == []
        assert harness.audit.actions(ACTION_LOGIN) == []
        assert await harness.keys("rate:login:10.0.0.1:") != []

    async def test_unknown_email_looks_like_wrong_password(self, harness):
        harness.add_user()
        with pytest.raises(InvalidCredentialsError) as unknown:
            await harness.login(email="nobody@x.y")
        with pytest.raises(InvalidCredentialsError) as wrong:
            await harness.login(password="wrong")
        assert unknown.value.message == wrong.value.message

    async def test_email_lookup_is_case_insensitive(self, harness):
        harness.add_user()
        issued = await harness.login(email="  A@B.C ")
        assert issued.user.email == EMAIL

    async def test_unverified_user_after_correct_password(self, harness):
        harness.add_user(status=UserStatus.UNVERIFIED)
        with pytest.raises(EmailNotVerifiedError):
            await harness.login()
        with pytest.raises(InvalidCredentialsError):
            await harness.login(password="wrong")

    async def test_suspended_user_is_refused(self, harness):
        harness.add_user(status=UserStatus.SUSPENDED)
        with pytest.raises(ForbiddenError):
            await harness.login()

    async def test_rate_limit_blocks_after_failures(self, harness):
        harness.add_user()
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await harness.login(password="wrong")
        with pytest.raises(TooManyRequestsError):
            await harness.login()
        # Another address is unaffected
        assert (await harness.login(ip="10.0.0.2")).user.email == EMAIL

    async def test_outdated_hash_is_upgraded(self, harness):
        stronger = PasswordHashing(2, memory_cost=1024, parallelism=1)
        user = harness.add_user(hashing=stronger)
        old_hash = user.password_hash
        await harness.login()
        updated = harness.users.find_by_id(user.id)
        assert updated.password_hash != old_hash
        assert not harness.hashing.needs_rehash(updated.password_hash)


class TestRefresh:
    """Rotation and reuse detection."""

    async def test_rotation(self, harness):
        user = harness.add_user()
        first = await harness.login()
        second = await harness.auth.refresh(first.credentials.refresh)

        old_jti = first.credentials.refresh_jti
        new_jti = second.credentials.refresh_jti
        assert new_jti != old_jti
        assert await harness.store.set_has(REFRESH_DENYLIST_KEY, old_jti)
        assert await harness.store.get(refresh_key(user.id, old_jti)) is None
        assert await harness.store.get(refresh_key(user.id, new_jti)) == device_fingerprint(
            "dev-1", "ua-1"
        )
        assert harness.audit.actions(ACTION_REUSE_DETECTED) == []
        claims = harness.credentials.parse(second.credentials.access)
        assert claims.device_id == device_fingerprint("dev-1", "ua-1")

    async def test_replaying_rotated_credential_revokes_everything(self, harness):
        user = harness.add_user()
        first = await harness.login()
        await harness.auth.refresh(first.credentials.refresh)
        # A second device keeps its own session until the replay
        await harness.login(device="dev-2")
        assert len(await harness.keys(refresh_prefix(user.id))) == 2

        with pytest.raises(UnauthorizedError):
            await harness.auth.refresh(first.credentials.refresh)

        assert await harness.keys(refresh_prefix(user.id)) == []
        reuse = harness.audit.actions(ACTION_REUSE_DETECTED)
        assert len(reuse) == 1
        assert reuse[0].actor_id == user.id

    async def test_reuse_in_a_longer_chain(self, harness):
        user = harness.add_user()
        r1 = await harness.login()
        r2 = await harness.auth.refresh(r1.credentials.refresh)
        r3 = await harness.auth.refresh(r2.credentials.refresh)

        with pytest.raises(UnauthorizedError):
            await harness.auth.refresh(r1.credentials.refresh)
        assert await harness.keys(refresh_prefix(user.id)) == []
        assert len(harness.audit.actions(ACTION_REUSE_DETECTED)) == 1
        # The newest credential was severed too
        with pytest.raises(UnauthorizedError):
            await harness.auth.refresh(r3.credentials.refresh)

    async def test_device_mismatch_is_reuse(self, harness):
        user = harness.add_user()
        issued = await harness.login()
        await harness.store.put(
            refresh_key(user.id, issued.credentials.refresh_jti), "other-device", 3600
        )
        with pytest.raises(UnauthorizedError):
            await harness.auth.refresh(issued.credentials.refresh)
        reuse = harness.audit.actions(ACTION_REUSE_DETECTED)
        assert len(reuse) == 1
        assert reuse[0].metadata["reason"] == "device_mismatch"
        assert await harness.keys(refresh_prefix(user.id)) == []

    async def test_racing_refreshes_mint_one_successor(self, harness, monkeypatch):
        user = harness.add_user()
        issued = await harness.login()
        original_set_has = harness.store.set_has
        if not hasattr(asyncio, "Barrier"):
            pytest.skip("asyncio.Barrier requires Python 3.11")
        both_checked = asyncio.Barrier(2)

        async def _set_has_then_wait(*args, **kwargs):
            result = await original_set_has(*args, **kwargs)
            await both_checked.wait()
            return result

        monkeypatch.setattr(harness.store, "set_has", _set_has_then_wait)
        results = await asyncio.gather(
            harness.auth.refresh(issued.credentials.refresh),
            harness.auth.refresh(issued.credentials.refresh),
            return_exceptions=True,
        )
        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, UnauthorizedError)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert await harness.keys(refresh_prefix(user.id)) == [
            refresh_key(user.id, successes[0].credentials.refresh_jti)
        ]

    async def test_client_retry_after_lost_response_is_treated_as_reuse(self, harness):
        user = harness.add_user()
        issued = await harness.login()
        # The rotation succeeded but the client never saw the new pair
        lost = await harness.auth.refresh(issued.credentials.refresh)

        with pytest.raises(UnauthorizedError):
            await harness.auth.refresh(issued.credentials.refresh)

        reuse = harness.audit.actions(ACTION_REUSE_DETECTED)
        assert [entry.metadata["reason"] for entry in reuse] == ["denylisted"]
        # The unseen successor is revoked along with everything else
        assert await harness.keys(refresh_prefix(user.id)) == []
        with pytest.raises(UnauthorizedError):
            await harness.auth.refresh(lost.credentials.refresh)

    async def test_refresh_after_logout_is_treated_as_reuse(self, harness):
        user = harness.add_user()
        issued = await harness.login()
        await harness.auth.logout(issued.credentials.access, issued.credentials.refresh)
        other = await harness.login(device="dev-2")

        with pytest.raises(UnauthorizedError):
            await harness.auth.refresh(issued.credentials.refresh)

        assert len(harness.audit.actions(ACTION_REUSE_DETECTED)) == 1
        assert await harness.keys(refresh_prefix(user.id)) == []
        with pytest.raises(UnauthorizedError):
            await harness.auth.refresh(other.credentials.refresh)

    async def test_access_credential_cannot_refresh(self, harness):
        harness.add_user()
        issued = await harness.login()
        with pytest.raises(UnauthorizedError):
            await harness.auth.refresh(issued.credentials.access)

    async def test_expired_refresh_credential(self, harness):
        harness.add_user()
        issued = await harness.login()
        harness.clock.advance(seconds=REFRESH_LIFETIME.total_seconds())
        with pytest.raises(UnauthorizedError):
            await harness.auth.refresh(issued.credentials.refresh)

    @pytest.mark.parametrize("token", [None, "", "garbage"])
    async def test_missing_or_malformed(self, harness, token):
        with pytest.raises(UnauthorizedError):
            await harness.auth.refresh(token)

    async def test_deactivated_user_cannot_refresh(self, harness):
        user = harness.add_user()
        issued = await harness.login()
        harness.users.update_status(user.id, UserStatus.INACTIVE)
        with pytest.raises(UnauthorizedError):
            await harness.auth.refresh(issued.credentials.refresh)


class TestLogout:
    """Denylisting of presented credentials."""

    async def test_logout_denylists_access_for_remaining_lifetime(self, harness):
        harness.add_user()
        issued = await harness.login()
        ctx = await harness.auth.authenticate_access(issued.credentials.access)
        assert isinstance(ctx, AuthContext)

        harness.clock.advance(minutes=5)
        await harness.auth.logout(issued.credentials.access, issued.credentials.refresh)

        ttl = await harness.store.ttl(access_denylist_key(issued.credentials.access_jti))
        assert ttl == int((ACCESS_LIFETIME - timedelta(minutes=5)).total_seconds())
        for _ in range(3):
            with pytest.raises(UnauthorizedError):
                await harness.auth.authenticate_access(issued.credentials.access)
            harness.clock.advance(minutes=3)

    async def test_logout_revokes_refresh(self, harness):
        user = harness.add_user()
        issued = await harness.login()
        await harness.auth.logout(issued.credentials.access, issued.credentials.refresh)

        assert await harness.store.set_has(REFRESH_DENYLIST_KEY, issued.credentials.refresh_jti)
        assert await harness.keys(refresh_prefix(user.id)) == []
        with pytest.raises(UnauthorizedError):
            await harness.auth.refresh(issued.credentials.refresh)
        entries = harness.audit.actions(ACTION_LOGOUT)
        assert len(entries) == 1
        assert entries[0].actor_id == user.id

    async def test_logout_without_credentials_succeeds(self, harness):
        await harness.auth.logout(None, None)
        await harness.auth.logout("garbage", "garbage")
        entries = harness.audit.actions(ACTION_LOGOUT)
        assert [entry.actor_id for entry in entries] == [None, None]

    async def test_logout_with_expired_access_skips_denylist(self, harness):
        harness.add_user()
        issued = await harness.login()
        harness.clock.advance(seconds=ACCESS_LIFETIME.total_seconds())
        await harness.auth.logout(issued.credentials.access, None)
        assert await harness.store.get(access_denylist_key(issued.credentials.access_jti)) is None

    async def test_store_failure_still_audits_logout(self, harness, monkeypatch):
        user = harness.add_user()
        issued = await harness.login()

        async def _unavailable(*args, **kwargs):
            raise StoreUnavailableError("session store unavailable")

        monkeypatch.setattr(harness.store, "put", _unavailable)
        monkeypatch.setattr(harness.store, "set_add", _unavailable)

        with pytest.raises(StoreUnavailableError):
            await harness.auth.logout(issued.credentials.access, issued.credentials.refresh)
        entries = harness.audit.actions(ACTION_LOGOUT)
        assert len(entries) == 1
        assert entries[0].actor_id == user.id


class TestPasswordReset:
    """Forgot-password and reset flows."""

    async def test_forgot_and_reset(self, harness):
        user = harness.add_user()
        await harness.login()
        await harness.login(device="dev-2")

        await harness.auth.forgot_password(EMAIL, ip="10.0.0.1")
        reset_keys = await harness.keys("password_reset:")
        assert len(reset_keys) == 1
        assert await harness.store.ttl(reset_keys[0]) <= 3600
        assert len(harness.audit.actions(ACTION_PASSWORD_RESET_REQUESTED)) == 1

        _, token = harness.mailer.resets[0]
        # Only the digest of the mailed token is stored
        assert reset_keys[0] == password_reset_key(hash_token(token))
        assert await harness.store.get(reset_keys[0]) == user.id

        await harness.auth.reset_password(token, NEW_PASSWORD)
        assert await harness.keys("password_reset:") == []
        assert await harness.keys(refresh_prefix(user.id)) == []
        assert harness.mailer.password_changes == [EMAIL]
        assert len(harness.audit.actions(ACTION_PASSWORD_RESET_COMPLETED)) == 1

        with pytest.raises(InvalidCredentialsError):
            await harness.login(password=PASSWORD, ip="10.0.0.5")
        assert (await harness.login(password=NEW_PASSWORD, ip="10.0.0.5")).user.id == user.id

    async def test_unknown_email_is_silent(self, harness):
        harness.add_user()
        result = await harness.auth.forgot_password("nobody@x.y", ip="10.0.0.1")
        assert result is None
        assert await harness.keys("password_reset:") == []
        assert harness.mailer.resets == []

    async def test_reset_token_is_single_use(self, harness):
        harness.add_user()
        await harness.auth.forgot_password(EMAIL)
        _, token = harness.mailer.resets[0]
        await harness.auth.reset_password(token, NEW_PASSWORD)
        with pytest.raises(InvalidOrExpiredTokenError):
            await harness.auth.reset_password(token, "Cc3#cccc")

    async def test_reset_token_expires(self, harness):
        harness.add_user()
        await harness.auth.forgot_password(EMAIL)
        _, token = harness.mailer.resets[0]
        harness.clock.advance(hours=1)
        with pytest.raises(InvalidOrExpiredTokenError):
            await harness.auth.reset_password(token, NEW_PASSWORD)

    async def test_weak_new_password_keeps_token(self, harness):
        harness.add_user()
        await harness.auth.forgot_password(EMAIL)
        _, token = harness.mailer.resets[0]
        with pytest.raises(InvalidInputError):
            await harness.auth.reset_password(token, "weak")
        await harness.auth.reset_password(token, NEW_PASSWORD)

    async def test_forgot_password_is_rate_limited(self, harness):
        harness.add_user()
        for _ in range(3):
            await harness.auth.forgot_password("nobody@x.y", ip="10.0.0.7")
        with pytest.raises(TooManyRequestsError):
            await harness.auth.forgot_password(EMAIL, ip="10.0.0.7")


class TestAccessAndRoles:
    """Access credential checks and role gating."""

    async def test_authenticate_access(self, harness):
        user = harness.add_user()
        issued = await harness.login()
        ctx = await harness.auth.authenticate_access(issued.credentials.access)
        assert ctx.user_id == user.id
        assert ctx.role == "user"
        assert ctx.jti == issued.credentials.access_jti

    async def test_refresh_credential_is_not_access(self, harness):
        harness.add_user()
        issued = await harness.login()
        with pytest.raises(UnauthorizedError):
            await harness.auth.authenticate_access(issued.credentials.refresh)

    def test_require_role(self, harness):
        now = harness.clock.now()
        user_ctx = AuthContext("u1", "user", "d", "j", now)
        admin_ctx = AuthContext("u2", "admin", "d", "j", now)
        assert harness.auth.require_role(user_ctx, "user") is user_ctx
        assert harness.auth.require_role(admin_ctx, "user") is admin_ctx
        with pytest.raises(ForbiddenError):
            harness.auth.require_role(user_ctx, "admin")


def test_denylist_ttl_must_cover_refresh_lifetime(rsa_keys, mailer):
    harness = AuthHarness(rsa_keys, mailer)
    with pytest.raises(ValueError):
        AuthService(
            users=harness.users,
            store=harness.store,
            credentials=harness.credentials,
            hashing=harness.hashing,
            policy=PasswordPolicy(),
            login_limiter=harness.auth.login_limiter,
            reset_limiter=harness.auth.reset_limiter,
            mailer=mailer,
            audit=harness.audit,
            refresh_denylist_ttl=timedelta(days=1),
        )
