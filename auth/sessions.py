"""
auth/sessions.py -- Session lifecycle: register, login, refresh, logout,
password change/reset, email verification, profile.

Lockout state machine (per record):
  Unlocked  login_attempts in [0, MAX_LOGIN_ATTEMPTS), lock_until unset or past.
  Locked    lock_until in the future.

  Unlocked -> Locked   on the MAX_LOGIN_ATTEMPTS-th consecutive bad password;
                       lock_until = failure time + LOCKOUT_SECONDS.
  Locked -> Unlocked   lazily: the first login after lock_until has passed
                       starts again from zero attempts. Any successful
                       authentication also resets attempts and lock_until.

  A login against a Locked record is refused before the password is checked
  and does not consume an attempt.

Refresh tokens:
  Persisted as digests in the owner's refresh list, oldest first. The list is
  capped at MAX_REFRESH_TOKENS (oldest evicted) and entries past the refresh
  lifetime are pruned whenever the list is rewritten. A refresh token is
  accepted only if its signature verifies AND its digest is still listed.

Atomicity:
  Every counter/list/digest change goes through repository.update(), a
  load -> mutate -> conditional save loop. Mutators only touch the User they
  are given. bcrypt runs before update() so no transaction waits on it.

Security:
  [C1] Unknown-email logins burn a dummy bcrypt check.
  [C2] Credential and token failures share one generic message (auth/errors.py).
  Reset and verification tokens are returned once and stored as digests.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AccountDeactivatedError,
    AccountLockedError,
    DuplicateEmailError,
    EmailTakenError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    NotFoundError,
    TokenRevokedError,
)
from auth.models import IdentityContext, RefreshTokenEntry, Role, TokenPair, User
from auth.store import UserRepository, normalize_email
from auth.tokens import (
    burn_password_check,
    digest_token,
    generate_secure_token,
    hash_password,
    issue_access_token,
    issue_refresh_token,
    needs_rehash,
    verify_password,
    verify_refresh_token,
)
from core.config import Settings, get_settings

logger = logging.getLogger("sessionvault.auth")

PASSWORD_RESET_MESSAGE = "If the email exists, a password reset link has been sent."


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse(ts: str | None) -> datetime | None:
    return datetime.fromisoformat(ts) if ts else None


@dataclass
class SessionResult:
    """Outcome of register/login: the record and a freshly issued token pair."""

    user: User
    tokens: TokenPair
    email_verification_token: str | None = None


@dataclass
class PasswordResetRequest:
    """message is identical whether or not the email is registered.

    token is the one-time raw reset token, or None when no record matched.
    It is for the delivery channel only and must not be echoed to the caller.
    """

    message: str
    token: str | None = None


class SessionManager:
    """Coordinates the repository and token codec for every auth operation.

    Usage:
        manager = SessionManager(store)
        result = manager.login("a@b.io", "pw", user_agent="curl", ip="10.0.0.1")
        access = manager.refresh(result.tokens.refresh_token).access_token
    """

    def __init__(
        self,
        repository: UserRepository,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.settings = settings or get_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: str = Role.user.value,
        user_agent: str | None = None,
        ip: str | None = None,
    ) -> SessionResult:
        """Create a record, issue a token pair and an email-verification token.

        Raises DuplicateEmailError on a case-insensitive email collision.
        """
        email = normalize_email(email)
        if self.repository.get_by_email(email) is not None:
            raise DuplicateEmailError()

        now = self.clock()
        verification_token = generate_secure_token()
        user = User(
            id=uuid.uuid4().hex,
            email=email,
            hashed_password=hash_password(password, self.settings.bcrypt_rounds),
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            role=Role(role).value,
            email_verification_digest=digest_token(verification_token, self.settings),
            last_login=now.isoformat(),
        )
        tokens = self._issue_pair(user, now)
        self._append_refresh_entry(user, tokens.refresh_token, now, user_agent, ip)
        try:
            self.repository.create_user(user)
        except IntegrityError as exc:
            # Lost a race with a concurrent registration for the same email [M1]
            raise DuplicateEmailError() from exc

        logger.info("Registered user %s", user.id)
        return SessionResult(user=user, tokens=tokens, email_verification_token=verification_token)

    def login(
        self,
        email: str,
        password: str,
        user_agent: str | None = None,
        ip: str | None = None,
    ) -> SessionResult:
        """Authenticate with email and password.

        Check order: unknown email, lock, deactivation, password. Raises
        InvalidCredentialsError, AccountLockedError or AccountDeactivatedError.
        """
        user = self.repository.get_by_email(email)
        if user is None:
            burn_password_check(password)  # [C1]
            logger.info("Login failed: unknown email")
            raise InvalidCredentialsError()

        now = self.clock()
        if self._is_locked(user, now):
            logger.warning("Login refused for locked user %s", user.id)
            raise AccountLockedError(lock_until=user.lock_until)
        if not user.is_active:
            logger.info("Login refused for deactivated user %s", user.id)
            raise AccountDeactivatedError()

        if not verify_password(password, user.hashed_password):
            self._record_failed_attempt(user.id, now)
            raise InvalidCredentialsError()

        rehashed = None
        if needs_rehash(user.hashed_password, self.settings.bcrypt_rounds):
            rehashed = hash_password(password, self.settings.bcrypt_rounds)
        tokens = self._issue_pair(user, now)

        def mutate(u: User) -> User:
            u.login_attempts = 0
            u.lock_until = None
            u.last_login = now.isoformat()
            if rehashed is not None:
                u.hashed_password = rehashed
            self._append_refresh_entry(u, tokens.refresh_token, now, user_agent, ip)
            return u

        user = self.repository.update(user.id, mutate)
        logger.info("User %s logged in", user.id)
        return SessionResult(user=user, tokens=tokens)

    def _is_locked(self, user: User, now: datetime) -> bool:
        lock_until = _parse(user.lock_until)
        return lock_until is not None and lock_until > now

    def _record_failed_attempt(self, user_id: str, now: datetime) -> None:
        """Count one bad password, locking the record at the threshold.

        Raises AccountLockedError if a concurrent request locked the record
        first, so the attempt is not counted twice.
        """
        max_attempts = self.settings.max_login_attempts

        def mutate(u: User) -> int | None:
            lock_until = _parse(u.lock_until)
            if lock_until is not None:
                if lock_until > now:
                    return None
                # Lock elapsed: start a fresh window
                u.login_attempts = 0
                u.lock_until = None
            u.login_attempts += 1
            if u.login_attempts >= max_attempts:
                u.lock_until = (now + timedelta(seconds=self.settings.lockout_seconds)).isoformat()
            return u.login_attempts

        attempts = self.repository.update(user_id, mutate)
        if attempts is None:
            raise AccountLockedError()
        if attempts >= max_attempts:
            logger.warning("User %s locked after %d failed logins", user_id, attempts)
        else:
            logger.info("Login failed for user %s (attempt %d/%d)", user_id, attempts, max_attempts)

    # ------------------------------------------------------------------
    # Refresh and logout
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str, user_agent: str | None = None, ip: str | None = None) -> TokenPair:
        """Exchange a refresh token for a new access token.

        Raises InvalidTokenError (signature/expiry/claims), TokenRevokedError
        (not in the owner's current list) or AccountDeactivatedError. With
        ROTATE_REFRESH_TOKENS the presented token is replaced by a new one in
        the returned pair; otherwise refresh_token in the pair is None.
        """
        identity = verify_refresh_token(refresh_token, self.settings)
        digest = digest_token(refresh_token, self.settings)
        user = self.repository.get_by_refresh_token(digest)
        if user is None or user.id != identity.user_id:
            logger.warning("Refresh refused: token not listed for user %s", identity.user_id)
            raise TokenRevokedError()
        if not user.is_active:
            raise AccountDeactivatedError()

        now = self.clock()
        access = issue_access_token(user.id, user.email, user.role, now=now, settings=self.settings)
        if not self.settings.rotate_refresh_tokens:
            return TokenPair(access_token=access, refresh_token=None)

        new_refresh = issue_refresh_token(user.id, user.email, user.role, now=now, settings=self.settings)

        def mutate(u: User) -> bool:
            before = len(u.refresh_tokens)
            u.refresh_tokens = [e for e in u.refresh_tokens if e.token_digest != digest]
            if len(u.refresh_tokens) == before:
                return False
            self._append_refresh_entry(u, new_refresh, now, user_agent, ip)
            return True

        if not self.repository.update(user.id, mutate):
            # Revoked between lookup and rotation
            raise TokenRevokedError()
        return TokenPair(access_token=access, refresh_token=new_refresh)

    def logout(self, identity: IdentityContext, refresh_token: str | None = None) -> None:
        """Remove one refresh entry, or every entry when no token is given. Idempotent."""
        digest = digest_token(refresh_token, self.settings) if refresh_token else None

        def mutate(u: User) -> int:
            before = len(u.refresh_tokens)
            if digest is None:
                u.refresh_tokens = []
            else:
                u.refresh_tokens = [e for e in u.refresh_tokens if e.token_digest != digest]
            return before - len(u.refresh_tokens)

        removed = self.repository.update(identity.user_id, mutate)
        logger.info("User %s logged out (%d refresh token(s) revoked)", identity.user_id, removed)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def change_password(self, identity: IdentityContext, current_password: str, new_password: str) -> None:
        """Replace the password and revoke every refresh token.

        Outstanding access tokens stay valid until their own expiry.
        """
        user = self._require_user(identity.user_id)
        if not verify_password(current_password, user.hashed_password):
            logger.info("Password change refused for user %s: bad current password", user.id)
            raise InvalidCredentialsError()
        new_hash = hash_password(new_password, self.settings.bcrypt_rounds)

        def mutate(u: User) -> None:
            u.hashed_password = new_hash
            u.refresh_tokens = []

        self.repository.update(user.id, mutate)
        logger.info("User %s changed password; refresh tokens revoked", user.id)

    def request_password_reset(self, email: str) -> PasswordResetRequest:
        """Issue a one-time reset token if the email is registered.

        The returned message never reveals whether it was.
        """
        user = self.repository.get_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email")
            return PasswordResetRequest(message=PASSWORD_RESET_MESSAGE)

        raw = generate_secure_token()
        digest = digest_token(raw, self.settings)
        expires = (self.clock() + timedelta(seconds=self.settings.password_reset_expire_seconds)).isoformat()

        def mutate(u: User) -> None:
            u.password_reset_digest = digest
            u.password_reset_expires = expires

        self.repository.update(user.id, mutate)
        logger.info("Password reset token issued for user %s", user.id)
        return PasswordResetRequest(message=PASSWORD_RESET_MESSAGE, token=raw)

    def reset_password(self, token: str, new_password: str) -> None:
        """Consume a reset token: new password, lockout cleared, refresh list cleared.

        Raises InvalidOrExpiredTokenError if the token is unknown, expired or
        already used. The digest is re-checked inside the atomic update, so
        two concurrent resets with the same token cannot both succeed.
        """
        digest = digest_token(token, self.settings)
        user = self.repository.get_by_reset_digest(digest)
        if user is None or not self._reset_token_live(user, digest, self.clock()):
            raise InvalidOrExpiredTokenError()
        new_hash = hash_password(new_password, self.settings.bcrypt_rounds)
        now = self.clock()

        def mutate(u: User) -> bool:
            if not self._reset_token_live(u, digest, now):
                return False
            u.hashed_password = new_hash
            u.password_reset_digest = None
            u.password_reset_expires = None
            u.login_attempts = 0
            u.lock_until = None
            u.refresh_tokens = []
            return True

        if not self.repository.update(user.id, mutate):
            raise InvalidOrExpiredTokenError()
        logger.info("User %s reset password; refresh tokens revoked", user.id)

    @staticmethod
    def _reset_token_live(user: User, digest: str, now: datetime) -> bool:
        expires = _parse(user.password_reset_expires)
        return user.password_reset_digest == digest and expires is not None and expires > now

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verify_email(self, token: str) -> User:
        """Mark the email verified and clear the one-time verification digest."""
        digest = digest_token(token, self.settings)
        user = self.repository.get_by_verification_digest(digest)
        if user is None:
            raise InvalidOrExpiredTokenError()

        def mutate(u: User) -> bool:
            if u.email_verification_digest != digest:
                return False
            u.email_verified = True
            u.email_verification_digest = None
            return True

        if not self.repository.update(user.id, mutate):
            raise InvalidOrExpiredTokenError()
        logger.info("User %s verified email", user.id)
        return self._require_user(user.id)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def get_profile(self, identity: IdentityContext) -> User:
        return self._require_user(identity.user_id)

    def update_profile(
        self,
        identity: IdentityContext,
        first_name: str | None = None,
        last_name: str | None = None,
        email: str | None = None,
    ) -> User:
        """Patch name and/or email. Raises EmailTakenError if another record holds the email."""
        new_email = normalize_email(email) if email else None
        if new_email is not None:
            holder = self.repository.get_by_email(new_email)
            if holder is not None and holder.id != identity.user_id:
                raise EmailTakenError()

        def mutate(u: User) -> User:
            if first_name is not None:
                u.first_name = first_name.strip()
            if last_name is not None:
                u.last_name = last_name.strip()
            if new_email is not None:
                u.email = new_email
            return u

        try:
            return self.repository.update(identity.user_id, mutate)
        except IntegrityError as exc:
            raise EmailTakenError() from exc

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def set_account_status(self, user_id: str, is_active: bool | None = None, role: str | None = None) -> User:
        """Change the active flag and/or role. Used by the admin route and CLI."""

        def mutate(u: User) -> User:
            if is_active is not None:
                u.is_active = is_active
            if role is not None:
                u.role = Role(role).value
            return u

        user = self.repository.update(user_id, mutate)
        logger.info("User %s status updated (is_active=%s, role=%s)", user_id, user.is_active, user.role)
        return user

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_user(self, user_id: str) -> User:
        user = self.repository.get_by_id(user_id)
        if user is None:
            raise NotFoundError()
        return user

    def _issue_pair(self, user: User, now: datetime) -> TokenPair:
        return TokenPair(
            access_token=issue_access_token(user.id, user.email, user.role, now=now, settings=self.settings),
            refresh_token=issue_refresh_token(user.id, user.email, user.role, now=now, settings=self.settings),
        )

    def _append_refresh_entry(
        self,
        user: User,
        refresh_token: str,
        now: datetime,
        user_agent: str | None,
        ip: str | None,
    ) -> None:
        """Append one entry, drop entries past the refresh lifetime, keep the newest N."""
        cutoff = now - timedelta(seconds=self.settings.refresh_token_expire_seconds)
        live = [e for e in user.refresh_tokens if datetime.fromisoformat(e.created_at) > cutoff]
        live.append(
            RefreshTokenEntry(
                token_digest=digest_token(refresh_token, self.settings),
                created_at=now.isoformat(),
                user_agent=user_agent[:255] if user_agent else None,
                ip=ip,
            )
        )
        user.refresh_tokens = live[-self.settings.max_refresh_tokens :]
