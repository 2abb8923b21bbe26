"""
auth/service.py -- Auth workflow: the orchestration behind every auth route.

Each public method is one short request-scoped flow (register, login,
refresh, logout, verify, reset, OAuth login, profile and admin user
management). The collaborators are constructed once and injected:

  UserStore            -- persistence (auth/store.py)
  PasswordHasher       -- bcrypt (auth/passwords.py)
  TokenCodec           -- signed tokens (auth/tokens.py)
  SessionLedger        -- refresh-token rotation and revocation (auth/sessions.py)
  OneTimeTokenManager  -- verification / reset tokens (auth/one_time.py)
  Mailer               -- SMTP delivery (auth/mailer.py)

Failure policy:
  Expected failures raise AuthError subclasses with fixed, generic messages.
  Login answers "Invalid email or password" for an unknown email, a wrong
  password and an OAuth-only account alike [C1]. Forgot-password never
  reveals whether the address is registered.

  Outbound email is best-effort everywhere: a MailDeliveryError is logged
  and swallowed. A user who did not receive a message can request another
  one; failing the request would not deliver it either.

Layer rule: no imports from api/. Settings are only read in from_settings().
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    BadRequestError,
    ConflictError,
    InvalidOrExpiredTokenError,
    InvalidTokenError,
    MailDeliveryError,
    NotFoundError,
    UnauthorizedError,
)
from auth.mailer import Mailer, redact_email
from auth.models import OAuthProfile, OneTimePurpose, Role, TokenKind, TokenPair, User, normalize_email
from auth.one_time import OneTimeTokenManager
from auth.passwords import PasswordHasher
from auth.sessions import INVALID_REFRESH_TOKEN, SessionLedger
from auth.store import UserStore
from auth.tokens import TokenCodec

logger = logging.getLogger("authx.auth.service")

INVALID_CREDENTIALS = "Invalid email or password"
INVALID_ACCESS_TOKEN = "Invalid or expired access token"
INVALID_VERIFICATION_TOKEN = "Invalid or expired verification token"
INVALID_RESET_TOKEN = "Invalid or expired reset token"
EMAIL_TAKEN = "User with this email already exists"

_NAME_MAX = 50


class AuthService:
    def __init__(
        self,
        store: UserStore,
        hasher: PasswordHasher,
        codec: TokenCodec,
        ledger: SessionLedger,
        one_time: OneTimeTokenManager,
        mailer: Mailer,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.codec = codec
        self.ledger = ledger
        self.one_time = one_time
        self.mailer = mailer

    @classmethod
    def from_settings(cls, settings, store: UserStore, mailer: Mailer | None = None) -> AuthService:
        """Wire every collaborator from Settings. Used by the app lifespan and the CLI."""
        codec = TokenCodec.from_settings(settings)
        return cls(
            store=store,
            hasher=PasswordHasher(settings.bcrypt_rounds),
            codec=codec,
            ledger=SessionLedger(store, codec, settings.secret_key),
            one_time=OneTimeTokenManager(
                store,
                settings.secret_key,
                {
                    OneTimePurpose.email_verification: timedelta(hours=settings.email_verification_expire_hours),
                    OneTimePurpose.password_reset: timedelta(minutes=settings.password_reset_expire_minutes),
                },
            ),
            mailer=mailer or Mailer.from_settings(settings),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _reload(self, user_id: int) -> User:
        user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def _deliver(self, what: str, send: Callable[..., None], *args) -> bool:
        """Run a mail send; log and swallow delivery failures."""
        try:
            send(*args)
        except MailDeliveryError as exc:
            logger.warning("Failed to send %s email to %s: %s", what, redact_email(args[0]), exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, first_name: str, last_name: str) -> tuple[User, TokenPair]:
        email = normalize_email(email)
        if self.store.get_by_email(email) is not None:
            raise ConflictError(EMAIL_TAKEN)

        new_user = User(
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=Role.user.value,
            hashed_password=self.hasher.hash(password),
        )
        try:
            user_id = self.store.create_user(new_user)
        except IntegrityError as exc:
            # Lost a race with a concurrent registration for the same email
            raise ConflictError(EMAIL_TAKEN) from exc

        user = self._reload(user_id)
        token = self.one_time.issue(user, OneTimePurpose.email_verification)
        self._deliver("verification", self.mailer.send_email_verification, user.email, token, user.first_name)

        pair = self.ledger.issue_pair(user)
        logger.info("Registered user_id=%s", user.id)
        return user, pair

    def login(self, email: str, password: str) -> tuple[User, TokenPair]:
        """Authenticate with timing equalization [C1].

        bcrypt runs exactly once on every path, so response time does not
        reveal whether the email exists or the account is OAuth-only.
        """
        user = self.store.get_by_email(email)
        if user is None:
            self.hasher.verify_against_nothing(password)
            raise UnauthorizedError(INVALID_CREDENTIALS)
        if not self.hasher.verify(password, user.hashed_password):
            raise UnauthorizedError(INVALID_CREDENTIALS)

        self.store.update_last_login(user.id)
        return user, self.ledger.issue_pair(user)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def authenticate_access_token(self, token: str) -> User:
        """Resolve a bearer access token to its (current) user record."""
        try:
            claims = self.codec.verify(token, TokenKind.access)
        except InvalidTokenError as exc:
            logger.debug("Access token rejected: %s", exc.reason)
            raise UnauthorizedError(INVALID_ACCESS_TOKEN) from exc
        user = self.store.get_by_id(claims.subject_id)
        if user is None:
            raise UnauthorizedError(INVALID_ACCESS_TOKEN)
        return user

    def refresh(self, refresh_token: str | None) -> TokenPair:
        """Exchange a refresh token for a new pair. The presented token is spent."""
        if not refresh_token:
            raise UnauthorizedError("Refresh token required")
        try:
            claims = self.codec.verify(refresh_token, TokenKind.refresh)
        except InvalidTokenError as exc:
            logger.debug("Refresh token rejected: %s", exc.reason)
            raise UnauthorizedError(INVALID_REFRESH_TOKEN) from exc

        user = self.store.get_by_id(claims.subject_id)
        if user is None:
            raise UnauthorizedError(INVALID_REFRESH_TOKEN)
        return self.ledger.rotate(user, refresh_token)

    def logout(self, user: User) -> None:
        self.ledger.revoke_all(user)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    def verify_email(self, token: str) -> User:
        try:
            user = self.one_time.consume(token, OneTimePurpose.email_verification)
        except InvalidOrExpiredTokenError as exc:
            raise BadRequestError(INVALID_VERIFICATION_TOKEN) from exc

        self.store.update_user(user.id, is_email_verified=True)
        self._deliver("welcome", self.mailer.send_welcome, user.email, user.first_name)
        return self._reload(user.id)

    def resend_verification(self, user: User) -> None:
        if user.is_email_verified:
            raise BadRequestError("Email is already verified")
        token = self.one_time.issue(user, OneTimePurpose.email_verification)
        self._deliver("verification", self.mailer.send_email_verification, user.email, token, user.first_name)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> None:
        """Issue and mail a reset token if the account exists. Silent otherwise."""
        user = self.store.get_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown address %s", redact_email(normalize_email(email)))
            return
        token = self.one_time.issue(user, OneTimePurpose.password_reset)
        self._deliver("password reset", self.mailer.send_password_reset, user.email, token, user.first_name)

    def reset_password(self, token: str, new_password: str) -> None:
        """Consume a reset token, set the new password and end every session."""
        try:
            user = self.one_time.consume(token, OneTimePurpose.password_reset)
        except InvalidOrExpiredTokenError as exc:
            raise BadRequestError(INVALID_RESET_TOKEN) from exc

        self.store.update_user(user.id, hashed_password=self.hasher.hash(new_password))
        self.ledger.revoke_all(user)
        logger.info("Password reset for user_id=%s", user.id)

    def change_password(self, user: User, current_password: str, new_password: str) -> None:
        if not user.has_local_password:
            raise BadRequestError("This account has no password. Use password reset to set one.")
        if not self.hasher.verify(current_password, user.hashed_password):
            raise UnauthorizedError("Current password is incorrect")
        self.store.update_user(user.id, hashed_password=self.hasher.hash(new_password))
        self.ledger.revoke_all(user)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def oauth_login(self, profile: OAuthProfile | None) -> tuple[User, TokenPair]:
        """Find, link, or create the account behind a verified provider identity.

        Lookup order: (provider, external id) -> email (link the identity) ->
        new account. New accounts are pre-verified and have no local password.
        """
        if profile is None or not profile.email:
            raise BadRequestError("OAuth profile not found")

        user = self.store.get_by_oauth(profile.provider, profile.subject)
        if user is None:
            user = self.store.get_by_email(profile.email)
            if user is not None:
                self._link(user, profile)
            else:
                user = self._create_oauth_user(profile)

        self.store.update_last_login(user.id)
        user = self._reload(user.id)
        return user, self.ledger.issue_pair(user)

    def _link(self, user: User, profile: OAuthProfile) -> None:
        self.store.link_oauth(user.id, profile.provider, profile.subject, avatar=profile.avatar)
        if not user.is_email_verified:
            # The provider has confirmed ownership of this address
            self.store.update_user(user.id, is_email_verified=True)
        logger.info("Linked %s identity to user_id=%s", profile.provider, user.id)

    def _create_oauth_user(self, profile: OAuthProfile) -> User:
        new_user = User(
            email=profile.email,
            first_name=profile.first_name[:_NAME_MAX],
            last_name=profile.last_name[:_NAME_MAX],
            role=Role.user.value,
            hashed_password=None,
            is_email_verified=True,
            oauth_provider=profile.provider,
            oauth_id=profile.subject,
            avatar=profile.avatar,
        )
        try:
            user_id = self.store.create_user(new_user)
        except IntegrityError:
            # A concurrent request created the account first; link instead
            existing = self.store.get_by_email(profile.email)
            if existing is None:
                raise
            self._link(existing, profile)
            return existing
        logger.info("Created %s account user_id=%s", profile.provider, user_id)
        return self._reload(user_id)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def update_profile(
        self,
        user: User,
        first_name: str | None = None,
        last_name: str | None = None,
        avatar: str | None = None,
    ) -> User:
        updates = {
            k: v for k, v in (("first_name", first_name), ("last_name", last_name), ("avatar", avatar)) if v is not None
        }
        if not updates:
            raise BadRequestError("No fields to update")
        self.store.update_user(user.id, **updates)
        return self._reload(user.id)

    # ------------------------------------------------------------------
    # Admin user management
    # ------------------------------------------------------------------

    def list_users(self, page: int = 1, limit: int = 20, query: str | None = None) -> tuple[list[User], int]:
        """Return one page of users and the total matching count."""
        offset = (page - 1) * limit
        return self.store.list_users(offset=offset, limit=limit, query=query), self.store.count_users(query)

    def get_user(self, user_id: int) -> User:
        return self._reload(user_id)

    def admin_update_user(
        self,
        actor: User,
        user_id: int,
        role: str | None = None,
        is_email_verified: bool | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> User:
        """Change role, verification flag or names of another account.

        [M4] An admin cannot demote themselves, and the last admin cannot be
        demoted, so there is always a recovery path without DB access.
        """
        target = self._reload(user_id)

        updates: dict = {}
        if role is not None and role != target.role:
            if target.is_admin and role != Role.admin.value:
                if target.id == actor.id:
                    raise BadRequestError("You cannot remove your own admin role")
                if self.store.count_admins() <= 1:
                    raise BadRequestError("Cannot remove the last admin account")
            updates["role"] = role
        if is_email_verified is not None:
            updates["is_email_verified"] = is_email_verified
        if first_name is not None:
            updates["first_name"] = first_name
        if last_name is not None:
            updates["last_name"] = last_name

        if updates:
            self.store.update_user(user_id, **updates)
            logger.info("Admin user_id=%s updated user_id=%s fields=%s", actor.id, user_id, sorted(updates))
        return self._reload(user_id)

    def admin_delete_user(self, actor: User, user_id: int) -> None:
        """Delete an account and revoke its sessions. Admin only [M4]."""
        target = self._reload(user_id)
        if target.id == actor.id:
            raise BadRequestError("You cannot delete your own account")
        if target.is_admin and self.store.count_admins() <= 1:
            raise BadRequestError("Cannot delete the last admin account")
        self.store.delete_user(user_id)
        logger.info("Admin user_id=%s deleted user_id=%s", actor.id, user_id)

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    def ensure_admin(self, email: str, password: str, first_name: str, last_name: str) -> tuple[User, str]:
        """Create an admin account, or promote an existing one. Returns (user, status)."""
        existing = self.store.get_by_email(email)
        if existing is not None:
            if existing.is_admin:
                return existing, "already_admin"
            self.store.update_user(existing.id, role=Role.admin.value)
            return self._reload(existing.id), "promoted"

        user_id = self.store.create_user(
            User(
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=Role.admin.value,
                hashed_password=self.hasher.hash(password),
                is_email_verified=True,
            )
        )
        return self._reload(user_id), "created"
