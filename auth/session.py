"""
auth/session.py -- SessionService: the facade every auth route goes through.

Orchestrates the account store, the access-token issuer, the refresh rotator,
the verification and reset token managers, the auth cache, and the
notification dispatcher. Routes never touch those components directly.

Session state machine (per account, one refresh pair at most):

    NoSession --login | verify-email | provider callback--> Active(hash, exp)
    Active    --refresh (valid)-->                          Active(new hash, new exp)
    Active    --refresh (invalid/expired)-->                error, state unchanged
    Active    --logout | password change/reset-->           NoSession

A new login overwrites the stored pair, so it silently ends any other
session of the same account.

Security notes:
  [C1] login() runs a bcrypt comparison against a dummy hash when the email
       is unknown, so response time does not reveal whether an account exists.
       Unknown email and wrong password raise the same InvalidCredentials.

  Notifications are handed to the dispatcher and never awaited. A failed or
  slow email send cannot fail or delay signup, resend, or forgot-password.

  Cache: authenticate() trusts a cached {"active": ...} snapshot for up to
  the cache TTL. Every path here that changes active state or profile fields
  calls cache.invalidate(); a change made directly in the database is only
  picked up when the entry expires.

Layer rule: no imports from api/, cache/, or notify/. The cache and the
dispatcher are injected.
"""

from __future__ import annotations

import logging
import re
import unicodedata

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    AccountInactiveError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    EmailNotVerifiedError,
    InvalidCredentials,
    InvalidRefreshToken,
    NotFoundError,
    ValidationError,
)
from auth.models import ROLES, AccessClaims, Account, AuthResult, AuthSnapshot, ProviderIdentity
from auth.refresh import RefreshTokenRotator
from auth.store import AccountStore
from auth.tokens import MAX_PASSWORD_BYTES, TokenIssuer, burn_password_check, hash_password, verify_password
from auth.verification import PasswordResetManager, VerificationTokenManager

logger = logging.getLogger("authcore.auth.session")

# Roles a visitor may pick at signup. Admins are promoted by another admin.
SIGNUP_ROLES = ("student", "company")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_TAG_RE = re.compile(r"<[^>]*>")

PASSWORD_POLICY_MESSAGE = (
    "Password must be at least 8 characters long and contain an uppercase letter, "
    "a lowercase letter, a number, and a special character."
)


# ---------------------------------------------------------------------------
# Input normalization and validation
# ---------------------------------------------------------------------------


def sanitize_text(value: str | None) -> str:
    """NFKC-normalize, drop HTML tags, collapse whitespace."""
    if not value:
        return ""
    value = unicodedata.normalize("NFKC", value)
    value = _TAG_RE.sub("", value)
    return " ".join(value.split())


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def validate_email(email: str) -> None:
    if not email:
        raise ValidationError("Email is required.")
    if len(email) > 255 or not _EMAIL_RE.match(email):
        raise ValidationError("Please provide a valid email address.")


def validate_password(password: str | None, confirm_password: str | None = None) -> None:
    """Enforce the password policy; confirm_password is checked when given."""
    if not password:
        raise ValidationError("Password is required.")
    if (
        len(password) < 8
        or not any(c.islower() for c in password)
        or not any(c.isupper() for c in password)
        or not any(c.isdigit() for c in password)
        or all(c.isalnum() for c in password)
    ):
        raise ValidationError(PASSWORD_POLICY_MESSAGE)
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes long.")
    if confirm_password is not None and confirm_password != password:
        raise ValidationError("Passwords do not match.")


def _validate_full_name(full_name: str) -> str:
    name = sanitize_text(full_name)
    if not name:
        raise ValidationError("Full name is required.")
    if len(name) > 100:
        raise ValidationError("Full name must be at most 100 characters.")
    return name


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class SessionService:
    """Signup, login, verification, refresh, logout, and account maintenance.

    Usage:
        service = SessionService(store, issuer, rotator, verification, resets, cache,
                                 notifier=notifier, dispatcher=dispatcher)
        account = service.signup("Ada Lovelace", "ada@example.com", "S3cure!pw")
        result = service.login("ada@example.com", "S3cure!pw")   # after verification
        result.access_token, result.refresh.raw
    """

    def __init__(
        self,
        store: AccountStore,
        issuer: TokenIssuer,
        rotator: RefreshTokenRotator,
        verification: VerificationTokenManager,
        resets: PasswordResetManager,
        cache,
        *,
        notifier=None,
        dispatcher=None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.rotator = rotator
        self.verification = verification
        self.resets = resets
        self.cache = cache
        self.notifier = notifier
        self.dispatcher = dispatcher

    # ------------------------------------------------------------------
    # Signup and verification
    # ------------------------------------------------------------------

    def signup(
        self,
        full_name: str,
        email: str,
        password: str,
        confirm_password: str | None = None,
        role: str = "student",
    ) -> Account:
        """Create an unverified account and send its verification email.

        Raises ValidationError (400) or ConflictError (409). No tokens are
        issued; the session starts at verify_email().
        """
        name = _validate_full_name(full_name)
        email = normalize_email(email)
        validate_email(email)
        validate_password(password, confirm_password)
        role = role or "student"
        if role not in SIGNUP_ROLES:
            raise ValidationError(f"Role must be one of: {', '.join(SIGNUP_ROLES)}.")

        if self.store.get_by_email(email) is not None:
            raise ConflictError()

        raw, token_hash, expires_at = self.verification.new_token()
        account = Account(
            email=email,
            full_name=name,
            role=role,
            hashed_password=hash_password(password),
            verification_token_hash=token_hash,
            verification_expires_at=expires_at,
        )
        try:
            account_id = self.store.create_account(account)
        except IntegrityError as exc:
            # Lost a race with a concurrent signup for the same email.
            raise ConflictError() from exc

        logger.info("Account %s created (role=%s), verification pending", account_id, role)
        self._notify("verification", "send_verification", email, raw)
        return self.get_account(account_id)

    def verify_email(self, token: str) -> AuthResult:
        """Consume a verification token and start a session."""
        account = self.verification.consume(token)
        self.cache.invalidate(account.id)
        if not account.is_active:
            raise AccountInactiveError()
        return self._start_session(account)

    def resend_verification(self, email: str) -> None:
        email = normalize_email(email)
        validate_email(email)
        account, raw = self.verification.resend(email)
        self._notify("verification", "send_verification", account.email, raw)

    # ------------------------------------------------------------------
    # Login, refresh, logout
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> AuthResult:
        """Check credentials and issue an access token plus a new refresh pair.

        Raises:
            InvalidCredentials:    unknown email, wrong password, or an
                                   account without a local password [C1].
            AccountInactiveError:  correct password, deactivated account.
            EmailNotVerifiedError: correct password, email not yet verified.
        """
        email = normalize_email(email)
        if not email or not password:
            raise ValidationError("Email and password are required.")

        account = self.store.get_by_email(email)
        if account is None or account.hashed_password is None:
            burn_password_check(password)
            raise InvalidCredentials()
        if not verify_password(password, account.hashed_password):
            raise InvalidCredentials()

        if not account.is_active:
            raise AccountInactiveError()
        if not account.is_email_verified:
            raise EmailNotVerifiedError()

        return self._start_session(account)

    def refresh(self, presented_raw: str | None) -> AuthResult:
        """Rotate the refresh token and mint a new access token.

        Raises InvalidRefreshToken or TokenExpired (401). A failed refresh
        leaves the stored pair untouched.
        """
        if not presented_raw:
            raise InvalidRefreshToken("No refresh token provided.")
        account = self.rotator.resolve(presented_raw)
        if not account.is_active:
            raise AuthenticationError("Your account has been deactivated.")
        new_token = self.rotator.rotate(account.id, presented_raw)
        return AuthResult(account=account, access_token=self.issuer.issue(account), refresh=new_token)

    def logout(self, presented_raw: str | None = None, account_id: int | None = None) -> None:
        """End the session identified by the refresh cookie, else by account_id.

        Always succeeds: an unknown or already rotated cookie means there is
        nothing left to revoke for that value.
        """
        if presented_raw:
            try:
                account = self.rotator.resolve(presented_raw)
            except InvalidRefreshToken:
                logger.info("Logout with an unknown refresh token")
            else:
                account_id = account.id
        if account_id is not None:
            self.rotator.revoke(account_id)
            logger.info("Session revoked for account %s", account_id)

    def authenticate(self, access_token: str | None) -> AccessClaims:
        """Resolve a Bearer token to its claims for a protected request.

        Signature and expiry come from the token alone; the account's active
        flag comes from the auth cache, falling back to the store on a miss.
        """
        if not access_token:
            raise AuthenticationError()
        claims = self.issuer.verify(access_token)

        snapshot = self.cache.get(claims.account_id)
        if snapshot is None:
            account = self.store.get_by_id(claims.account_id)
            if account is None:
                raise AuthenticationError("User not found.")
            snapshot = AuthSnapshot(active=account.is_active)
            self.cache.set(claims.account_id, snapshot)

        if not snapshot.active:
            raise AuthenticationError("Your account has been deactivated.")
        return claims

    # ------------------------------------------------------------------
    # Identity providers
    # ------------------------------------------------------------------

    def provider_login(self, identity: ProviderIdentity) -> AuthResult:
        """Find or create the account for a provider identity and start a session.

        Lookup order: linked (provider, provider_id), then email (the
        identity is linked to the existing account), then a new verified
        account without a local password.
        """
        email = normalize_email(identity.email)
        validate_email(email)

        account = self.store.get_by_provider(identity.provider, identity.provider_id)
        if account is None:
            account = self.store.get_by_email(email)
            if account is not None:
                self.store.link_provider(account.id, identity.provider, identity.provider_id)
                logger.info("Linked %s identity to account %s", identity.provider, account.id)
            else:
                account = self._create_provider_account(identity, email)
            account = self.get_account(account.id)

        if not account.is_active:
            raise AccountInactiveError()
        return self._start_session(account)

    def _create_provider_account(self, identity: ProviderIdentity, email: str) -> Account:
        name = sanitize_text(identity.display_name) or email.split("@", 1)[0]
        try:
            account_id = self.store.create_account(
                Account(
                    email=email,
                    full_name=name[:100],
                    is_email_verified=True,
                    provider=identity.provider,
                    provider_id=identity.provider_id,
                    profile_image=identity.photo_url,
                )
            )
        except IntegrityError:
            # Concurrent first login for the same email; link to the winner.
            existing = self.store.get_by_email(email)
            if existing is None:
                raise
            self.store.link_provider(existing.id, identity.provider, identity.provider_id)
            return existing
        logger.info("Account %s created via %s", account_id, identity.provider)
        return self.get_account(account_id)

    # ------------------------------------------------------------------
    # Account maintenance
    # ------------------------------------------------------------------

    def get_account(self, account_id: int) -> Account:
        account = self.store.get_by_id(account_id)
        if account is None:
            raise NotFoundError("User not found.")
        return account

    def update_profile(
        self,
        account_id: int,
        *,
        full_name: str | None = None,
        profile_image: str | None = None,
    ) -> Account:
        updates: dict = {}
        if full_name is not None:
            updates["full_name"] = _validate_full_name(full_name)
        if profile_image is not None:
            updates["profile_image"] = profile_image.strip() or None
        if not updates:
            raise ValidationError("No fields to update.")
        if not self.store.update_account(account_id, **updates):
            raise NotFoundError("User not found.")
        self.cache.invalidate(account_id)
        return self.get_account(account_id)

    def change_password(
        self,
        account_id: int,
        current_password: str,
        new_password: str,
        confirm_password: str | None = None,
    ) -> None:
        """Re-verify the current password, store the new hash, end the session."""
        account = self.get_account(account_id)
        if account.hashed_password is None:
            raise ValidationError("This account signs in through an identity provider and has no password.")
        if not current_password or not verify_password(current_password, account.hashed_password):
            raise ValidationError("Current password is incorrect.")
        validate_password(new_password, confirm_password)
        if new_password == current_password:
            raise ValidationError("New password must be different from the current password.")

        self.store.update_account(account_id, hashed_password=hash_password(new_password))
        self.rotator.revoke(account_id)
        logger.info("Password changed for account %s; session revoked", account_id)

    def forgot_password(self, email: str) -> None:
        """Send a reset link when the email belongs to an active password account.

        Returns normally in every case so the endpoint cannot be used to
        probe for registered emails.
        """
        email = normalize_email(email)
        account = self.store.get_by_email(email) if email else None
        if account is None or account.hashed_password is None or not account.is_active:
            logger.info("Password reset requested for an ineligible email")
            return
        raw = self.resets.issue(account.id)
        self._notify("password_reset", "send_password_reset", account.email, raw)

    def reset_password(self, token: str, password: str, confirm_password: str | None = None) -> Account:
        validate_password(password, confirm_password)
        account = self.resets.consume(token, hash_password(password))
        self.cache.invalidate(account.id)
        return account

    def update_account_status(
        self,
        actor: AccessClaims,
        account_id: int,
        *,
        is_active: bool | None = None,
        role: str | None = None,
    ) -> Account:
        """Admin-only change of role and/or active flag.

        Deactivation also revokes the refresh session. Both changes
        invalidate the auth cache so protected requests see them at once.
        """
        if actor.role != "admin":
            raise AuthorizationError("Admin access required.")
        target = self.get_account(account_id)

        updates: dict = {}
        if role is not None:
            if role not in ROLES:
                raise ValidationError(f"Role must be one of: {', '.join(ROLES)}.")
            updates["role"] = role
        if is_active is not None:
            if not is_active and target.id == actor.account_id:
                raise ValidationError("You cannot deactivate your own account.")
            updates["is_active"] = is_active
        if not updates:
            raise ValidationError("No fields to update.")

        self.store.update_account(account_id, **updates)
        if is_active is False:
            self.rotator.revoke(account_id)
        self.cache.invalidate(account_id)
        logger.info("Account %s updated by admin %s: %s", account_id, actor.account_id, sorted(updates))
        return self.get_account(account_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _start_session(self, account: Account) -> AuthResult:
        refresh = self.rotator.issue(account.id)
        self.store.update_last_login(account.id)
        self.cache.set(account.id, AuthSnapshot(active=account.is_active))
        return AuthResult(account=account, access_token=self.issuer.issue(account), refresh=refresh)

    def _notify(self, kind: str, method: str, to_email: str, token: str):
        """Hand a send to the dispatcher. Returns its Future, or None when disabled."""
        if self.notifier is None or self.dispatcher is None:
            logger.warning("Notification %r skipped: no notifier configured", kind)
            return None
        return self.dispatcher.submit(kind, getattr(self.notifier, method), to_email, token)
