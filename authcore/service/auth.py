from __future__ import annotations

import functools
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from authcore.logging import correlation_scope, get_logger
from authcore.service.errors import (
    AccountInactiveError,
    EmailTakenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    OAuthNotConfiguredError,
    ServiceError,
    UsernameTakenError,
    ValidationError,
)
from authcore.service.oauth import AuthorizationRequest, IdentityBroker
from authcore.service.tokens import TokenService, extract_bearer
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Identity

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9+_.-]+@[A-Za-z0-9.-]+$")
USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9_]{3,30}$")
MIN_PASSWORD_LENGTH = 8
ACCESS_TOKEN_COOKIE = "accessToken"

logger = get_logger(__name__)


def _correlated(method):
    """Run a gateway operation under one correlation id."""

    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        with correlation_scope():
            return method(*args, **kwargs)

    return wrapper


class CredentialStore(Protocol):
    def create_local_identity(
        self,
        email: str,
        username: str,
        password_hash: str,
        display_name: Optional[str] = None,
    ) -> Identity: ...

    def create_federated_identity(
        self,
        email: str,
        username: str,
        google_id: str,
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Identity: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def get_by_email(self, email: str) -> Optional[Identity]: ...

    def get_by_username(self, username: str) -> Optional[Identity]: ...

    def get_by_identifier(self, identifier: str) -> Optional[Identity]: ...

    def get_by_google_id(self, google_id: str) -> Optional[Identity]: ...

    def is_email_available(self, email: str) -> bool: ...

    def is_username_available(self, username: str) -> bool: ...

    def list_identities(self, limit: int = 50, offset: int = 0) -> List[Identity]: ...

    def count_identities(self) -> int: ...

    def link_google_account(
        self, identity_id: str, google_id: str, avatar_url: Optional[str] = None
    ) -> Optional[Identity]: ...

    def touch_last_login(self, identity_id: str) -> Optional[datetime]: ...

    def update_profile(
        self, identity_id: str, display_name: Optional[str], avatar_url: Optional[str]
    ) -> Optional[Identity]: ...

    def update_password(self, identity_id: str, password_hash: str) -> bool: ...

    def set_admin(self, identity_id: str, is_admin: bool) -> bool: ...

    def set_active(self, identity_id: str, is_active: bool) -> bool: ...


@dataclass
class AuthResult:
    identity: Identity
    access_token: str
    refresh_token: str

    def to_dict(self) -> dict:
        return {
            "user": self.identity.to_dict(),
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
        }


class AuthGateway:
    """Signup, login, refresh and request resolution over a credential store.

    The gateway holds no per-request state; every collaborator is handed in
    by the caller, so one instance serves all concurrent requests.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        broker: Optional[IdentityBroker] = None,
        *,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.broker = broker
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the identifier is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("authcore-timing-equalizer")
        self.logger = logger

    # validation

    @staticmethod
    def _validate_email(email: Optional[str]) -> str:
        if not email or not EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email format", detail={"field": "email"})
        return email.lower()

    @staticmethod
    def _validate_username(username: Optional[str]) -> str:
        if not username or not USERNAME_PATTERN.match(username):
            raise ValidationError(
                "Username must be 3-30 characters, alphanumeric and underscore only",
                detail={"field": "username"},
            )
        return username

    @staticmethod
    def _validate_password(password: Optional[str]) -> str:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        return password

    # password hashing

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, stored_hash: Optional[str], password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash or self._dummy_hash, password) and bool(
                stored_hash
            )
        except (InvalidHash, VerifyMismatchError):
            return False

    # token issuance

    def _issue(self, identity: Identity) -> AuthResult:
        return AuthResult(
            identity=identity,
            access_token=self.tokens.mint_access(identity.id, identity.username, identity.is_admin),
            refresh_token=self.tokens.mint_refresh(identity.id),
        )

    def _stamp_login(self, identity: Identity) -> Identity:
        try:
            stamped = self.store.touch_last_login(identity.id)
        except ServiceError as exc:
            self.logger.warning("last_login_update_failed", identity_id=identity.id, error=exc.message)
            return identity
        if stamped is not None:
            identity.last_login_at = stamped
        return identity

    # local accounts

    @_correlated
    def signup(
        self,
        email: str,
        username: str,
        password: str,
        display_name: Optional[str] = None,
    ) -> AuthResult:
        email = self._validate_email(email)
        username = self._validate_username(username)
        password = self._validate_password(password)

        if not self.store.is_email_available(email):
            raise EmailTakenError()
        if not self.store.is_username_available(username):
            raise UsernameTakenError()

        try:
            identity = self.store.create_local_identity(
                email=email,
                username=username,
                password_hash=self._hash_password(password),
                display_name=display_name or username,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent signup between the check and the insert
            if exc.field == "username":
                raise UsernameTakenError() from exc
            raise EmailTakenError() from exc

        self.logger.info("identity_registered", identity_id=identity.id, username=identity.username)
        return self._issue(identity)

    @_correlated
    def login(self, identifier: str, password: str) -> AuthResult:
        if not identifier or not password:
            raise ValidationError("Username/email and password are required")

        identity = self.store.get_by_identifier(identifier)
        stored_hash = identity.password_hash if identity else None
        if not self._verify_password(stored_hash, password):
            self.logger.warning(
                "login_failed",
                reason="unknown_identifier" if identity is None else "bad_password",
            )
            raise InvalidCredentialsError()
        if not identity.is_active:
            self.logger.warning("login_failed", reason="inactive", identity_id=identity.id)
            raise AccountInactiveError()

        identity = self._stamp_login(identity)
        self.logger.info("login_succeeded", identity_id=identity.id, method="password")
        return self._issue(identity)

    @_correlated
    def refresh(self, refresh_token: str) -> str:
        """Mint a new access token. The refresh token itself is not rotated."""

        payload = self.tokens.verify_refresh(refresh_token)
        if not payload:
            self.logger.info("refresh_rejected", reason=payload.reason.value)
            raise InvalidTokenError("Invalid or expired refresh token")
        identity = self.store.get_identity(payload.sub)
        if identity is None:
            raise InvalidTokenError("Invalid or expired refresh token")
        if not identity.is_active:
            raise AccountInactiveError()
        return self.tokens.mint_access(identity.id, identity.username, identity.is_admin)

    # request resolution

    @_correlated
    def resolve(self, raw_credential: Optional[str]) -> Optional[Identity]:
        """Identity behind an access token, or ``None`` for anonymous callers.

        Accepts an ``Authorization`` header value or a bare token.
        """

        if not raw_credential:
            return None
        token = extract_bearer(raw_credential) or raw_credential.strip()
        payload = self.tokens.verify_access(token)
        if not payload:
            return None
        try:
            identity = self.store.get_identity(payload.sub)
        except ServiceError as exc:
            self.logger.warning("resolve_lookup_failed", identity_id=payload.sub, error=exc.message)
            return None
        if identity is None or not identity.is_active:
            return None
        return identity

    @_correlated
    def resolve_request(
        self, authorization: Optional[str], cookies: Optional[Dict[str, str]] = None
    ) -> Optional[Identity]:
        token = extract_bearer(authorization)
        if token is None and cookies:
            token = cookies.get(ACCESS_TOKEN_COOKIE)
        return self.resolve(token)

    # federated accounts

    def _require_broker(self) -> IdentityBroker:
        if self.broker is None or not self.broker.is_configured():
            raise OAuthNotConfiguredError()
        return self.broker

    @_correlated
    def begin_federated_login(self) -> AuthorizationRequest:
        return self._require_broker().begin_authorization()

    @_correlated
    def complete_federated_login(self, code: Optional[str], state: Optional[str]) -> AuthResult:
        if self.broker is None:
            raise OAuthNotConfiguredError()
        identity = self.broker.complete_authorization(code, state)
        if not identity.is_active:
            self.logger.warning("login_failed", reason="inactive", identity_id=identity.id)
            raise AccountInactiveError()
        self.logger.info("login_succeeded", identity_id=identity.id, method="google")
        return self._issue(identity)

    @_correlated
    def logout(self, identity_id: Optional[str] = None) -> None:
        # Tokens are stateless; the client discards them
        self.logger.info("logout", identity_id=identity_id)

    # account queries and maintenance

    def check_email(self, email: str) -> bool:
        if not email or not EMAIL_PATTERN.match(email):
            return False
        return self.store.is_email_available(email)

    def check_username(self, username: str) -> bool:
        if not username or not USERNAME_PATTERN.match(username):
            return False
        return self.store.is_username_available(username)

    def _require_identity(self, identity_id: str) -> Identity:
        identity = self.store.get_identity(identity_id)
        if identity is None:
            raise NotFoundError("User not found")
        return identity

    @_correlated
    def change_password(
        self, identity_id: str, current_password: Optional[str], new_password: str
    ) -> None:
        identity = self._require_identity(identity_id)
        new_password = self._validate_password(new_password)
        if identity.can_use_password():
            if not current_password or not self._verify_password(
                identity.password_hash, current_password
            ):
                self.logger.warning("password_change_rejected", identity_id=identity_id)
                raise InvalidCredentialsError("Current password is incorrect")
        if not self.store.update_password(identity_id, self._hash_password(new_password)):
            raise NotFoundError("User not found")
        self.logger.info("password_changed", identity_id=identity_id)

    @_correlated
    def update_profile(
        self, identity_id: str, display_name: Optional[str], avatar_url: Optional[str]
    ) -> Identity:
        updated = self.store.update_profile(identity_id, display_name, avatar_url)
        if updated is None:
            raise NotFoundError("User not found")
        return updated

    @_correlated
    def set_admin(self, identity_id: str, is_admin: bool) -> None:
        if not self.store.set_admin(identity_id, is_admin):
            raise NotFoundError("User not found")
        self.logger.info("admin_flag_changed", identity_id=identity_id, is_admin=is_admin)

    @_correlated
    def deactivate(self, identity_id: str) -> None:
        if not self.store.set_active(identity_id, False):
            raise NotFoundError("User not found")
        self.logger.info("identity_deactivated", identity_id=identity_id)

    @_correlated
    def activate(self, identity_id: str) -> None:
        if not self.store.set_active(identity_id, True):
            raise NotFoundError("User not found")
        self.logger.info("identity_activated", identity_id=identity_id)

    def list_identities(self, limit: int = 50, offset: int = 0) -> List[Identity]:
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        return self.store.list_identities(limit=limit, offset=offset)

    def count_identities(self) -> int:
        return self.store.count_identities()


__all__ = ["AuthGateway", "AuthResult", "CredentialStore"]
