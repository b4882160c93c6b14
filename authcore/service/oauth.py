from __future__ import annotations

import base64
import re
import secrets
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Protocol
from urllib.parse import urlencode

import httpx
import redis

from authcore.logging import get_logger
from authcore.service.errors import (
    ConflictError,
    ExchangeFailedError,
    InvalidStateError,
    OAuthNotConfiguredError,
    ProfileFetchFailedError,
    ServerError,
    ServiceError,
    ServiceUnavailableError,
    UnverifiedEmailError,
    ValidationError,
)
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Identity

if TYPE_CHECKING:
    from authcore.config import Settings
    from authcore.service.auth import CredentialStore

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"
GOOGLE_SCOPES = "openid email profile"

DEFAULT_STATE_TTL_SECONDS = 10 * 60
_USERNAME_BASE_MAX = 20
_USERNAME_MIN = 3

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthorizationRequest:
    url: str
    state: str


@dataclass(frozen=True)
class ProviderProfile:
    subject: str
    email: str
    email_verified: bool = False
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    picture: Optional[str] = None

    @classmethod
    def from_userinfo(cls, userinfo: Dict[str, Any]) -> Optional["ProviderProfile"]:
        subject = userinfo.get("sub")
        email = userinfo.get("email")
        if not subject or not isinstance(email, str) or not email:
            return None
        verified = userinfo.get("email_verified")
        if isinstance(verified, str):
            verified = verified.lower() == "true"
        return cls(
            subject=str(subject),
            email=email.lower(),
            email_verified=bool(verified),
            name=userinfo.get("name"),
            given_name=userinfo.get("given_name"),
            family_name=userinfo.get("family_name"),
            picture=userinfo.get("picture"),
        )


class OAuthStateStore(Protocol):
    def put(self, state: str, issued_at: int) -> None: ...

    def consume(self, state: str) -> Optional[int]: ...

    def sweep(self, now: int, ttl_seconds: int) -> int: ...


class MemoryOAuthStateStore:
    """Pending states for a single process.

    ``consume`` pops under the lock, so of two callers racing on one state
    exactly one receives the timestamp.
    """

    def __init__(self) -> None:
        self._states: Dict[str, int] = {}
        self._lock = threading.Lock()

    def put(self, state: str, issued_at: int) -> None:
        with self._lock:
            self._states[state] = issued_at

    def consume(self, state: str) -> Optional[int]:
        with self._lock:
            return self._states.pop(state, None)

    def sweep(self, now: int, ttl_seconds: int) -> int:
        with self._lock:
            expired = [
                state for state, issued_at in self._states.items()
                if now - issued_at > ttl_seconds
            ]
            for state in expired:
                del self._states[state]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)


class RedisOAuthStateStore:
    """Pending states shared by several processes through Redis.

    Keys expire on their own, and ``GETDEL`` gives the same single-use
    guarantee as the in-memory store.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS,
        prefix: str = "authcore:oauth:state:",
    ) -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    @classmethod
    def from_url(
        cls, redis_url: str, *, ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS, socket_timeout: float = 5.0
    ) -> "RedisOAuthStateStore":
        client = redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, ttl_seconds=ttl_seconds)

    def put(self, state: str, issued_at: int) -> None:
        try:
            self.client.set(f"{self.prefix}{state}", str(issued_at), ex=self.ttl_seconds)
        except redis.RedisError as exc:
            logger.error("oauth_state_store_failed", operation="put", error=str(exc))
            raise ServiceUnavailableError("OAuth state store unavailable") from exc

    def consume(self, state: str) -> Optional[int]:
        try:
            raw = self.client.getdel(f"{self.prefix}{state}")
        except redis.RedisError as exc:
            # Fail closed: an unreadable state is never accepted
            logger.error("oauth_state_store_failed", operation="consume", error=str(exc))
            raise ServiceUnavailableError("OAuth state store unavailable") from exc
        if raw is None:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning("oauth_state_corrupt")
            return None

    def sweep(self, now: int, ttl_seconds: int) -> int:
        return 0

    def close(self) -> None:
        self.client.close()


class IdentityBroker:
    """Three-legged Google login: authorization URL, state check, code exchange.

    A login attempt moves through issued state, code received, token
    exchanged, profile fetched and completed; any failure ends it with a
    ``ServiceError`` subclass. Provider calls go through one ``httpx.Client``
    with a bounded timeout so a slow provider cannot hold a worker forever.
    """

    def __init__(
        self,
        store: "CredentialStore",
        settings: "Settings",
        *,
        states: Optional[OAuthStateStore] = None,
        http_client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.client_id = settings.google_client_id
        self.client_secret = settings.google_client_secret
        self.redirect_uri = settings.google_redirect_uri
        self.state_ttl_seconds = settings.oauth_state_ttl_seconds
        self.states: OAuthStateStore = states or MemoryOAuthStateStore()
        self._owns_http = http_client is None
        self.http = http_client or httpx.Client(
            timeout=settings.oauth_http_timeout_seconds, follow_redirects=False
        )
        self._clock = clock
        if self.is_configured():
            logger.info("oauth_configured", client_id=f"{self.client_id[:10]}...")
        else:
            logger.info("oauth_not_configured", reason="missing client id or secret")

    def _now(self) -> int:
        return int(self._clock())

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    # leg one

    def begin_authorization(self) -> AuthorizationRequest:
        if not self.is_configured():
            raise OAuthNotConfiguredError()
        now = self._now()
        swept = self.states.sweep(now, self.state_ttl_seconds)
        if swept:
            logger.debug("oauth_states_swept", count=swept)

        state = base64.urlsafe_b64encode(secrets.token_bytes(16)).decode("ascii").rstrip("=")
        self.states.put(state, now)
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_SCOPES,
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return AuthorizationRequest(url=f"{GOOGLE_AUTH_URL}?{urlencode(params)}", state=state)

    # legs two and three

    def complete_authorization(self, code: Optional[str], state: Optional[str]) -> Identity:
        """Turn a callback's ``code``/``state`` pair into a local identity."""

        issued_at = self.states.consume(state) if state else None
        if issued_at is None or self._now() - issued_at > self.state_ttl_seconds:
            logger.warning("oauth_state_rejected", known=issued_at is not None)
            raise InvalidStateError()
        if not self.is_configured():
            raise OAuthNotConfiguredError()
        if not code:
            raise ValidationError("Authorization code is required")

        access_token = self._exchange_code(code)
        profile = self._fetch_profile(access_token)
        return self._resolve_identity(profile)

    def _exchange_code(self, code: str) -> str:
        data = {
            "code": code,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            response = self.http.post(
                GOOGLE_TOKEN_URL, data=data, headers={"Accept": "application/json"}
            )
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_error", error_type=type(exc).__name__, error=str(exc))
            raise ExchangeFailedError() from exc
        if not response.is_success:
            logger.error(
                "oauth_exchange_http_error",
                status_code=response.status_code,
                body=response.text[:200],
            )
            raise ExchangeFailedError()
        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("oauth_token_parse_error", error=str(exc))
            raise ExchangeFailedError() from exc
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            logger.error("oauth_no_access_token")
            raise ExchangeFailedError()
        return access_token

    def _fetch_profile(self, access_token: str) -> ProviderProfile:
        try:
            response = self.http.get(
                GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}
            )
        except httpx.HTTPError as exc:
            logger.error("oauth_userinfo_error", error_type=type(exc).__name__, error=str(exc))
            raise ProfileFetchFailedError() from exc
        if not response.is_success:
            logger.error(
                "oauth_userinfo_http_error",
                status_code=response.status_code,
                body=response.text[:200],
            )
            raise ProfileFetchFailedError()
        try:
            userinfo = response.json()
        except ValueError as exc:
            logger.error("oauth_userinfo_parse_error", error=str(exc))
            raise ProfileFetchFailedError() from exc
        profile = ProviderProfile.from_userinfo(userinfo) if isinstance(userinfo, dict) else None
        if profile is None:
            logger.error("oauth_userinfo_incomplete")
            raise ProfileFetchFailedError()
        return profile

    # identity resolution

    def _resolve_identity(self, profile: ProviderProfile) -> Identity:
        # A concurrent callback for the same person can win the insert; the
        # retry then finds the row it created and links to that instead.
        try:
            return self._link_or_create(profile)
        except ConstraintViolation as exc:
            logger.info("oauth_resolution_retry", field=exc.field)
        try:
            return self._link_or_create(profile)
        except ConstraintViolation as exc:
            logger.error("oauth_resolution_failed", field=exc.field)
            raise ConflictError("Failed to create user account", detail={"field": exc.field}) from exc

    def _link_or_create(self, profile: ProviderProfile) -> Identity:
        existing = self.store.get_by_google_id(profile.subject)
        if existing:
            return self._stamp_login(existing)

        existing = self.store.get_by_email(profile.email)
        if existing:
            if not profile.email_verified:
                logger.warning("oauth_link_refused", reason="email_unverified", identity_id=existing.id)
                raise UnverifiedEmailError()
            if existing.google_id and existing.google_id != profile.subject:
                logger.warning("oauth_link_refused", reason="linked_elsewhere", identity_id=existing.id)
                raise ConflictError("Email is linked to a different Google account")
            linked = self.store.link_google_account(existing.id, profile.subject, profile.picture)
            if linked is None:
                raise ServerError("Failed to link Google account")
            logger.info("oauth_account_linked", identity_id=linked.id)
            return self._stamp_login(linked)

        created = self.store.create_federated_identity(
            email=profile.email,
            username=self.generate_username(profile.email),
            google_id=profile.subject,
            display_name=profile.name,
            avatar_url=profile.picture,
        )
        logger.info("oauth_identity_created", identity_id=created.id, username=created.username)
        return self._stamp_login(created)

    def _stamp_login(self, identity: Identity) -> Identity:
        try:
            stamped = self.store.touch_last_login(identity.id)
        except ServiceError as exc:
            logger.warning("last_login_update_failed", identity_id=identity.id, error=exc.message)
            return identity
        if stamped is not None:
            identity.last_login_at = stamped
        return identity

    def generate_username(self, email: str) -> str:
        base = re.sub(r"[^A-Za-z0-9]", "", email.split("@", 1)[0])[:_USERNAME_BASE_MAX]
        if len(base) < _USERNAME_MIN:
            base = f"user{base}"
        candidate = base
        suffix = 1
        while not self.store.is_username_available(candidate):
            candidate = f"{base}{suffix}"
            suffix += 1
        return candidate


__all__ = [
    "AuthorizationRequest",
    "IdentityBroker",
    "MemoryOAuthStateStore",
    "OAuthStateStore",
    "ProviderProfile",
    "RedisOAuthStateStore",
]
